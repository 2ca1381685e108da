"""
Point-cloud session recorder.

Modules:
- events: Sensor events, pose samples, point-cloud frames, calibration
- controller: Recording state machine and capture decisions
- pipeline: Per-frame coordination, writer and archive workers
- vtk: Binary VTK writers for frames and pose trajectories
- archive: Session archiving and cleanup
- replay: Reading files and archives back, integrity validation
- metrics: Recorder counters and exporters
- config: Recorder settings and calibration loading
- sim: Synthetic sensor and session runner
"""

from .errors import RecorderError, FormatError, ContractError
from .events import (
    PoseStatus, PoseEvent, DepthEvent, PoseSample,
    PointCloudFrame, CalibrationTransform
)
from .poses import PoseBuffer
from .controller import (
    RecordingController, SessionState, SessionCloseHandle,
    CaptureReservation, CaptureTrigger
)
from .vtk import BinaryFrameWriter, PoseTrajectoryWriter, write_atomic
from .archive import SessionArchiver, archive_name, list_archives
from .pipeline import FrameIngestPipeline, WorkerPool
from .replay import (
    PolyData, SessionReplay, ReplayFrame, Trajectory,
    read_polydata, validate_archive_integrity
)
from .metrics import RecorderMetrics, MetricsExporter
from .config import RecorderConfig, load_calibration
from .logging_utils import setup_logging, get_logger

__all__ = [
    # Errors
    "RecorderError",
    "FormatError",
    "ContractError",
    # Events
    "PoseStatus",
    "PoseEvent",
    "DepthEvent",
    "PoseSample",
    "PointCloudFrame",
    "CalibrationTransform",
    "PoseBuffer",
    # Controller
    "RecordingController",
    "SessionState",
    "SessionCloseHandle",
    "CaptureReservation",
    "CaptureTrigger",
    # Writers
    "BinaryFrameWriter",
    "PoseTrajectoryWriter",
    "write_atomic",
    # Archive
    "SessionArchiver",
    "archive_name",
    "list_archives",
    # Pipeline
    "FrameIngestPipeline",
    "WorkerPool",
    # Replay
    "PolyData",
    "SessionReplay",
    "ReplayFrame",
    "Trajectory",
    "read_polydata",
    "validate_archive_integrity",
    # Metrics
    "RecorderMetrics",
    "MetricsExporter",
    # Config
    "RecorderConfig",
    "load_calibration",
    # Logging
    "setup_logging",
    "get_logger",
]
