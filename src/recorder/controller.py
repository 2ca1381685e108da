"""
Recording state machine.

RecordingController is the single owner of SessionState. Every read and
write of that state happens under one lock, so toggling recording,
requesting snapshots and the per-frame capture decision are mutually
exclusive. The lock is never held across disk I/O: a capture only
reserves its sequence number and filename here, and the write happens
on a worker afterwards.

States: IDLE -> RECORDING -> IDLE. A pending snapshot is an overlay valid
in either state.
"""

import threading
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Set, Tuple
from dataclasses import dataclass, field, replace

from .events import PoseSample
from .logging_utils import get_logger
from .poses import PoseBuffer

logger = get_logger(__name__)

STATE_IDLE = "IDLE"
STATE_RECORDING = "RECORDING"


@dataclass
class SessionState:
    """Mutable session bookkeeping; only touched under the controller lock."""
    active: bool = False
    session_id: str = ""
    file_sequence_number: int = 0  # next number to hand out
    produced_file_paths: List[str] = field(default_factory=list)
    pending_snapshot: bool = False
    auto_mode_enabled: bool = False
    frame_counter: int = 0


class CaptureTrigger(Enum):
    SNAPSHOT = "snapshot"
    AUTO = "auto"


@dataclass(eq=False)
class CaptureReservation:
    """A sequence number and filename reserved for one frame."""
    session_id: str
    sequence_number: int
    path: Path
    frame_index: int
    trigger: CaptureTrigger
    succeeded: Optional[bool] = None
    _done: threading.Event = field(default_factory=threading.Event, repr=False)

    def complete(self, succeeded: bool) -> None:
        self.succeeded = succeeded
        self._done.set()

    def wait(self, timeout: Optional[float] = None) -> bool:
        return self._done.wait(timeout)

    @property
    def done(self) -> bool:
        return self._done.is_set()


@dataclass(frozen=True)
class SessionCloseHandle:
    """Frozen description of a session that just stopped recording."""
    session_id: str
    poses: Tuple[PoseSample, ...]
    file_paths: Tuple[Path, ...]
    reservations: Tuple[CaptureReservation, ...]
    trajectory_path: Path
    frame_count: int

    @property
    def pose_count(self) -> int:
        return len(self.poses)


class RecordingController:
    """
    Decides which frames are captured and owns session lifecycle.

    Usage:
        controller = RecordingController(recordings_dir="./recordings")
        controller.set_recording(True)
        reservation = controller.reserve_capture(controller.next_frame_index())
        ...
        handle = controller.set_recording(False)
    """

    def __init__(
        self,
        recordings_dir: str = "./recordings",
        file_prefix: str = "pc",
        auto_mode_stride: int = 3,
        clock: Callable[[], datetime] = datetime.now,
    ):
        """
        Initialize the controller.

        Args:
            recordings_dir: Directory where capture files are written
            file_prefix: First component of every capture filename
            auto_mode_stride: Auto mode captures frames whose index is a multiple of this
            clock: Wall-clock source for session ids
        """
        if auto_mode_stride <= 0:
            raise ValueError("auto_mode_stride must be > 0")

        self.recordings_dir = Path(recordings_dir)
        self.file_prefix = file_prefix
        self.auto_mode_stride = int(auto_mode_stride)
        self._clock = clock

        self._lock = threading.Lock()
        self._issued_ids: Set[str] = set()
        self._poses = PoseBuffer()
        self._reservations: List[CaptureReservation] = []
        self._state = SessionState(session_id=self._new_session_id())

    def _new_session_id(self) -> str:
        """Time-derived id (YYYYMMDDhhmmsscc), unique within this process."""
        now = self._clock()
        base = now.strftime("%Y%m%d%H%M%S") + f"{now.microsecond // 10000:02d}"
        session_id = base
        suffix = 1
        while session_id in self._issued_ids:
            session_id = f"{base}-{suffix}"
            suffix += 1
        self._issued_ids.add(session_id)
        return session_id

    def frame_path(self, session_id: str, sequence_number: int) -> Path:
        return self.recordings_dir / f"{self.file_prefix}_{session_id}_{sequence_number:03d}.vtk"

    def trajectory_path(self, session_id: str) -> Path:
        return self.recordings_dir / f"{self.file_prefix}_{session_id}_poses.vtk"

    def set_recording(self, enabled: bool) -> Optional[SessionCloseHandle]:
        """
        Start or stop a recording session.

        Args:
            enabled: True to start, False to stop

        Returns:
            Handle for archiving when a session was stopped, otherwise None
        """
        with self._lock:
            state = self._state
            if state.active == enabled:
                return None

            if enabled:
                state.active = True
                state.session_id = self._new_session_id()
                state.file_sequence_number = 0
                state.frame_counter = 0
                self._poses.clear()
                logger.info("Recording started: session %s", state.session_id)
                return None

            # A snapshot requested but not taken yet is dropped with the session
            state.active = False
            state.pending_snapshot = False

            handle = SessionCloseHandle(
                session_id=state.session_id,
                poses=self._poses.drain(),
                file_paths=tuple(Path(p) for p in state.produced_file_paths),
                reservations=tuple(self._reservations),
                trajectory_path=self.trajectory_path(state.session_id),
                frame_count=state.frame_counter,
            )
            state.produced_file_paths = []
            self._reservations = []

            logger.info(
                "Recording stopped: session %s (%d files, %d poses)",
                handle.session_id, len(handle.file_paths), handle.pose_count,
            )
            return handle

    def request_snapshot(self) -> None:
        with self._lock:
            self._state.pending_snapshot = True

    def set_auto_mode(self, enabled: bool) -> None:
        with self._lock:
            self._state.auto_mode_enabled = bool(enabled)

    def _should_capture(self, frame_index: int) -> bool:
        state = self._state
        if state.pending_snapshot:
            return True
        return (
            state.active
            and state.auto_mode_enabled
            and frame_index % self.auto_mode_stride == 0
        )

    def should_capture_this_frame(self, frame_index: int) -> bool:
        """Capture decision for a frame index. Never mutates state."""
        with self._lock:
            return self._should_capture(frame_index)

    def consume_snapshot_flag(self) -> None:
        with self._lock:
            self._state.pending_snapshot = False

    def next_frame_index(self) -> int:
        """Count an incoming frame and return its index within the session."""
        with self._lock:
            self._state.frame_counter += 1
            return self._state.frame_counter

    def reserve_capture(self, frame_index: int) -> Optional[CaptureReservation]:
        """
        Decide on a frame and, if it is captured, reserve its file.

        The decision, the sequence number, the file list append and the
        snapshot flag are all updated in one critical section.

        Args:
            frame_index: Index returned by next_frame_index()

        Returns:
            Reservation to complete once the write finishes, or None
        """
        with self._lock:
            if not self._should_capture(frame_index):
                return None

            state = self._state
            trigger = CaptureTrigger.SNAPSHOT if state.pending_snapshot else CaptureTrigger.AUTO
            sequence_number = state.file_sequence_number
            state.file_sequence_number += 1

            path = self.frame_path(state.session_id, sequence_number)
            state.produced_file_paths.append(str(path))
            if trigger is CaptureTrigger.SNAPSHOT:
                state.pending_snapshot = False

            reservation = CaptureReservation(
                session_id=state.session_id,
                sequence_number=sequence_number,
                path=path,
                frame_index=frame_index,
                trigger=trigger,
            )
            self._reservations.append(reservation)

        logger.debug(
            "Frame %d reserved as %s (%s)", frame_index, path.name, trigger.value
        )
        return reservation

    def record_pose(self, sample: PoseSample) -> bool:
        """
        Append a pose to the session buffer.

        Returns:
            True if the pose was kept (recording is active)
        """
        with self._lock:
            if not self._state.active:
                return False
            self._poses.append(sample)
            return True

    def snapshot_state(self) -> SessionState:
        """Copy of the current state, for inspection."""
        with self._lock:
            return replace(
                self._state,
                produced_file_paths=list(self._state.produced_file_paths),
            )

    @property
    def is_recording(self) -> bool:
        with self._lock:
            return self._state.active

    @property
    def session_id(self) -> str:
        with self._lock:
            return self._state.session_id

    @property
    def pose_count(self) -> int:
        with self._lock:
            return len(self._poses)

    def get_status(self) -> Dict[str, Any]:
        with self._lock:
            state = self._state
            return {
                "state": STATE_RECORDING if state.active else STATE_IDLE,
                "session_id": state.session_id,
                "files": len(state.produced_file_paths),
                "next_sequence_number": state.file_sequence_number,
                "pending_snapshot": state.pending_snapshot,
                "auto_mode": state.auto_mode_enabled,
                "frame_counter": state.frame_counter,
                "poses": len(self._poses),
            }
