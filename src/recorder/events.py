"""
Sensor event and sample types consumed by the recording pipeline.

Provides:
- Pose and depth events as delivered by the sensor service
- PoseSample / PointCloudFrame, the pipeline's own copies of that data
- CalibrationTransform, the fixed camera-to-device matrix
"""

from enum import Enum
from typing import Any, Dict, Sequence
from dataclasses import dataclass, field

import numpy as np

from .errors import FormatError


class PoseStatus(Enum):
    """Pose status codes reported by the sensor service."""
    INITIALIZING = 0
    VALID = 1
    INVALID = 2
    UNKNOWN = 3


@dataclass(frozen=True)
class PoseEvent:
    """Pose update delivered at pose-update rate."""
    timestamp: float  # seconds
    status: PoseStatus
    translation: Sequence[float]  # x, y, z
    rotation: Sequence[float]  # quaternion x, y, z, w


@dataclass(frozen=True)
class DepthEvent:
    """Depth update; raw_buffer holds little-endian float32 xyz triples."""
    timestamp: float  # seconds
    point_count: int
    raw_buffer: bytes
    raw_byte_offset: int = 0


@dataclass(frozen=True, eq=False)
class PoseSample:
    """A pose kept for the session trajectory."""
    timestamp: float
    position: np.ndarray  # float32 (3,)
    orientation: np.ndarray  # float32 (4,) x, y, z, w
    status_valid: bool = True

    @classmethod
    def from_event(cls, event: PoseEvent) -> "PoseSample":
        position = np.array(event.translation, dtype=np.float32).reshape(3)
        orientation = np.array(event.rotation, dtype=np.float32).reshape(4)
        position.flags.writeable = False
        orientation.flags.writeable = False
        return cls(
            timestamp=float(event.timestamp),
            position=position,
            orientation=orientation,
            status_valid=event.status == PoseStatus.VALID,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "position": self.position.tolist(),
            "orientation": self.orientation.tolist(),
            "status_valid": self.status_valid,
        }


@dataclass
class PointCloudFrame:
    """One depth frame, copied out of the sensor buffer."""
    timestamp: float
    point_count: int
    coordinates: np.ndarray  # float32 (N, 3)
    raw_byte_offset: int = 0

    @classmethod
    def from_event(cls, event: DepthEvent) -> "PointCloudFrame":
        """
        Decode a depth event.

        Args:
            event: Depth event from the sensor service

        Returns:
            Frame owning a private copy of the coordinates

        Raises:
            FormatError: If the buffer is shorter than point_count triples
        """
        count = int(event.point_count)
        if count < 0:
            raise FormatError(f"negative point count: {count}")
        offset = int(event.raw_byte_offset)
        if offset < 0:
            raise FormatError(f"negative byte offset: {offset}")
        needed = count * 3 * 4
        available = len(event.raw_buffer) - offset
        if available < needed:
            raise FormatError(
                f"depth buffer holds {available} bytes after offset, "
                f"{needed} needed for {count} points"
            )
        coords = np.frombuffer(
            event.raw_buffer,
            dtype="<f4",
            count=count * 3,
            offset=offset,
        )
        return cls(
            timestamp=float(event.timestamp),
            point_count=count,
            coordinates=coords.astype(np.float32).reshape(count, 3),
            raw_byte_offset=offset,
        )


@dataclass(frozen=True, eq=False)
class CalibrationTransform:
    """Read-only 4x4 camera-to-device transform."""
    matrix: np.ndarray = field(default_factory=lambda: _frozen(np.eye(4, dtype=np.float32)))

    def __post_init__(self):
        matrix = np.array(self.matrix, dtype=np.float32)
        if matrix.shape != (4, 4):
            raise ValueError(f"calibration must be 4x4, got shape {matrix.shape}")
        object.__setattr__(self, "matrix", _frozen(matrix))

    @classmethod
    def from_row_major(cls, values: Sequence[float]) -> "CalibrationTransform":
        flat = np.asarray(values, dtype=np.float32).reshape(-1)
        if flat.size != 16:
            raise ValueError(f"calibration needs 16 values, got {flat.size}")
        return cls(matrix=flat.reshape(4, 4))

    @classmethod
    def identity(cls) -> "CalibrationTransform":
        return cls()

    def as_row_major(self) -> np.ndarray:
        return self.matrix.reshape(16)


def _frozen(array: np.ndarray) -> np.ndarray:
    array.flags.writeable = False
    return array
