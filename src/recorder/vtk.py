"""
Binary VTK (legacy format, POLYDATA) writers for captured data.

Provides functionality to:
- Encode a single point-cloud frame with its capture timestamp
- Encode a session's pose trajectory with the camera-to-device transform
- Write either atomically, so a failed write never leaves a file
  under its final name

Binary payloads are big-endian, as the legacy VTK reader expects.
"""

import os
from pathlib import Path
from typing import List, Sequence, Union

import numpy as np

from .errors import ContractError, FormatError
from .events import CalibrationTransform, PointCloudFrame, PoseSample

VTK_PREAMBLE = (
    "# vtk DataFile Version 3.0\n"
    "vtk output\n"
    "BINARY\n"
    "DATASET POLYDATA\n"
)

FLOAT_BE = np.dtype(">f4")
INT_BE = np.dtype(">i4")

PathLike = Union[str, os.PathLike]


def _check_block(name: str, block: bytes, count: int, dtype: np.dtype) -> bytes:
    """Ensure a binary block holds exactly `count` items of `dtype`."""
    expected = count * dtype.itemsize
    if len(block) != expected:
        raise FormatError(
            f"{name}: {len(block)} bytes written for {count} declared values "
            f"(expected {expected})"
        )
    return block


def _points_block(points: np.ndarray, count: int) -> List[bytes]:
    return [
        (VTK_PREAMBLE + f"POINTS {count} float\n").encode("ascii"),
        _check_block("POINTS", points.astype(FLOAT_BE).tobytes(), count * 3, FLOAT_BE),
    ]


def _single_cell_block(keyword: str, count: int) -> List[bytes]:
    """One cell referencing every point in order (empty when there are none)."""
    cells = 1 if count > 0 else 0
    size = count + cells
    ids = np.arange(count, dtype=np.int64)
    if cells:
        ids = np.concatenate(([count], ids))
    return [
        f"\n{keyword} {cells} {size}\n".encode("ascii"),
        _check_block(keyword, ids.astype(INT_BE).tobytes(), size, INT_BE),
    ]


def write_atomic(path: PathLike, chunks: Sequence[bytes]) -> int:
    """
    Write chunks to `path` via a temporary `.part` file.

    Returns:
        Number of bytes written

    Raises:
        OSError: If the directory or file cannot be written
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_name(path.name + ".part")
    written = 0
    try:
        with open(tmp_path, "wb") as f:
            for chunk in chunks:
                f.write(chunk)
                written += len(chunk)
        os.replace(tmp_path, path)
    except BaseException:
        if tmp_path.exists():
            tmp_path.unlink()
        raise
    return written


class BinaryFrameWriter:
    """
    Serialize a PointCloudFrame to a self-contained .vtk file.

    Each point is also a vertex (one poly-vertex cell), so generic mesh
    viewers display bare points. The `ij` point field pairs every point
    with its index in the sensor buffer.

    Usage:
        writer = BinaryFrameWriter()
        writer.write("recordings/pc_12000000_000.vtk", frame)
    """

    INDEX_FIELD = "ij"

    def encode(self, frame: PointCloudFrame) -> List[bytes]:
        """
        Build the file contents for a frame.

        Raises:
            FormatError: If the coordinates disagree with frame.point_count
        """
        count = int(frame.point_count)
        coords = np.asarray(frame.coordinates, dtype=np.float32)
        if coords.size != count * 3:
            raise FormatError(
                f"frame declares {count} points but carries {coords.size} coordinates"
            )
        coords = coords.reshape(count, 3)

        chunks = _points_block(coords, count)
        chunks += _single_cell_block("VERTICES", count)
        chunks += [
            b"\nFIELD FieldData 1\ntimestamp 1 1 float\n",
            _check_block(
                "timestamp",
                np.array([frame.timestamp], dtype=FLOAT_BE).tobytes(),
                1,
                FLOAT_BE,
            ),
            (
                f"\nPOINT_DATA {count}\n"
                f"SCALARS {self.INDEX_FIELD} int 1\n"
                "LOOKUP_TABLE default\n"
            ).encode("ascii"),
            _check_block(
                self.INDEX_FIELD,
                np.arange(count, dtype=INT_BE).tobytes(),
                count,
                INT_BE,
            ),
        ]
        return chunks

    def write(self, path: PathLike, frame: PointCloudFrame) -> int:
        """
        Encode and write a frame.

        Returns:
            Number of bytes written

        Raises:
            FormatError: Nothing is written
            OSError: Disk full, permission denied, invalid path
        """
        return write_atomic(path, self.encode(frame))


class PoseTrajectoryWriter:
    """
    Serialize a session's poses to a .vtk polyline.

    Positions are the polyline vertices in temporal order; orientation
    and timestamp are per-point fields aligned with them.
    """

    def encode_arrays(
        self,
        positions: np.ndarray,
        orientations: np.ndarray,
        timestamps: np.ndarray,
        calibration: CalibrationTransform,
    ) -> List[bytes]:
        positions = np.asarray(positions, dtype=np.float32)
        orientations = np.asarray(orientations, dtype=np.float32)
        timestamps = np.asarray(timestamps, dtype=np.float64)

        if positions.ndim != 2 or positions.shape[1] != 3:
            raise ContractError(f"positions must be (N, 3), got {positions.shape}")
        if orientations.ndim != 2 or orientations.shape[1] != 4:
            raise ContractError(f"orientations must be (N, 4), got {orientations.shape}")
        if timestamps.ndim != 1:
            raise ContractError(f"timestamps must be (N,), got {timestamps.shape}")

        count = positions.shape[0]
        if orientations.shape[0] != count or timestamps.shape[0] != count:
            raise ContractError(
                f"trajectory buffers disagree: {count} positions, "
                f"{orientations.shape[0]} orientations, {timestamps.shape[0]} timestamps"
            )

        chunks = _points_block(positions, count)
        chunks += _single_cell_block("LINES", count)
        chunks += [
            b"\nFIELD FieldData 1\nCam2Dev_transform 16 1 float\n",
            _check_block(
                "Cam2Dev_transform",
                calibration.as_row_major().astype(FLOAT_BE).tobytes(),
                16,
                FLOAT_BE,
            ),
            (
                f"\nPOINT_DATA {count}\n"
                "FIELD FieldData 2\n"
                f"orientation 4 {count} float\n"
            ).encode("ascii"),
            _check_block(
                "orientation",
                orientations.astype(FLOAT_BE).tobytes(),
                count * 4,
                FLOAT_BE,
            ),
            f"\ntimestamp 1 {count} float\n".encode("ascii"),
            _check_block(
                "timestamp",
                timestamps.astype(FLOAT_BE).tobytes(),
                count,
                FLOAT_BE,
            ),
        ]
        return chunks

    def encode(
        self,
        poses: Sequence[PoseSample],
        calibration: CalibrationTransform,
    ) -> List[bytes]:
        # Built per sample so the three arrays cannot drift apart.
        positions = np.zeros((len(poses), 3), dtype=np.float32)
        orientations = np.zeros((len(poses), 4), dtype=np.float32)
        timestamps = np.zeros(len(poses), dtype=np.float64)
        for i, pose in enumerate(poses):
            positions[i] = pose.position
            orientations[i] = pose.orientation
            timestamps[i] = pose.timestamp
        return self.encode_arrays(positions, orientations, timestamps, calibration)

    def write(
        self,
        path: PathLike,
        poses: Sequence[PoseSample],
        calibration: CalibrationTransform,
    ) -> int:
        """
        Write a trajectory built from pose samples.

        Returns:
            Number of bytes written
        """
        return write_atomic(path, self.encode(poses, calibration))

    def write_arrays(
        self,
        path: PathLike,
        positions: np.ndarray,
        orientations: np.ndarray,
        timestamps: np.ndarray,
        calibration: CalibrationTransform,
    ) -> int:
        """
        Write a trajectory from pre-built arrays.

        Raises:
            ContractError: Array lengths differ; nothing is written
        """
        return write_atomic(
            path, self.encode_arrays(positions, orientations, timestamps, calibration)
        )
