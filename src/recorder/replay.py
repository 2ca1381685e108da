"""
Replay module for reading back recorded sessions.

Provides functionality to:
- Parse the binary .vtk files written by the recorder
- Load a session archive and iterate its frames in capture order
- Replay frames with original timing or at accelerated speed
- Validate an archive for integrity and consistency
"""

import re
import time
import zipfile
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Generator, List, Optional, Tuple, Union

import numpy as np

from .archive import ARCHIVE_NAME_RE
from .errors import FormatError
from .vtk import FLOAT_BE, INT_BE

FRAME_NAME_RE = re.compile(r"^(?P<stem>.+)_(?P<seq>\d+)\.vtk$")
TRAJECTORY_NAME_RE = re.compile(r"^(?P<stem>.+)_poses\.vtk$")

_DTYPES = {"float": FLOAT_BE, "int": INT_BE}


@dataclass
class PolyData:
    """Contents of one legacy binary POLYDATA file."""
    title: str
    points: np.ndarray
    vertices: List[np.ndarray] = field(default_factory=list)
    lines: List[np.ndarray] = field(default_factory=list)
    field_data: Dict[str, np.ndarray] = field(default_factory=dict)
    point_data: Dict[str, np.ndarray] = field(default_factory=dict)

    @property
    def point_count(self) -> int:
        return int(self.points.shape[0])


class _Cursor:
    def __init__(self, data: bytes):
        self.data = data
        self.pos = 0

    def line(self) -> str:
        """Next non-empty ASCII line."""
        while True:
            if self.pos >= len(self.data):
                raise FormatError("unexpected end of file")
            end = self.data.find(b"\n", self.pos)
            if end < 0:
                end = len(self.data)
            raw = self.data[self.pos:end]
            self.pos = end + 1
            text = raw.decode("ascii", errors="replace").strip()
            if text:
                return text

    def at_end(self) -> bool:
        return not self.data[self.pos:].strip()

    def values(self, count: int, dtype: np.dtype, what: str) -> np.ndarray:
        size = count * dtype.itemsize
        if self.pos + size > len(self.data):
            raise FormatError(
                f"{what}: {count} values declared, only {len(self.data) - self.pos} bytes left"
            )
        arr = np.frombuffer(self.data, dtype=dtype, count=count, offset=self.pos)
        self.pos += size
        return arr.astype(dtype.newbyteorder("="))


def _split_cells(ids: np.ndarray, cells: int, what: str) -> List[np.ndarray]:
    out = []
    i = 0
    for _ in range(cells):
        if i >= len(ids):
            raise FormatError(f"{what}: cell list shorter than declared")
        n = int(ids[i])
        out.append(ids[i + 1:i + 1 + n].copy())
        i += 1 + n
    if i != len(ids):
        raise FormatError(f"{what}: {len(ids) - i} trailing ids after {cells} cells")
    return out


def _read_field(cur: _Cursor, target: Dict[str, np.ndarray], num_arrays: int) -> None:
    for _ in range(num_arrays):
        parts = cur.line().split()
        if len(parts) != 4:
            raise FormatError(f"bad field array line: {' '.join(parts)!r}")
        name, comps, tuples, type_name = parts[0], int(parts[1]), int(parts[2]), parts[3]
        if type_name not in _DTYPES:
            raise FormatError(f"unsupported field type {type_name!r}")
        values = cur.values(comps * tuples, _DTYPES[type_name], name)
        target[name] = values.reshape(tuples, comps)


def read_polydata(source: Union[str, Path, bytes]) -> PolyData:
    """
    Parse a legacy binary POLYDATA file.

    Args:
        source: File path or raw file contents

    Returns:
        Parsed PolyData

    Raises:
        FormatError: If the contents do not match their declared counts
    """
    data = source if isinstance(source, bytes) else Path(source).read_bytes()
    cur = _Cursor(data)

    if not cur.line().startswith("# vtk DataFile"):
        raise FormatError("missing vtk signature")
    title = cur.line()
    if cur.line() != "BINARY":
        raise FormatError("only BINARY files are supported")
    if cur.line() != "DATASET POLYDATA":
        raise FormatError("only POLYDATA datasets are supported")

    poly = PolyData(title=title, points=np.zeros((0, 3), dtype=np.float32))
    section = poly.field_data
    point_data_count: Optional[int] = None

    while not cur.at_end():
        parts = cur.line().split()
        keyword = parts[0]

        if keyword == "POINTS":
            count = int(parts[1])
            poly.points = cur.values(count * 3, FLOAT_BE, "POINTS").reshape(count, 3)
        elif keyword in ("VERTICES", "LINES"):
            cells, size = int(parts[1]), int(parts[2])
            ids = cur.values(size, INT_BE, keyword)
            target = poly.vertices if keyword == "VERTICES" else poly.lines
            target.extend(_split_cells(ids, cells, keyword))
        elif keyword == "FIELD":
            _read_field(cur, section, int(parts[2]))
        elif keyword == "POINT_DATA":
            point_data_count = int(parts[1])
            if point_data_count != poly.point_count:
                raise FormatError(
                    f"POINT_DATA declares {point_data_count} points, POINTS has {poly.point_count}"
                )
            section = poly.point_data
        elif keyword == "SCALARS":
            if point_data_count is None:
                raise FormatError("SCALARS outside POINT_DATA")
            name, type_name = parts[1], parts[2]
            if type_name not in _DTYPES:
                raise FormatError(f"unsupported scalar type {type_name!r}")
            comps = int(parts[3]) if len(parts) > 3 else 1
            if cur.line().split()[0] != "LOOKUP_TABLE":
                raise FormatError(f"SCALARS {name}: missing LOOKUP_TABLE")
            values = cur.values(point_data_count * comps, _DTYPES[type_name], name)
            poly.point_data[name] = values.reshape(point_data_count, comps)
        else:
            raise FormatError(f"unknown keyword {keyword!r}")

    return poly


@dataclass
class ReplayFrame:
    """A captured frame loaded from an archive."""
    name: str
    session_stem: str
    sequence_number: int
    timestamp: float
    points: np.ndarray

    @property
    def point_count(self) -> int:
        return int(self.points.shape[0])


@dataclass
class Trajectory:
    """Session pose trajectory loaded from an archive."""
    name: str
    positions: np.ndarray
    orientations: np.ndarray
    timestamps: np.ndarray
    calibration: np.ndarray  # 4x4

    @property
    def pose_count(self) -> int:
        return int(self.positions.shape[0])


class SessionReplay:
    """
    Replay a session archive with timing control.

    Usage:
        replay = SessionReplay("recordings/TangoData_2026101912000000_4files.zip")

        # Iterate at max speed
        for frame in replay.replay(realtime=False):
            process(frame)

        # Or on a background thread with original timing
        replay.start_realtime_replay(callback=process)
        replay.stop()
    """

    def __init__(self, archive_path: str):
        """
        Load an archive.

        Args:
            archive_path: Path to the session zip
        """
        self.archive_path = Path(archive_path)
        if not self.archive_path.exists():
            raise FileNotFoundError(f"Archive not found: {archive_path}")

        self._frames: List[ReplayFrame] = []
        self._trajectory: Optional[Trajectory] = None
        self._other_entries: List[str] = []
        self._entry_names: List[str] = []
        self._stop_flag = threading.Event()
        self._replay_thread: Optional[threading.Thread] = None

        self._load_archive()

    def _load_archive(self) -> None:
        with zipfile.ZipFile(self.archive_path) as zf:
            for name in zf.namelist():
                self._entry_names.append(name)
                traj_match = TRAJECTORY_NAME_RE.match(name)
                frame_match = FRAME_NAME_RE.match(name)
                if traj_match:
                    poly = read_polydata(zf.read(name))
                    self._trajectory = Trajectory(
                        name=name,
                        positions=poly.points,
                        orientations=poly.point_data.get("orientation", np.zeros((0, 4), np.float32)),
                        timestamps=poly.point_data.get("timestamp", np.zeros((0, 1), np.float32)).reshape(-1),
                        calibration=poly.field_data["Cam2Dev_transform"].reshape(4, 4),
                    )
                elif frame_match:
                    poly = read_polydata(zf.read(name))
                    timestamp = poly.field_data.get("timestamp")
                    self._frames.append(ReplayFrame(
                        name=name,
                        session_stem=frame_match.group("stem"),
                        sequence_number=int(frame_match.group("seq")),
                        timestamp=float(timestamp.reshape(-1)[0]) if timestamp is not None else 0.0,
                        points=poly.points,
                    ))
                else:
                    self._other_entries.append(name)

        self._frames.sort(key=lambda f: (f.session_stem, f.sequence_number))

    @property
    def frame_count(self) -> int:
        return len(self._frames)

    @property
    def frames(self) -> List[ReplayFrame]:
        return list(self._frames)

    @property
    def trajectory(self) -> Optional[Trajectory]:
        return self._trajectory

    @property
    def entry_names(self) -> List[str]:
        return list(self._entry_names)

    @property
    def unknown_entries(self) -> List[str]:
        return list(self._other_entries)

    def replay(
        self,
        realtime: bool = True,
        speed: float = 1.0,
    ) -> Generator[ReplayFrame, None, None]:
        """
        Replay frames in capture order.

        Args:
            realtime: If True, sleep between frames by their timestamp deltas
            speed: Playback speed multiplier

        Yields:
            ReplayFrame objects in order
        """
        prev_ts: Optional[float] = None
        for frame in self._frames:
            if self._stop_flag.is_set():
                break
            if realtime and prev_ts is not None:
                delay = (frame.timestamp - prev_ts) / speed
                if delay > 0:
                    time.sleep(delay)
            prev_ts = frame.timestamp
            yield frame

    def start_realtime_replay(
        self,
        callback: Callable[[ReplayFrame], None],
        speed: float = 1.0,
        on_complete: Optional[Callable[[], None]] = None,
    ) -> None:
        """
        Start asynchronous realtime replay with callback.

        Args:
            callback: Function to call for each frame
            speed: Playback speed multiplier
            on_complete: Optional callback when replay finishes
        """
        self._stop_flag.clear()

        def _replay_thread():
            try:
                for frame in self.replay(realtime=True, speed=speed):
                    if self._stop_flag.is_set():
                        break
                    callback(frame)
            finally:
                if on_complete:
                    on_complete()

        self._replay_thread = threading.Thread(target=_replay_thread, daemon=True)
        self._replay_thread.start()

    def stop(self) -> None:
        """Stop an ongoing replay."""
        self._stop_flag.set()
        if self._replay_thread:
            self._replay_thread.join(timeout=2.0)

    def get_timestamp_range(self) -> Tuple[float, float]:
        if not self._frames:
            return (0.0, 0.0)
        timestamps = [f.timestamp for f in self._frames]
        return (min(timestamps), max(timestamps))


def validate_archive_integrity(archive_path: str) -> Dict[str, Any]:
    """
    Validate a session archive for integrity and consistency.

    Args:
        archive_path: Path to the session zip

    Returns:
        Validation result dictionary
    """

    result: Dict[str, Any] = {
        "valid": True,
        "errors": [],
        "warnings": [],
        "stats": {},
    }

    try:
        replay = SessionReplay(archive_path)

        match = ARCHIVE_NAME_RE.match(Path(archive_path).name)
        if match is None:
            result["warnings"].append("Archive name does not follow <prefix>_<session>_<n>files.zip")
        elif int(match.group("count")) != len(replay.entry_names):
            result["errors"].append(
                f"Archive name declares {match.group('count')} files, contains {len(replay.entry_names)}"
            )
            result["valid"] = False

        trajectory = replay.trajectory
        if trajectory is None:
            result["errors"].append("Missing pose trajectory")
            result["valid"] = False
        elif not (
            trajectory.pose_count
            == trajectory.orientations.shape[0]
            == trajectory.timestamps.shape[0]
        ):
            result["errors"].append("Trajectory arrays have different lengths")
            result["valid"] = False

        # Gaps come from failed or dropped writes
        by_stem: Dict[str, List[int]] = {}
        for frame in replay.frames:
            by_stem.setdefault(frame.session_stem, []).append(frame.sequence_number)
        for stem, numbers in by_stem.items():
            expected = max(numbers) - min(numbers) + 1
            if expected != len(set(numbers)):
                result["warnings"].append(
                    f"{stem}: {expected - len(set(numbers))} frame(s) missing from sequence"
                )

        for name in replay.unknown_entries:
            result["warnings"].append(f"Unexpected entry: {name}")

        result["stats"] = {
            "total_frames": replay.frame_count,
            "total_points": int(sum(f.point_count for f in replay.frames)),
            "poses": trajectory.pose_count if trajectory is not None else 0,
            "timestamp_range": replay.get_timestamp_range(),
        }

    except (FormatError, zipfile.BadZipFile, OSError, KeyError) as e:
        result["valid"] = False
        result["errors"].append(str(e))

    return result
