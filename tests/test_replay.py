import sys
import threading
import zipfile
from pathlib import Path

import numpy as np
import pytest

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / 'src'
assert SRC.exists(), f"Source path not found: {SRC}"
sys.path.insert(0, str(SRC))

from recorder.archive import SessionArchiver  # type: ignore
from recorder.errors import FormatError  # type: ignore
from recorder.events import CalibrationTransform, PointCloudFrame, PoseEvent, PoseSample, PoseStatus  # type: ignore
from recorder.replay import SessionReplay, read_polydata, validate_archive_integrity  # type: ignore
from recorder.vtk import BinaryFrameWriter, PoseTrajectoryWriter  # type: ignore


def _frame(t: float, n: int) -> PointCloudFrame:
    coords = (np.arange(n * 3, dtype=np.float32) + t).reshape(n, 3)
    return PointCloudFrame(timestamp=t, point_count=n, coordinates=coords)


def _poses(k: int):
    return [
        PoseSample.from_event(PoseEvent(0.1 * (i + 1), PoseStatus.VALID, (i, 0, 0), (0, 0, 0, 1)))
        for i in range(k)
    ]


def _write_session(directory: Path, session_id: str, sequence_numbers, with_trajectory=True):
    writer = BinaryFrameWriter()
    files = []
    for seq in sequence_numbers:
        path = directory / f"pc_{session_id}_{seq:03d}.vtk"
        writer.write(path, _frame(float(seq), 3 + seq))
        files.append(path)
    if with_trajectory:
        path = directory / f"pc_{session_id}_poses.vtk"
        PoseTrajectoryWriter().write(path, _poses(4), CalibrationTransform.from_row_major(range(16)))
        files.append(path)
    return SessionArchiver().archive(session_id, files, directory)


def test_read_polydata_frame(tmp_path):
    path = tmp_path / "f.vtk"
    frame = _frame(2.5, 4)
    BinaryFrameWriter().write(path, frame)

    poly = read_polydata(path)

    assert poly.point_count == 4
    np.testing.assert_array_equal(poly.points, frame.coordinates)
    assert len(poly.vertices) == 1
    assert poly.vertices[0].tolist() == [0, 1, 2, 3]
    assert float(poly.field_data["timestamp"][0, 0]) == pytest.approx(2.5)
    assert poly.point_data["ij"].reshape(-1).tolist() == [0, 1, 2, 3]


def test_read_polydata_empty_frame(tmp_path):
    path = tmp_path / "f.vtk"
    BinaryFrameWriter().write(path, _frame(0.0, 0))

    poly = read_polydata(path.read_bytes())

    assert poly.point_count == 0
    assert poly.vertices == []


def test_read_polydata_trajectory(tmp_path):
    path = tmp_path / "poses.vtk"
    PoseTrajectoryWriter().write(path, _poses(3), CalibrationTransform.identity())

    poly = read_polydata(path)

    assert poly.points[:, 0].tolist() == [0.0, 1.0, 2.0]
    assert poly.lines[0].tolist() == [0, 1, 2]
    np.testing.assert_array_equal(poly.field_data["Cam2Dev_transform"].reshape(4, 4), np.eye(4))
    assert poly.point_data["orientation"].shape == (3, 4)
    assert poly.point_data["timestamp"].reshape(-1).tolist() == pytest.approx([0.1, 0.2, 0.3])


def test_truncated_file_is_rejected(tmp_path):
    path = tmp_path / "f.vtk"
    BinaryFrameWriter().write(path, _frame(1.0, 5))
    data = path.read_bytes()

    with pytest.raises(FormatError):
        read_polydata(data[:-7])


def test_session_replay_orders_frames_and_loads_trajectory(tmp_path):
    zip_path = _write_session(tmp_path, "S1", [2, 0, 1])

    replay = SessionReplay(str(zip_path))

    assert [f.sequence_number for f in replay.frames] == [0, 1, 2]
    assert [f.point_count for f in replay.frames] == [3, 4, 5]
    assert replay.trajectory.pose_count == 4
    assert replay.trajectory.calibration[0].tolist() == [0.0, 1.0, 2.0, 3.0]
    assert [f.timestamp for f in replay.replay(realtime=False)] == [0.0, 1.0, 2.0]


def test_realtime_replay_with_callback(tmp_path):
    zip_path = _write_session(tmp_path, "S2", [0, 1])
    replay = SessionReplay(str(zip_path))
    received = []
    finished = threading.Event()

    replay.start_realtime_replay(received.append, speed=100.0, on_complete=finished.set)

    assert finished.wait(timeout=5.0)
    replay.stop()
    assert [f.sequence_number for f in received] == [0, 1]


def test_missing_archive_raises(tmp_path):
    with pytest.raises(FileNotFoundError):
        SessionReplay(str(tmp_path / "nope.zip"))


def test_valid_archive(tmp_path):
    zip_path = _write_session(tmp_path, "S3", [0, 1, 2])

    result = validate_archive_integrity(str(zip_path))

    assert result["valid"], result["errors"]
    assert result["warnings"] == []
    assert result["stats"]["total_frames"] == 3
    assert result["stats"]["total_points"] == 3 + 4 + 5
    assert result["stats"]["poses"] == 4


def test_sequence_gap_is_a_warning(tmp_path):
    zip_path = _write_session(tmp_path, "S4", [0, 2])

    result = validate_archive_integrity(str(zip_path))

    assert result["valid"]
    assert any("missing" in w for w in result["warnings"])


def test_missing_trajectory_is_an_error(tmp_path):
    zip_path = _write_session(tmp_path, "S5", [0], with_trajectory=False)

    result = validate_archive_integrity(str(zip_path))

    assert not result["valid"]


def test_wrong_declared_count_is_an_error(tmp_path):
    zip_path = _write_session(tmp_path, "S6", [0])
    renamed = zip_path.with_name("TangoData_S6_5files.zip")
    zip_path.rename(renamed)

    result = validate_archive_integrity(str(renamed))

    assert not result["valid"]


def test_corrupt_entry_is_an_error(tmp_path):
    zip_path = tmp_path / "TangoData_S7_1files.zip"
    with zipfile.ZipFile(zip_path, "w") as zf:
        zf.writestr("pc_S7_000.vtk", b"# vtk DataFile Version 3.0\nvtk output\nBINARY\nDATASET POLYDATA\nPOINTS 9 float\n")

    result = validate_archive_integrity(str(zip_path))

    assert not result["valid"]
    assert result["errors"]
