import sys
import threading
import time
import zipfile
from pathlib import Path

import numpy as np
import pytest

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / 'src'
assert SRC.exists(), f"Source path not found: {SRC}"
sys.path.insert(0, str(SRC))

from recorder.config import RecorderConfig  # type: ignore
from recorder.events import DepthEvent, PoseEvent, PoseStatus  # type: ignore
from recorder.pipeline import FrameIngestPipeline, WorkerPool  # type: ignore
from recorder.vtk import BinaryFrameWriter  # type: ignore


def _depth(t: float, n: int = 4) -> DepthEvent:
    coords = np.arange(n * 3, dtype="<f4")
    return DepthEvent(timestamp=t, point_count=n, raw_buffer=coords.tobytes())


def _pose(t: float, status=PoseStatus.VALID) -> PoseEvent:
    return PoseEvent(timestamp=t, status=status, translation=(t, 0.0, 0.0), rotation=(0.0, 0.0, 0.0, 1.0))


class FailingWriter(BinaryFrameWriter):
    def write(self, path, frame):
        raise OSError("disk full")


class FirstFileFailsWriter(BinaryFrameWriter):
    def write(self, path, frame):
        if Path(path).name.endswith("_000.vtk"):
            raise OSError("disk full")
        return super().write(path, frame)


class SlowWriter(BinaryFrameWriter):
    def write(self, path, frame):
        time.sleep(0.5)
        return super().write(path, frame)


@pytest.fixture()
def pipeline(tmp_path):
    p = FrameIngestPipeline(RecorderConfig(recordings_dir=str(tmp_path / "rec")))
    p.start()
    yield p
    p.stop()


def test_snapshot_session_end_to_end(pipeline, tmp_path):
    archived = []
    done = threading.Event()

    def _on_archive(path):
        archived.append(path)
        done.set()

    pipeline.set_archive_callback(_on_archive)
    pipeline.set_recording(True)
    session_id = pipeline.controller.session_id

    for i in range(5):
        pipeline.on_pose(_pose(0.1 * (i + 1)))
    for i in range(1, 6):
        if i == 3:
            pipeline.request_snapshot()
        pipeline.on_point_cloud(_depth(float(i)))

    handle = pipeline.set_recording(False)
    assert done.wait(timeout=10.0)

    assert handle.session_id == session_id
    assert handle.pose_count == 5
    zip_path = archived[0]
    assert zip_path.name == f"TangoData_{session_id}_2files.zip"
    with zipfile.ZipFile(zip_path) as zf:
        assert sorted(zf.namelist()) == [f"pc_{session_id}_000.vtk", f"pc_{session_id}_poses.vtk"]
    assert list((tmp_path / "rec").glob("*.vtk")) == []
    assert pipeline.archive_for(session_id) == zip_path


def test_auto_mode_writes_every_third_frame(pipeline):
    pipeline.set_auto_mode(True)
    pipeline.set_recording(True)

    reservations = [pipeline.on_point_cloud(_depth(float(i))) for i in range(1, 10)]
    captured = [r for r in reservations if r is not None]
    assert [r.frame_index for r in captured] == [3, 6, 9]

    handle = pipeline.set_recording(False)
    assert pipeline.wait_idle(timeout=10.0)

    assert all(r.succeeded for r in captured)
    assert pipeline.archive_for(handle.session_id).name.endswith("_4files.zip")
    assert pipeline.metrics.get_summary()["writes"]["captured"] == 3


def test_only_valid_poses_are_recorded(pipeline):
    pipeline.set_recording(True)
    assert pipeline.on_pose(_pose(0.1)) is True
    assert pipeline.on_pose(_pose(0.2, PoseStatus.INVALID)) is False
    assert pipeline.on_pose(_pose(0.3, PoseStatus.INITIALIZING)) is False

    handle = pipeline.set_recording(False)
    assert handle.pose_count == 1
    assert pipeline.metrics.get_summary()["poses"] == {"received": 3, "recorded": 1}


def test_poses_outside_session_are_discarded(pipeline):
    assert pipeline.on_pose(_pose(0.1)) is False


def test_failed_write_is_left_out_of_archive(tmp_path):
    pipeline = FrameIngestPipeline(
        RecorderConfig(recordings_dir=str(tmp_path)), frame_writer=FailingWriter()
    )
    pipeline.start()
    pipeline.set_recording(True)
    pipeline.request_snapshot()
    reservation = pipeline.on_point_cloud(_depth(1.0))

    handle = pipeline.set_recording(False)
    assert pipeline.wait_idle(timeout=10.0)
    summary = pipeline.stop()

    assert reservation.succeeded is False
    assert summary["write_failures"] == 1
    zip_path = pipeline.archive_for(handle.session_id)
    with zipfile.ZipFile(zip_path) as zf:
        assert zf.namelist() == [f"pc_{handle.session_id}_poses.vtk"]


def test_failed_write_keeps_sequence_and_stream_going(tmp_path):
    pipeline = FrameIngestPipeline(
        RecorderConfig(recordings_dir=str(tmp_path)), frame_writer=FirstFileFailsWriter()
    )
    frames = []
    pipeline.set_frame_callback(frames.append)
    pipeline.start()
    pipeline.set_recording(True)
    session_id = pipeline.controller.session_id

    pipeline.request_snapshot()
    first = pipeline.on_point_cloud(_depth(1.0))
    assert first.wait(timeout=10.0)
    assert first.succeeded is False

    assert pipeline.on_point_cloud(_depth(2.0)) is None
    pipeline.request_snapshot()
    second = pipeline.on_point_cloud(_depth(3.0))

    handle = pipeline.set_recording(False)
    assert pipeline.wait_idle(timeout=10.0)
    summary = pipeline.stop()

    assert first.sequence_number == 0
    assert second.sequence_number == 1
    assert second.path.name == f"pc_{session_id}_001.vtk"
    assert second.succeeded is True
    assert len(frames) == 3
    assert summary["write_failures"] == 1
    assert summary["frames_captured"] == 1
    zip_path = pipeline.archive_for(handle.session_id)
    assert zip_path.name == f"TangoData_{session_id}_2files.zip"
    with zipfile.ZipFile(zip_path) as zf:
        assert sorted(zf.namelist()) == [f"pc_{session_id}_001.vtk", f"pc_{session_id}_poses.vtk"]


def test_slow_write_still_reaches_archive(tmp_path):
    pipeline = FrameIngestPipeline(
        RecorderConfig(recordings_dir=str(tmp_path), archive_wait_timeout=0.1),
        frame_writer=SlowWriter(),
    )
    pipeline.start()
    pipeline.set_recording(True)
    session_id = pipeline.controller.session_id
    pipeline.request_snapshot()
    reservation = pipeline.on_point_cloud(_depth(1.0))

    handle = pipeline.set_recording(False)
    assert pipeline.wait_idle(timeout=10.0)
    pipeline.stop()

    assert reservation.succeeded is True
    zip_path = pipeline.archive_for(handle.session_id)
    assert zip_path.name == f"TangoData_{session_id}_2files.zip"
    with zipfile.ZipFile(zip_path) as zf:
        assert sorted(zf.namelist()) == [f"pc_{session_id}_000.vtk", f"pc_{session_id}_poses.vtk"]
    assert list(tmp_path.glob("*.vtk")) == []


def test_negative_byte_offset_is_skipped(pipeline):
    pipeline.set_recording(True)
    pipeline.request_snapshot()
    bad = DepthEvent(timestamp=1.0, point_count=1, raw_buffer=b"\x00" * 24, raw_byte_offset=-12)

    assert pipeline.on_point_cloud(bad) is None
    assert pipeline.on_point_cloud(_depth(2.0)) is not None


def test_capture_without_writer_is_dropped_and_closed_inline(tmp_path):
    pipeline = FrameIngestPipeline(RecorderConfig(recordings_dir=str(tmp_path)))
    pipeline.set_recording(True)
    pipeline.request_snapshot()

    reservation = pipeline.on_point_cloud(_depth(1.0))
    assert reservation.done and reservation.succeeded is False
    assert pipeline.metrics.get_summary()["writes"]["dropped"] == 1

    handle = pipeline.set_recording(False)
    zip_path = pipeline.archive_for(handle.session_id)
    assert zip_path is not None and zip_path.name.endswith("_1files.zip")


def test_undecodable_frame_is_skipped(pipeline):
    frames = []
    pipeline.set_frame_callback(frames.append)
    pipeline.set_recording(True)
    pipeline.request_snapshot()

    bad = DepthEvent(timestamp=1.0, point_count=10, raw_buffer=b"\x00" * 12)
    assert pipeline.on_point_cloud(bad) is None
    assert frames == []
    assert pipeline.controller.snapshot_state().pending_snapshot is True


def test_frame_callback_errors_do_not_stop_capture(pipeline):
    def _boom(frame):
        raise RuntimeError("render failed")

    pipeline.set_frame_callback(_boom)
    pipeline.set_recording(True)
    pipeline.request_snapshot()
    assert pipeline.on_point_cloud(_depth(1.0)) is not None


def test_stop_closes_active_session(tmp_path):
    pipeline = FrameIngestPipeline(RecorderConfig(recordings_dir=str(tmp_path)))
    pipeline.start()
    pipeline.set_recording(True)
    session_id = pipeline.controller.session_id

    summary = pipeline.stop()

    assert summary["sessions_archived"] == 1
    assert pipeline.archive_for(session_id) is not None
    assert not pipeline.is_running


def test_consecutive_sessions_get_separate_archives(pipeline):
    ids = []
    for _ in range(2):
        pipeline.set_recording(True)
        ids.append(pipeline.controller.session_id)
        pipeline.request_snapshot()
        pipeline.on_point_cloud(_depth(1.0))
        pipeline.set_recording(False)
    assert pipeline.wait_idle(timeout=10.0)

    assert ids[0] != ids[1]
    assert len(pipeline.archives) == 2


def test_worker_pool_rejects_when_full_or_stopped():
    pool = WorkerPool("test", workers=1, queue_size=1)
    assert pool.submit(lambda: None) is False

    gate = threading.Event()
    started = threading.Event()

    def _block():
        started.set()
        gate.wait(5.0)

    pool.start()
    assert pool.submit(_block)
    assert started.wait(5.0)
    assert pool.submit(lambda: None)
    assert pool.submit(lambda: None) is False

    gate.set()
    assert pool.wait_idle(timeout=5.0)
    pool.stop()
    assert pool.submit(lambda: None) is False
