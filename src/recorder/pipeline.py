"""
Frame ingest pipeline that ties the recorder components together.

Provides the processing chain:
- Pose event -> PoseBuffer (while recording)
- Depth event -> capture decision -> writer pool -> .vtk file
- Recording off -> trajectory file -> session archive -> archive callback

Sensor callbacks never block on disk I/O: writes run on a bounded pool
of writer threads, and session archiving runs on its own worker.
"""

import queue
import threading
import time
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from .archive import SessionArchiver
from .config import RecorderConfig
from .controller import CaptureReservation, RecordingController, SessionCloseHandle
from .errors import ContractError, FormatError
from .events import (
    CalibrationTransform, DepthEvent, PointCloudFrame, PoseEvent, PoseSample, PoseStatus
)
from .logging_utils import get_logger
from .metrics import RecorderMetrics
from .vtk import BinaryFrameWriter, PoseTrajectoryWriter

logger = get_logger(__name__)


class WorkerPool:
    """
    Fixed set of worker threads consuming jobs from a bounded queue.

    Usage:
        pool = WorkerPool("writer", workers=2, queue_size=64)
        pool.start()
        pool.submit(lambda: do_work())
        pool.wait_idle(timeout=5.0)
        pool.stop()
    """

    def __init__(self, name: str, workers: int = 1, queue_size: int = 0):
        """
        Args:
            name: Thread name prefix, also used in log messages
            workers: Number of worker threads
            queue_size: Maximum queued jobs (0 = unbounded)
        """
        if workers <= 0:
            raise ValueError("workers must be > 0")
        self.name = name
        self.workers = workers
        self._queue: queue.Queue = queue.Queue(maxsize=queue_size)
        self._threads: List[threading.Thread] = []
        self._lock = threading.Lock()
        self._running = False
        self._pending = 0
        self._idle = threading.Condition()

    def start(self) -> None:
        with self._lock:
            if self._running:
                return
            self._running = True
            for i in range(self.workers):
                thread = threading.Thread(
                    target=self._worker_loop, name=f"{self.name}-{i}", daemon=True
                )
                thread.start()
                self._threads.append(thread)

    def submit(self, job: Callable[[], Any], block: bool = False) -> bool:
        """
        Queue a job.

        Returns:
            False if the pool is stopped or the queue is full
        """
        with self._lock:
            if not self._running:
                return False
            with self._idle:
                self._pending += 1
            try:
                self._queue.put(job, block=block)
            except queue.Full:
                self._job_finished()
                return False
        return True

    def _worker_loop(self) -> None:
        while True:
            job = self._queue.get()
            if job is None:
                break
            try:
                job()
            except Exception:
                logger.exception("%s job failed", self.name)
            finally:
                self._job_finished()

    def _job_finished(self) -> None:
        with self._idle:
            self._pending -= 1
            if self._pending == 0:
                self._idle.notify_all()

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """Block until every submitted job has finished."""
        with self._idle:
            return self._idle.wait_for(lambda: self._pending == 0, timeout)

    def stop(self, timeout: float = 5.0) -> None:
        with self._lock:
            if not self._running:
                return
            self._running = False
            threads, self._threads = self._threads, []

        for _ in threads:
            self._queue.put(None)
        for thread in threads:
            thread.join(timeout=timeout)

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def pending(self) -> int:
        with self._idle:
            return self._pending


class FrameIngestPipeline:
    """
    Per-frame coordinator for capture, serialization and archiving.

    Usage:
        pipeline = FrameIngestPipeline(RecorderConfig(recordings_dir="./rec"), calibration)
        pipeline.set_archive_callback(share)
        pipeline.start()
        pipeline.set_recording(True)
        # sensor thread: pipeline.on_pose(...), pipeline.on_point_cloud(...)
        pipeline.set_recording(False)
        pipeline.stop()
    """

    def __init__(
        self,
        config: Optional[RecorderConfig] = None,
        calibration: Optional[CalibrationTransform] = None,
        controller: Optional[RecordingController] = None,
        metrics: Optional[RecorderMetrics] = None,
        frame_writer: Optional[BinaryFrameWriter] = None,
        trajectory_writer: Optional[PoseTrajectoryWriter] = None,
        archiver: Optional[SessionArchiver] = None,
    ):
        """
        Initialize the pipeline.

        Args:
            config: Recorder configuration (defaults when omitted)
            calibration: Camera-to-device transform written with each trajectory
            controller: Recording controller (built from config when omitted)
            metrics: Metrics collector
            frame_writer: Point-cloud frame writer
            trajectory_writer: Pose trajectory writer
            archiver: Session archiver
        """
        self.config = config or RecorderConfig()
        self.calibration = calibration or CalibrationTransform.identity()

        self.controller = controller or RecordingController(
            recordings_dir=self.config.recordings_dir,
            file_prefix=self.config.file_prefix,
            auto_mode_stride=self.config.auto_mode_stride,
        )
        self.metrics = metrics or RecorderMetrics()
        self.frame_writer = frame_writer or BinaryFrameWriter()
        self.trajectory_writer = trajectory_writer or PoseTrajectoryWriter()
        self.archiver = archiver or SessionArchiver(prefix=self.config.archive_prefix)

        self._writer_pool = WorkerPool(
            "vtk-writer",
            workers=self.config.writer_workers,
            queue_size=self.config.write_queue_size,
        )
        self._archive_pool = WorkerPool("session-archiver", workers=1)

        # Callbacks
        self._frame_callback: Optional[Callable[[PointCloudFrame], None]] = None
        self._archive_callback: Optional[Callable[[Path], None]] = None

        self._archives: Dict[str, Path] = {}
        self._archives_lock = threading.Lock()
        self.start_time: Optional[float] = None

    def set_frame_callback(self, callback: Callable[[PointCloudFrame], None]) -> None:
        """Set callback receiving every frame (rendering)."""
        self._frame_callback = callback

    def set_archive_callback(self, callback: Callable[[Path], None]) -> None:
        """Set callback receiving each finished archive (sharing)."""
        self._archive_callback = callback

    def start(self) -> None:
        if self.is_running:
            return
        Path(self.config.recordings_dir).mkdir(parents=True, exist_ok=True)
        self.start_time = time.time()
        self._writer_pool.start()
        self._archive_pool.start()

    def stop(self, timeout: float = 10.0) -> Dict[str, Any]:
        """
        Stop the pipeline, closing an active session first.

        Returns:
            Summary of the run
        """
        if self.controller.is_recording:
            self.set_recording(False)

        self._writer_pool.wait_idle(timeout)
        self._archive_pool.wait_idle(timeout)
        self._writer_pool.stop()
        self._archive_pool.stop()

        summary = self.metrics.get_summary()
        return {
            "frames_received": summary["frames"]["received"],
            "frames_captured": summary["writes"]["captured"],
            "write_failures": summary["writes"]["failed"],
            "sessions_archived": summary["archives"]["sessions_archived"],
            "duration_seconds": time.time() - self.start_time if self.start_time else 0,
        }

    # Control surface (user thread)

    def set_recording(self, enabled: bool) -> Optional[SessionCloseHandle]:
        """
        Toggle recording; stopping schedules the session archive.

        Returns:
            The close handle when a session was stopped
        """
        handle = self.controller.set_recording(enabled)
        if handle is None:
            return None

        if not self._archive_pool.submit(lambda: self._close_session(handle), block=True):
            logger.warning("Archive worker not running; closing session %s inline", handle.session_id)
            self._close_session(handle)
        return handle

    def request_snapshot(self) -> None:
        self.controller.request_snapshot()

    def set_auto_mode(self, enabled: bool) -> None:
        self.controller.set_auto_mode(enabled)

    # Sensor callbacks

    def on_pose(self, event: PoseEvent) -> bool:
        """
        Handle a pose event.

        Returns:
            True if the pose was added to the session trajectory
        """
        recorded = False
        if event.status == PoseStatus.VALID:
            recorded = self.controller.record_pose(PoseSample.from_event(event))
        self.metrics.record_pose(recorded)
        return recorded

    def on_point_cloud(self, event: DepthEvent) -> Optional[CaptureReservation]:
        """
        Handle a depth event.

        Returns:
            The capture reservation if this frame is being saved
        """
        try:
            frame = PointCloudFrame.from_event(event)
        except FormatError as e:
            logger.warning("Discarding undecodable depth frame at %.3f: %s", event.timestamp, e)
            self.metrics.record_write_failure()
            return None

        self.metrics.record_frame(frame.timestamp, frame.point_count)

        frame_index = self.controller.next_frame_index()
        reservation = self.controller.reserve_capture(frame_index)
        if reservation is not None:
            if not self._writer_pool.submit(lambda: self._write_frame(reservation, frame)):
                logger.warning(
                    "Write queue unavailable; frame %d (%s) dropped",
                    frame_index, reservation.path.name,
                )
                self.metrics.record_drop()
                reservation.complete(False)

        if self._frame_callback:
            try:
                self._frame_callback(frame)
            except Exception:
                logger.exception("Frame callback failed")

        return reservation

    # Jobs (worker threads)

    def _write_frame(self, reservation: CaptureReservation, frame: PointCloudFrame) -> None:
        succeeded = False
        try:
            num_bytes = self.frame_writer.write(reservation.path, frame)
            succeeded = True
        except (OSError, FormatError) as e:
            logger.warning("Failed to write %s: %s", reservation.path, e)
            self.metrics.record_write_failure()
        else:
            self.metrics.record_write(str(reservation.path), num_bytes)
            logger.debug("Wrote %s (%d points)", reservation.path.name, frame.point_count)
        finally:
            reservation.complete(succeeded)

    def _close_session(self, handle: SessionCloseHandle) -> Optional[Path]:
        """Write the trajectory, archive the session and hand the archive on."""
        # Every reservation is completed by its writer or the drop path
        deadline = time.monotonic() + self.config.archive_wait_timeout
        for reservation in handle.reservations:
            if not reservation.wait(max(0.0, deadline - time.monotonic())):
                logger.warning(
                    "Session %s: %s still being written, archive waits for it",
                    handle.session_id, reservation.path.name,
                )
                reservation.wait()

        files = [r.path for r in handle.reservations if r.succeeded]

        try:
            self.trajectory_writer.write(handle.trajectory_path, handle.poses, self.calibration)
            files.append(handle.trajectory_path)
        except (OSError, ContractError) as e:
            logger.error("Session %s: trajectory not written: %s", handle.session_id, e)

        try:
            archive_path = self.archiver.archive(
                handle.session_id, files, self.config.resolved_archive_dir
            )
        except OSError as e:
            logger.error("Session %s: archive failed: %s", handle.session_id, e)
            self.metrics.record_archive(None)
            return None

        self.metrics.record_archive(str(archive_path))
        with self._archives_lock:
            self._archives[handle.session_id] = archive_path

        if self._archive_callback:
            try:
                self._archive_callback(archive_path)
            except Exception:
                logger.exception("Archive callback failed for %s", archive_path)

        return archive_path

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """Wait until queued writes and archives have finished."""
        return self._writer_pool.wait_idle(timeout) and self._archive_pool.wait_idle(timeout)

    def archive_for(self, session_id: str) -> Optional[Path]:
        with self._archives_lock:
            return self._archives.get(session_id)

    @property
    def archives(self) -> List[Path]:
        with self._archives_lock:
            return list(self._archives.values())

    @property
    def is_running(self) -> bool:
        return self._writer_pool.is_running

    def get_status(self) -> Dict[str, Any]:
        """Get current pipeline status."""
        return {
            "running": self.is_running,
            "uptime_seconds": time.time() - self.start_time if self.start_time else 0,
            "pending_writes": self._writer_pool.pending,
            "pending_archives": self._archive_pool.pending,
            "controller": self.controller.get_status(),
            "metrics": self.metrics.get_summary(),
        }
