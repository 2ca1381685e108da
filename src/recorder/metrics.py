"""
Metrics module for monitoring the recording pipeline.

Provides functionality to:
- Track incoming frame rate and per-session capture counts
- Count failed and dropped writes, bytes written, archived sessions
- Export metrics for visualization (JSON, Prometheus format)
"""

import time
from datetime import datetime
from typing import Optional, Dict, Any
from dataclasses import dataclass
from collections import deque
import threading
import json


@dataclass
class WriteStats:
    """Counters for capture writes."""
    captured: int = 0
    failed: int = 0
    dropped: int = 0
    bytes_written: int = 0
    last_path: Optional[str] = None


class RecorderMetrics:
    """
    Thread-safe metrics collector for the recorder.

    Usage:
        metrics = RecorderMetrics()
        metrics.record_frame(timestamp=12.5, point_count=9000)
        metrics.record_write("recordings/pc_..._000.vtk", 108_345)
        summary = metrics.get_summary()
    """

    def __init__(self, history_size: int = 60):
        """
        Initialize metrics collector.

        Args:
            history_size: Number of frames to keep for the rolling frame rate
        """
        self.history_size = history_size
        self._lock = threading.Lock()
        self._start_time = time.time()
        self._frames_received = 0
        self._poses_received = 0
        self._poses_recorded = 0
        self._sessions_archived = 0
        self._archive_failures = 0
        self._last_point_count = 0
        self._last_archive: Optional[str] = None
        self._writes = WriteStats()

        # Rolling window of sensor timestamps (seconds)
        self._frame_times: deque = deque(maxlen=history_size)

    def record_frame(self, timestamp: float, point_count: int) -> None:
        with self._lock:
            self._frames_received += 1
            self._last_point_count = int(point_count)
            self._frame_times.append(float(timestamp))

    def record_pose(self, recorded: bool) -> None:
        with self._lock:
            self._poses_received += 1
            if recorded:
                self._poses_recorded += 1

    def record_write(self, path: str, num_bytes: int) -> None:
        with self._lock:
            self._writes.captured += 1
            self._writes.bytes_written += int(num_bytes)
            self._writes.last_path = str(path)

    def record_write_failure(self) -> None:
        with self._lock:
            self._writes.failed += 1

    def record_drop(self) -> None:
        """A capture was reserved but never reached a writer."""
        with self._lock:
            self._writes.dropped += 1

    def record_archive(self, path: Optional[str]) -> None:
        with self._lock:
            if path is None:
                self._archive_failures += 1
            else:
                self._sessions_archived += 1
                self._last_archive = str(path)

    def _frame_rate(self) -> float:
        if len(self._frame_times) < 2:
            return 0.0
        time_span = self._frame_times[-1] - self._frame_times[0]
        if time_span <= 0:
            return 0.0
        return (len(self._frame_times) - 1) / time_span

    def get_summary(self) -> Dict[str, Any]:
        """
        Get a complete metrics summary.

        Returns:
            Dictionary containing all metrics
        """
        with self._lock:
            return {
                "timestamp": datetime.now().isoformat(),
                "uptime_seconds": round(time.time() - self._start_time, 2),
                "frames": {
                    "received": self._frames_received,
                    "fps": round(self._frame_rate(), 2),
                    "last_point_count": self._last_point_count,
                },
                "poses": {
                    "received": self._poses_received,
                    "recorded": self._poses_recorded,
                },
                "writes": {
                    "captured": self._writes.captured,
                    "failed": self._writes.failed,
                    "dropped": self._writes.dropped,
                    "bytes_written": self._writes.bytes_written,
                    "last_path": self._writes.last_path,
                },
                "archives": {
                    "sessions_archived": self._sessions_archived,
                    "failures": self._archive_failures,
                    "last_archive": self._last_archive,
                },
            }

    def export_prometheus(self) -> str:
        """
        Export metrics in Prometheus text format.

        Returns:
            Prometheus-formatted metrics string
        """
        summary = self.get_summary()

        lines = [
            "# HELP recorder_frames_total Total depth frames received",
            "# TYPE recorder_frames_total counter",
            f"recorder_frames_total {summary['frames']['received']}",
            "",
            "# HELP recorder_fps Current depth frame rate",
            "# TYPE recorder_fps gauge",
            f"recorder_fps {summary['frames']['fps']}",
            "",
            "# HELP recorder_captures_total Frames written to disk",
            "# TYPE recorder_captures_total counter",
            f"recorder_captures_total {summary['writes']['captured']}",
            "",
            "# HELP recorder_write_failures_total Failed or dropped frame writes",
            "# TYPE recorder_write_failures_total counter",
            f'recorder_write_failures_total{{reason="error"}} {summary["writes"]["failed"]}',
            f'recorder_write_failures_total{{reason="dropped"}} {summary["writes"]["dropped"]}',
            "",
            "# HELP recorder_bytes_written_total Bytes of capture files written",
            "# TYPE recorder_bytes_written_total counter",
            f"recorder_bytes_written_total {summary['writes']['bytes_written']}",
            "",
            "# HELP recorder_sessions_archived_total Sessions packaged into archives",
            "# TYPE recorder_sessions_archived_total counter",
            f"recorder_sessions_archived_total {summary['archives']['sessions_archived']}",
        ]

        return "\n".join(lines)

    def reset(self) -> None:
        """Reset all metrics."""
        with self._lock:
            self._frames_received = 0
            self._poses_received = 0
            self._poses_recorded = 0
            self._sessions_archived = 0
            self._archive_failures = 0
            self._last_point_count = 0
            self._last_archive = None
            self._writes = WriteStats()
            self._frame_times.clear()
            self._start_time = time.time()


class MetricsExporter:
    """
    Export metrics to file.
    """

    @staticmethod
    def to_json(metrics: Dict[str, Any], filepath: str) -> None:
        """Write metrics to JSON file."""
        with open(filepath, 'w') as f:
            json.dump(metrics, f, indent=2)

    @staticmethod
    def to_prometheus_file(metrics: RecorderMetrics, filepath: str) -> None:
        """Write Prometheus-format metrics to file."""
        with open(filepath, 'w') as f:
            f.write(metrics.export_prometheus())
