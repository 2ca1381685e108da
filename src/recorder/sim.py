"""Synthetic sensor for exercising the recorder without hardware.

This module also provides a small session runner so the full pipeline
(capture decisions, writers, archiving) can be driven deterministically
from a producer thread, and a CLI around it.
"""

from __future__ import annotations

import argparse
import json
import sys
import threading
import time
from datetime import datetime
from pathlib import Path
from typing import Iterable, Iterator

import numpy as np
from scipy.spatial.transform import Rotation

from .config import RecorderConfig, load_calibration
from .events import CalibrationTransform, DepthEvent, PoseEvent, PoseStatus
from .logging_utils import get_logger, setup_logging
from .pipeline import FrameIngestPipeline
from .replay import validate_archive_integrity

logger = get_logger(__name__)


class SyntheticSensor:
    """Deterministic device moving on a horizontal circle, looking outwards.

    Poses arrive `poses_per_frame` times per depth frame. Depth frames are a
    noisy plane in front of the camera, encoded the way the sensor service
    delivers them (little-endian float32 xyz triples behind a byte offset).
    """

    def __init__(
        self,
        seed: int = 0,
        fps: float = 5.0,
        points: int = 500,
        radius_m: float = 1.0,
        omega: float = 0.5,
        noise_m: float = 0.005,
        poses_per_frame: int = 2,
        invalid_pose_rate: float = 0.0,
        raw_byte_offset: int = 0,
    ):
        if fps <= 0.0:
            raise ValueError("fps must be > 0")
        if points < 0:
            raise ValueError("points must be >= 0")
        if poses_per_frame <= 0:
            raise ValueError("poses_per_frame must be > 0")
        if not (0.0 <= invalid_pose_rate <= 1.0):
            raise ValueError("invalid_pose_rate must be in [0, 1]")

        self._rng = np.random.default_rng(int(seed))
        self.fps = float(fps)
        self.points = int(points)
        self.radius_m = float(radius_m)
        self.omega = float(omega)
        self.noise_m = float(noise_m)
        self.poses_per_frame = int(poses_per_frame)
        self.invalid_pose_rate = float(invalid_pose_rate)
        self.raw_byte_offset = int(raw_byte_offset)

    def pose_components(self, t_sec: float) -> tuple[np.ndarray, np.ndarray]:
        """Ground-truth position and x,y,z,w quaternion at time t."""
        angle = self.omega * t_sec
        position = np.array(
            [self.radius_m * np.cos(angle), self.radius_m * np.sin(angle), 1.2],
            dtype=np.float64,
        )
        quat_xyzw = Rotation.from_euler("z", angle + 0.5 * np.pi).as_quat()
        return position, quat_xyzw

    def pose_event(self, t_sec: float) -> PoseEvent:
        position, quat_xyzw = self.pose_components(t_sec)
        status = PoseStatus.VALID
        if self.invalid_pose_rate > 0.0 and float(self._rng.random()) < self.invalid_pose_rate:
            status = PoseStatus.INVALID
        return PoseEvent(
            timestamp=float(t_sec),
            status=status,
            translation=tuple(position.tolist()),
            rotation=tuple(quat_xyzw.tolist()),
        )

    def point_cloud(self) -> np.ndarray:
        """Noisy plane 2 m in front of the camera, shape (N, 3)."""
        xy = self._rng.uniform(-1.0, 1.0, size=(self.points, 2))
        z = 2.0 + self._rng.normal(0.0, self.noise_m, size=(self.points, 1))
        return np.hstack([xy, z]).astype(np.float32)

    def depth_event(self, t_sec: float) -> DepthEvent:
        cloud = self.point_cloud()
        raw = b"\x00" * self.raw_byte_offset + cloud.astype("<f4").tobytes()
        return DepthEvent(
            timestamp=float(t_sec),
            point_count=int(cloud.shape[0]),
            raw_buffer=raw,
            raw_byte_offset=self.raw_byte_offset,
        )

    def events(self, frames: int) -> Iterator[PoseEvent | DepthEvent]:
        """Poses then one depth frame per tick, `frames` ticks in total."""
        dt = 1.0 / self.fps
        for i in range(int(frames)):
            t0 = i * dt
            for k in range(self.poses_per_frame):
                yield self.pose_event(t0 + k * dt / self.poses_per_frame)
            yield self.depth_event(t0 + dt * 0.5)


def expected_captures(frames: int, auto_mode: bool, snapshot_frames: Iterable[int], stride: int = 3) -> int:
    """Number of frame files a run should produce (frame indices start at 1)."""
    snapshots = {int(i) for i in snapshot_frames if 1 <= int(i) <= frames}
    auto = {i for i in range(1, frames + 1) if i % stride == 0} if auto_mode else set()
    return len(auto | snapshots)


def run_session(
    *,
    frames: int,
    fps: float = 5.0,
    points: int = 500,
    auto_mode: bool = True,
    snapshot_frames: Iterable[int] = (),
    seed: int = 0,
    out_dir: str | None = None,
    realtime: bool = False,
    config: RecorderConfig | None = None,
    calibration: CalibrationTransform | None = None,
) -> dict:
    """Record one synthetic session end to end and validate its archive.

    Returns a summary dict with keys:
      session_id, frames, captured, expected_captures, poses_recorded,
      archive, validation
    """
    if frames <= 0:
        raise ValueError("frames must be > 0")

    if out_dir is None:
        ts = datetime.now().strftime("%Y%m%d_%H%M%S")
        out_dir = str(Path("./output/sim") / f"{ts}-{seed}")

    if config is None:
        config = RecorderConfig(recordings_dir=out_dir)
    else:
        config = RecorderConfig.from_dict({**config.to_dict(), "recordings_dir": out_dir})

    snapshot_set = {int(i) for i in snapshot_frames}
    sensor = SyntheticSensor(seed=seed, fps=fps, points=points)
    pipeline = FrameIngestPipeline(config, calibration=calibration)
    pipeline.start()
    pipeline.set_auto_mode(auto_mode)
    pipeline.set_recording(True)

    def _produce() -> None:
        depth_index = 0
        for event in sensor.events(frames):
            if isinstance(event, PoseEvent):
                pipeline.on_pose(event)
                continue
            depth_index += 1
            if depth_index in snapshot_set:
                pipeline.request_snapshot()
            pipeline.on_point_cloud(event)
            if realtime:
                time.sleep(1.0 / float(fps))

    producer = threading.Thread(target=_produce, name="synthetic-sensor", daemon=True)
    producer.start()
    producer.join()

    handle = pipeline.set_recording(False)
    pipeline.wait_idle(timeout=config.archive_wait_timeout + 5.0)
    archive = pipeline.archive_for(handle.session_id) if handle else None
    run_summary = pipeline.stop()

    validation = validate_archive_integrity(str(archive)) if archive else {
        "valid": False, "errors": ["no archive produced"], "warnings": [], "stats": {},
    }
    logger.info(
        "Synthetic session %s: %d frames, %d captured, archive %s",
        handle.session_id if handle else "?", frames, run_summary["frames_captured"], archive,
    )

    return {
        "session_id": handle.session_id if handle else None,
        "frames": int(run_summary["frames_received"]),
        "captured": int(run_summary["frames_captured"]),
        "expected_captures": expected_captures(
            frames, auto_mode, snapshot_set, stride=config.auto_mode_stride
        ),
        "poses_recorded": handle.pose_count if handle else 0,
        "archive": str(archive) if archive else None,
        "validation": validation,
    }


def _parse_bool_flag(val: str) -> bool:
    v = str(val).lower()
    return v in {"true", "1", "yes", "y"}


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(prog="python -m recorder.sim")
    parser.add_argument("--frames", type=int, required=True, help="Number of depth frames (>0)")
    parser.add_argument("--fps", type=float, default=5.0, help="Depth frames per second (>0)")
    parser.add_argument("--points", type=int, default=500, help="Points per frame (>=0)")
    parser.add_argument("--auto-mode", type=str, default="true", help="Capture every Nth frame; 'true'|'false'")
    parser.add_argument("--snapshot", type=int, action="append", default=[], help="Request a snapshot before this frame (repeatable)")
    parser.add_argument("--realtime", type=str, default="false", help="Emit in real-time; 'true'|'false'")
    parser.add_argument("--seed", type=int, default=0, help="RNG seed")
    parser.add_argument("--out-dir", type=str, default=None, help="Recordings directory")
    parser.add_argument("--config", type=str, default=None, help="RecorderConfig JSON file")
    parser.add_argument("--calibration", type=str, default=None, help="Calibration JSON with cam2dev_transform")
    parser.add_argument("--json-logs", action="store_true", help="Log JSON lines")

    try:
        args = parser.parse_args(argv)
    except SystemExit as e:
        try:
            return int(e.code)
        except Exception:
            return 2

    def _err(msg: str) -> int:
        print(f"error: {msg}", file=sys.stderr)
        return 2

    if args.frames <= 0:
        return _err("--frames must be > 0")
    if args.fps <= 0:
        return _err("--fps must be > 0")
    if args.points < 0:
        return _err("--points must be >= 0")

    try:
        config = RecorderConfig.load(args.config) if args.config else RecorderConfig()
        calibration = load_calibration(args.calibration) if args.calibration else None
    except (OSError, ValueError) as e:
        return _err(str(e))

    setup_logging(config.log_level, json_format=args.json_logs)

    try:
        summary = run_session(
            frames=int(args.frames),
            fps=float(args.fps),
            points=int(args.points),
            auto_mode=_parse_bool_flag(args.auto_mode),
            snapshot_frames=args.snapshot,
            seed=int(args.seed),
            out_dir=args.out_dir or config.recordings_dir,
            realtime=_parse_bool_flag(args.realtime),
            config=config,
            calibration=calibration,
        )
    except Exception as e:
        print(f"error: {e}", file=sys.stderr)
        return 1

    for k in ["session_id", "frames", "captured", "expected_captures", "poses_recorded", "archive"]:
        print(f"{k}: {summary[k]}")
    print(f"validation: {json.dumps(summary['validation'], default=str)}")

    return 0 if summary["validation"]["valid"] else 1


if __name__ == "__main__":
    raise SystemExit(main())
