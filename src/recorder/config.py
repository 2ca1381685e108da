"""
Configuration for the recording pipeline.

Provides:
- RecorderConfig, loaded from a dict or a JSON file
- load_calibration, reading the camera-to-device transform from JSON
"""

import json
import logging
from pathlib import Path
from typing import Any, Dict, Optional
from dataclasses import dataclass, asdict, fields

from .events import CalibrationTransform


@dataclass
class RecorderConfig:
    """Recorder settings."""
    recordings_dir: str = "./recordings"
    archive_dir: Optional[str] = None  # defaults to recordings_dir
    archive_prefix: str = "TangoData"
    file_prefix: str = "pc"
    auto_mode_stride: int = 3
    writer_workers: int = 2
    write_queue_size: int = 64
    archive_wait_timeout: float = 10.0  # seconds
    log_level: str = "INFO"

    def __post_init__(self):
        if self.auto_mode_stride <= 0:
            raise ValueError("auto_mode_stride must be > 0")
        if self.writer_workers <= 0:
            raise ValueError("writer_workers must be > 0")
        if self.write_queue_size < 0:
            raise ValueError("write_queue_size must be >= 0")
        if self.archive_wait_timeout < 0:
            raise ValueError("archive_wait_timeout must be >= 0")
        if not isinstance(logging.getLevelName(str(self.log_level).upper()), int):
            raise ValueError(f"unknown log_level: {self.log_level!r}")

    @property
    def resolved_archive_dir(self) -> Path:
        return Path(self.archive_dir or self.recordings_dir)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RecorderConfig":
        """
        Build a config from a dictionary.

        Raises:
            ValueError: On unknown keys
        """
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ValueError(f"Unknown config keys: {', '.join(unknown)}")
        return cls(**data)

    @classmethod
    def load(cls, filepath: str) -> "RecorderConfig":
        with open(filepath, 'r', encoding='utf-8') as f:
            return cls.from_dict(json.load(f))

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def load_calibration(filepath: str) -> CalibrationTransform:
    """
    Load the camera-to-device transform from a JSON file.

    Accepted layouts:
        {"cam2dev_transform": [16 floats, row-major]}
        {"cam2dev_transform": [[4 floats] x 4]}
        [16 floats] or [[4 floats] x 4] at the top level

    Args:
        filepath: Path to the calibration file

    Returns:
        Read-only calibration transform

    Raises:
        ValueError: If the file holds no usable matrix
    """
    with open(Path(filepath), 'r', encoding='utf-8') as f:
        data = json.load(f)

    if isinstance(data, dict):
        if "cam2dev_transform" not in data:
            raise ValueError(f"{filepath}: missing 'cam2dev_transform'")
        data = data["cam2dev_transform"]

    return CalibrationTransform.from_row_major(data)
