"""
Session-scoped pose buffer.
"""

from typing import Iterator, List, Optional, Tuple

from .events import PoseSample


class PoseBuffer:
    """
    Append-only, ordered sequence of pose samples for one session.

    Not thread-safe on its own; RecordingController only touches it while
    holding its lock, and hands it off with drain() at session close.
    """

    def __init__(self):
        self._samples: List[PoseSample] = []

    def append(self, sample: PoseSample) -> None:
        self._samples.append(sample)

    def drain(self) -> Tuple[PoseSample, ...]:
        """Move every sample out, leaving the buffer empty."""
        samples, self._samples = self._samples, []
        return tuple(samples)

    def clear(self) -> None:
        self._samples = []

    @property
    def latest(self) -> Optional[PoseSample]:
        return self._samples[-1] if self._samples else None

    def __len__(self) -> int:
        return len(self._samples)

    def __iter__(self) -> Iterator[PoseSample]:
        return iter(list(self._samples))
