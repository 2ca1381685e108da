"""
Exception types raised by the recording pipeline.

I/O failures are not wrapped: they surface as the builtin OSError and are
handled by the pipeline jobs that perform the write.
"""


class RecorderError(Exception):
    """Base class for recorder errors."""


class FormatError(RecorderError):
    """Payload does not match the counts declared in the file header."""


class ContractError(RecorderError, ValueError):
    """Caller handed in buffers that violate a writer's contract."""
