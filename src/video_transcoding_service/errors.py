"""Error taxonomy for the transcoding pipeline."""

from __future__ import annotations

from typing import Iterable, Optional


class TranscodingError(RuntimeError):
    """Base class for failures that end a pipeline attempt.

    ``permanent`` marks failures that will not go away on redelivery, such as a
    corrupt source file. The work queue only acts on it when fast-fail is enabled.
    """

    permanent: bool = False


class ProbeError(TranscodingError):
    """Raised when the source cannot be read or carries no video stream."""

    permanent = True


class EncodeError(TranscodingError):
    """Raised when an encoder invocation fails."""

    def __init__(self, command: Iterable[str], stderr: str, returncode: Optional[int] = None) -> None:
        self.command = list(command)
        self.stderr = stderr
        self.returncode = returncode
        super().__init__(f"FFmpeg command failed ({returncode}): {' '.join(self.command)}\n{stderr}")


class StorageError(TranscodingError):
    """Raised when an artifact store operation fails."""

    def __init__(self, operation: str, key: str, reason: str) -> None:
        self.operation = operation
        self.key = key
        super().__init__(f"Storage {operation} failed for {key}: {reason}")


class LeaseLostError(TranscodingError):
    """Raised when a worker no longer holds the lease on the job it is running."""


class QueueTransportError(RuntimeError):
    """Raised when the work queue's backing store cannot be reached."""


class JobStoreError(RuntimeError):
    """Raised when job persistence operations fail."""


class UnknownProfileError(ValueError):
    """Raised for a profile name missing from the static profile table."""
