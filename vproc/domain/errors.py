"""
Error taxonomy for media processing jobs.

Every error carries an ``ErrorKind`` so a failed job can report a
machine-readable reason next to the human-readable message.
"""

from vproc.domain.models import ErrorKind


class ProcessingError(Exception):
    """Base class for all processing failures."""

    kind: ErrorKind = ErrorKind.INTERNAL


class SourceNotFoundError(ProcessingError):
    kind = ErrorKind.NOT_FOUND


class SourceTooLargeError(ProcessingError):
    kind = ErrorKind.TOO_LARGE

    def __init__(self, size: int, limit: int):
        self.size = size
        self.limit = limit
        super().__init__(f"File size exceeds maximum limit: {size} > {limit}")


class UnsupportedFormatError(ProcessingError):
    kind = ErrorKind.UNSUPPORTED_FORMAT


class CorruptSourceError(ProcessingError):
    kind = ErrorKind.CORRUPT_OR_INVALID


class InvalidOptionsError(ProcessingError):
    kind = ErrorKind.INVALID_OPTIONS


class InsufficientMemoryError(ProcessingError):
    kind = ErrorKind.INSUFFICIENT_MEMORY

    def __init__(self, required: int, available: int, message: str):
        self.required = required
        self.available = available
        super().__init__(message)


class EnrichmentFailedError(ProcessingError):
    """Raised by content analyzers; always absorbed by the enrichment adapter."""

    kind = ErrorKind.ENRICHMENT_FAILED


class EncoderFailedError(ProcessingError):
    kind = ErrorKind.ENCODER_FAILED


class ProcessingTimedOutError(ProcessingError):
    kind = ErrorKind.PROCESSING_TIMED_OUT


class JobCancelledError(ProcessingError):
    kind = ErrorKind.CANCELLED


class JobNotFoundError(ProcessingError):
    kind = ErrorKind.NOT_FOUND

    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Job not found: {job_id}")


class InvalidStateTransitionError(ProcessingError):
    """Raised when attempting an illegal job state transition."""

    def __init__(self, current_state: str, target_state: str):
        self.current_state = current_state
        self.target_state = target_state
        super().__init__(f"Invalid job state transition: {current_state} -> {target_state}")
