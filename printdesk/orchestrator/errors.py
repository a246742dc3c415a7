"""Error taxonomy for the print queue."""
from __future__ import annotations


class PrintQueueError(Exception):
    """Base class for every error raised by the queue engine."""


class NotFoundError(PrintQueueError):
    """Raised when a job id is unknown to the store."""

    def __init__(self, job_id: str) -> None:
        super().__init__(f"Job not found: {job_id}")
        self.job_id = job_id


class InvalidStateError(PrintQueueError):
    """Raised when an operation is not valid for the job's current status."""


class StaleWriteError(InvalidStateError):
    """Raised when a compare-and-swap write finds a newer version of the job."""


class RetryLimitExceededError(InvalidStateError):
    """Raised when a failed job has used up its retry budget."""


class DocumentUnavailableError(PrintQueueError):
    """Raised when the source document for a job cannot be resolved."""


class PrinterUnavailableError(PrintQueueError):
    """Raised when no printer can take a job or the backend rejects it."""


class PersistenceError(PrintQueueError):
    """Raised when the durable snapshot could not be written or read."""


class ConfigurationError(PrintQueueError):
    """Raised when the printer registry or settings are invalid."""
