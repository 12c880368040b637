class JobServiceError(Exception):
    """Base error for job lifecycle operations."""


class JobValidationError(JobServiceError):
    """Raised when an inbound payload is malformed or missing fields."""


class CallbackAuthError(JobServiceError):
    """Raised when a callback token is missing or does not match the job."""


class JobAccessDeniedError(JobServiceError):
    """Raised when an end user acts on a job they do not own."""


class JobNotFoundError(JobServiceError):
    """Raised when a job, repository or user cannot be resolved."""


class JobStateConflictError(JobServiceError):
    """Raised when a mutation targets a job whose state forbids it."""


class JobAlreadyTerminalError(JobStateConflictError):
    """Raised when cancelling a job that already reached a terminal status."""

    def __init__(self, status: str) -> None:
        super().__init__(f"job already {status}")
        self.status = status


class AdmissionConflictError(JobServiceError):
    """Raised when admission keeps racing a concurrent writer."""


class StoreUnavailableError(JobServiceError):
    """Raised when the store times out or fails transiently."""


class StoreConflictError(JobServiceError):
    """Raised when a conditional write loses a compare-and-swap race."""


class DocumentPersistenceError(JobServiceError):
    """Raised when completion artifacts could not be stored; the job is settled as failed."""
