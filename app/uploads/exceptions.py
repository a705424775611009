class UploadError(Exception):
    """Base exception for all upload orchestration errors."""


class InvalidInputError(UploadError):
    """Raised when an intake request is rejected before any record is created."""


class StagingError(UploadError):
    """Raised when the payload cannot be written to or read from the staging area."""


class RecordNotFoundError(UploadError):
    """Raised when an upload record does not exist (or vanished out-of-band)."""


class InvalidTransitionError(UploadError):
    """Raised when a status change would move a record backwards or out of a terminal state."""


class DuplicateIdempotencyKeyError(UploadError):
    """Raised when a record with the same idempotency key already exists."""

    def __init__(self, idempotency_key: str) -> None:
        super().__init__(f"Upload with idempotency key '{idempotency_key}' already exists")
        self.idempotency_key = idempotency_key
