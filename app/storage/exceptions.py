class ObjectStoreError(Exception):
    """Base exception for object store errors."""


class TransferError(ObjectStoreError):
    """Raised when a put or delete against the object store fails."""
