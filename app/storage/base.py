from abc import ABC, abstractmethod
from typing import BinaryIO


class BaseObjectStore(ABC):
    """Contract for all object store adapters.

    Every call is synchronous; background execution is the caller's concern.
    """

    @abstractmethod
    def put(
        self,
        bucket: str,
        key: str,
        stream: BinaryIO,
        length: int,
        content_type: str | None,
    ) -> None:
        """Upload ``length`` bytes read from ``stream`` under ``bucket/key``.

        Raises:
            TransferError: on I/O failure or backend rejection.
        """

    @abstractmethod
    def delete(self, bucket: str, key: str) -> None:
        """Remove an object.

        Raises:
            TransferError: if the object is absent or the backend fails.
        """

    @abstractmethod
    def exists(self, bucket: str, key: str) -> bool:
        """Return whether the object exists. Never raises for a missing object."""

    @abstractmethod
    def ensure_bucket(self, bucket: str) -> None:
        """Create the bucket if it does not exist yet."""
