import threading
from dataclasses import dataclass
from typing import BinaryIO

from app.storage.base import BaseObjectStore
from app.storage.exceptions import TransferError


@dataclass(frozen=True)
class StoredObject:
    data: bytes
    content_type: str | None


class InMemoryObjectStore(BaseObjectStore):
    """Object store kept in process memory. Used for local runs and tests.

    Failure injection:
        fail_puts: every put raises TransferError.
        partial_writes: when a put fails, half the payload is left behind,
            as an interrupted upload to a real backend could.
        fail_deletes: every delete raises TransferError.
    """

    def __init__(
        self,
        fail_puts: bool = False,
        partial_writes: bool = False,
        fail_deletes: bool = False,
    ) -> None:
        self.fail_puts = fail_puts
        self.partial_writes = partial_writes
        self.fail_deletes = fail_deletes
        self._buckets: dict[str, dict[str, StoredObject]] = {}
        self._lock = threading.Lock()

    def put(
        self,
        bucket: str,
        key: str,
        stream: BinaryIO,
        length: int,
        content_type: str | None,
    ) -> None:
        self.ensure_bucket(bucket)
        try:
            data = stream.read()
        except OSError as exc:
            raise TransferError(f"Upload of {bucket}/{key} failed: {exc}") from exc
        if self.fail_puts:
            if self.partial_writes:
                self._store(bucket, key, StoredObject(data[: len(data) // 2], content_type))
            raise TransferError(f"Upload of {bucket}/{key} rejected by backend")
        if len(data) != length:
            raise TransferError(
                f"Upload of {bucket}/{key} failed: expected {length} bytes, got {len(data)}"
            )
        self._store(bucket, key, StoredObject(data, content_type))

    def delete(self, bucket: str, key: str) -> None:
        if self.fail_deletes:
            raise TransferError(f"Delete of {bucket}/{key} rejected by backend")
        with self._lock:
            objects = self._buckets.get(bucket, {})
            if key not in objects:
                raise TransferError(f"Object {bucket}/{key} does not exist")
            del objects[key]

    def exists(self, bucket: str, key: str) -> bool:
        with self._lock:
            return key in self._buckets.get(bucket, {})

    def ensure_bucket(self, bucket: str) -> None:
        with self._lock:
            self._buckets.setdefault(bucket, {})

    def get(self, bucket: str, key: str) -> StoredObject | None:
        """Return a stored object, or None."""
        with self._lock:
            return self._buckets.get(bucket, {}).get(key)

    def keys(self, bucket: str) -> list[str]:
        with self._lock:
            return sorted(self._buckets.get(bucket, {}))

    def _store(self, bucket: str, key: str, obj: StoredObject) -> None:
        with self._lock:
            self._buckets.setdefault(bucket, {})[key] = obj
