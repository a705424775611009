from app.config.settings import Settings
from app.storage.base import BaseObjectStore
from app.storage.memory_adapter import InMemoryObjectStore
from app.storage.s3_adapter import S3ObjectStore


class ObjectStoreFactory:
    """Creates the correct object store adapter based on settings."""

    BACKENDS: tuple[str, ...] = ("s3", "memory")

    @classmethod
    def create(cls, settings: Settings) -> BaseObjectStore:
        """Create an object store for the configured backend.

        Raises:
            ValueError: if the backend name is not recognized.
        """
        backend = settings.storage_backend.lower()
        if backend == "memory":
            return InMemoryObjectStore()
        if backend == "s3":
            return S3ObjectStore(
                endpoint_url=settings.s3_endpoint_url,
                access_key=settings.s3_access_key,
                secret_key=settings.s3_secret_key,
                region=settings.s3_region,
                connect_timeout_seconds=settings.s3_connect_timeout_seconds,
                read_timeout_seconds=settings.s3_read_timeout_seconds,
                max_attempts=settings.s3_max_attempts,
            )
        raise ValueError(
            f"Unknown storage backend '{settings.storage_backend}'. "
            f"Choose from: {list(cls.BACKENDS)}"
        )
