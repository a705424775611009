import io
import threading
from collections.abc import Generator
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from app.database.models import UploadRecord, UploadStatus
from app.database.repositories.upload_repository import ALLOWED_TRANSITIONS
from app.scheduler.executor import TransferExecutor
from app.staging.staging_area import StagingArea
from app.storage.memory_adapter import InMemoryObjectStore
from app.uploads.exceptions import (
    DuplicateIdempotencyKeyError,
    InvalidTransitionError,
    RecordNotFoundError,
)
from app.uploads.service import UploadService


class InMemoryUploadRepository:
    """Thread-safe stand-in for UploadRepository with the same contract.

    The idempotency key is unique, and status changes follow the same
    allowed transitions as the SQL implementation.
    """

    def __init__(self) -> None:
        self.records: dict[str, UploadRecord] = {}
        self._lock = threading.Lock()
        self._clock = datetime(2024, 1, 1, tzinfo=timezone.utc)

    def _now(self) -> datetime:
        self._clock += timedelta(seconds=1)
        return self._clock

    def save(self, record: UploadRecord) -> UploadRecord:
        with self._lock:
            for other in self.records.values():
                if other.idempotency_key == record.idempotency_key and other.id != record.id:
                    raise DuplicateIdempotencyKeyError(record.idempotency_key)
            now = self._now()
            existing = self.records.get(record.id)
            saved = replace(
                record,
                created_at=existing.created_at if existing else now,
                updated_at=now,
            )
            self.records[record.id] = saved
            return replace(saved)

    def find_by_id(self, record_id: str) -> UploadRecord | None:
        with self._lock:
            record = self.records.get(record_id)
            return replace(record) if record else None

    def find_by_idempotency_key(self, idempotency_key: str) -> UploadRecord | None:
        with self._lock:
            for record in self.records.values():
                if record.idempotency_key == idempotency_key:
                    return replace(record)
            return None

    def find_all_order_by_created_at_desc(self) -> list[UploadRecord]:
        with self._lock:
            ordered = sorted(
                self.records.values(), key=lambda r: r.created_at, reverse=True
            )
            return [replace(record) for record in ordered]

    def find_by_status(self, status: UploadStatus) -> list[UploadRecord]:
        return [r for r in self.find_all_order_by_created_at_desc() if r.status == status]

    def mark_uploading(self, record_id: str) -> UploadRecord:
        return self._transition(record_id, UploadStatus.UPLOADING, error_message=None)

    def mark_completed(self, record_id: str) -> UploadRecord:
        return self._transition(
            record_id,
            UploadStatus.COMPLETED,
            error_message=None,
            completed=True,
        )

    def mark_failed(self, record_id: str, error: str) -> UploadRecord:
        return self._transition(record_id, UploadStatus.FAILED, error_message=error)

    def _transition(
        self,
        record_id: str,
        target: UploadStatus,
        error_message: str | None,
        completed: bool = False,
    ) -> UploadRecord:
        with self._lock:
            record = self.records.get(record_id)
            if record is None:
                raise RecordNotFoundError(f"Upload {record_id} not found")
            if record.status not in ALLOWED_TRANSITIONS[target]:
                raise InvalidTransitionError(
                    f"Upload {record_id} cannot move from {record.status.value} "
                    f"to {target.value}"
                )
            now = self._now()
            updated = replace(
                record,
                status=target,
                error_message=error_message,
                updated_at=now,
                completed_at=now if completed else record.completed_at,
            )
            self.records[record_id] = updated
            return replace(updated)


@pytest.fixture()
def upload_repo() -> InMemoryUploadRepository:
    return InMemoryUploadRepository()


@pytest.fixture()
def object_store() -> InMemoryObjectStore:
    return InMemoryObjectStore()


@pytest.fixture()
def staging_root(tmp_path: Path) -> Path:
    root = tmp_path / "staging"
    root.mkdir()
    return root


@pytest.fixture()
def staging_area(staging_root: Path) -> StagingArea:
    return StagingArea(staging_root)


@pytest.fixture()
def executor() -> Generator[TransferExecutor, None, None]:
    pool = TransferExecutor(
        core_size=2,
        max_size=4,
        queue_capacity=10,
        submit_timeout_seconds=1.0,
        keep_alive_seconds=1.0,
    )
    try:
        yield pool
    finally:
        pool.shutdown(wait=True, timeout=10)


@pytest.fixture()
def upload_service(
    upload_repo: InMemoryUploadRepository,
    object_store: InMemoryObjectStore,
    staging_area: StagingArea,
    executor: TransferExecutor,
) -> UploadService:
    return UploadService(
        upload_repo=upload_repo,  # type: ignore[arg-type]
        object_store=object_store,
        staging_area=staging_area,
        executor=executor,
        bucket="uploads",
    )


@pytest.fixture()
def report_bytes() -> bytes:
    """1024 bytes of deterministic content standing in for report.pdf."""
    return bytes(range(256)) * 4


@pytest.fixture()
def report_payload(report_bytes: bytes) -> io.BytesIO:
    return io.BytesIO(report_bytes)
