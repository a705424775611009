import threading
import uuid
from concurrent.futures import Future, wait
from pathlib import Path
from typing import Any, BinaryIO

from app.config.settings import Settings
from app.database.models import UploadRecord, UploadStatus
from app.database.repositories.upload_repository import UploadRepository
from app.logging.logger import Log
from app.scheduler.exceptions import TaskRejectedError
from app.scheduler.executor import TransferExecutor
from app.staging.checksum import compute_checksum, payload_size
from app.staging.staging_area import StagedPayload, StagingArea
from app.storage.base import BaseObjectStore
from app.storage.exceptions import TransferError
from app.storage.factory import ObjectStoreFactory
from app.uploads.exceptions import (
    DuplicateIdempotencyKeyError,
    InvalidInputError,
    InvalidTransitionError,
    RecordNotFoundError,
    StagingError,
)
from app.uploads.models import ACCEPTED_MESSAGE, DUPLICATE_MESSAGE, UploadRecordView


def generate_storage_key(original_name: str | None) -> str:
    """Random object name that keeps the original extension (from the last dot)."""
    extension = ""
    if original_name and "." in original_name:
        extension = original_name[original_name.rindex(".") :]
    return f"{uuid.uuid4()}{extension}"


def describe_failure(exc: Exception) -> str:
    """Human-readable cause stored in a failed record's error_message."""
    if isinstance(exc, TransferError):
        return f"Transfer failed: {exc}"
    if isinstance(exc, StagingError):
        return f"Staging read failed: {exc}"
    if isinstance(exc, RecordNotFoundError):
        return f"Record vanished: {exc}"
    return f"Unexpected error: {exc}"


class UploadService:
    """Moves uploads through PENDING -> UPLOADING -> COMPLETED | FAILED.

    Intake (``initiate_upload``) only touches the database and local disk;
    the object store is reached from executor workers (``execute_transfer``).
    At most one record exists per idempotency key: the unique constraint in
    the database decides concurrent races, not an in-process lock.
    """

    def __init__(
        self,
        upload_repo: UploadRepository,
        object_store: BaseObjectStore,
        staging_area: StagingArea,
        executor: TransferExecutor,
        bucket: str,
    ) -> None:
        self._upload_repo = upload_repo
        self._object_store = object_store
        self._staging_area = staging_area
        self._executor = executor
        self._bucket = bucket
        self._transfers: dict[str, Future[Any]] = {}
        self._transfers_lock = threading.Lock()

    def initiate_upload(
        self,
        payload: BinaryIO | None,
        original_name: str | None,
        content_type: str | None,
        size_bytes: int,
        idempotency_key: str | None,
    ) -> UploadRecordView:
        """Accept an upload and schedule its transfer without waiting for it.

        Raises:
            InvalidInputError: missing idempotency key, empty payload, or a
                declared size that does not match the payload.
            StagingError: the payload could not be written to local staging.
            TaskRejectedError: the transfer executor is saturated.
        """
        payload, idempotency_key = self._validate(payload, size_bytes, idempotency_key)
        Log.info(
            f"Upload requested: '{original_name}' ({size_bytes} bytes), "
            f"idempotency key '{idempotency_key}'"
        )

        existing = self._upload_repo.find_by_idempotency_key(idempotency_key)
        if existing is not None:
            return self._duplicate(existing)

        record = UploadRecord(
            id=str(uuid.uuid4()),
            idempotency_key=idempotency_key,
            original_name=original_name or "",
            storage_key=generate_storage_key(original_name),
            bucket=self._bucket,
            size_bytes=size_bytes,
            status=UploadStatus.PENDING,
            content_type=content_type,
            checksum=self._checksum_or_none(payload),
        )
        try:
            record = self._upload_repo.save(record)
        except DuplicateIdempotencyKeyError:
            winner = self._upload_repo.find_by_idempotency_key(idempotency_key)
            if winner is None:
                raise
            Log.info(f"Lost insert race for idempotency key '{idempotency_key}'")
            return self._duplicate(winner)
        Log.info(f"Created upload {record.id} with storage key {record.storage_key}")

        try:
            staged = self._staging_area.stage(payload)
        except StagingError as exc:
            self._mark_failed(record.id, f"Staging failed: {exc}")
            raise
        if staged.size_bytes != record.size_bytes:
            self._staging_area.release(staged)
            error = (
                f"Staged {staged.size_bytes} bytes but {record.size_bytes} were declared"
            )
            self._mark_failed(record.id, f"Staging failed: {error}")
            raise StagingError(error)

        try:
            future = self._executor.submit(self.execute_transfer, record.id, staged)
        except TaskRejectedError as exc:
            self._staging_area.release(staged)
            self._mark_failed(record.id, f"Transfer could not be scheduled: {exc}")
            raise
        self._track(record.id, future)
        Log.info(f"Scheduled transfer for upload {record.id}")

        return UploadRecordView.from_record(record, message=ACCEPTED_MESSAGE)

    def execute_transfer(self, record_id: str, staged: StagedPayload) -> None:
        """Upload the staged payload and record the outcome. Never raises.

        If the record leaves UPLOADING while the object is being stored, the
        object is kept only when the record did not end up FAILED.
        """
        with self._staging_area.staged(staged):
            record: UploadRecord | None = None
            stored = False
            try:
                record = self._upload_repo.mark_uploading(record_id)
                Log.info(
                    f"Transfer started for upload {record_id} -> "
                    f"{record.bucket}/{record.storage_key}"
                )
                with staged.open() as stream:
                    self._object_store.put(
                        record.bucket,
                        record.storage_key,
                        stream,
                        staged.size_bytes,
                        record.content_type,
                    )
                stored = True
                self._upload_repo.mark_completed(record_id)
                Log.info(f"Transfer completed for upload {record_id}")
            except InvalidTransitionError as exc:
                Log.warning(f"Upload {record_id} changed concurrently, leaving it as is: {exc}")
                if stored and record is not None:
                    self._discard_if_failed(record)
            except Exception as exc:
                if record is None:
                    Log.error(f"Transfer aborted for upload {record_id}: {exc}")
                    return
                Log.exception(f"Transfer failed for upload {record_id}: {exc}")
                self._mark_failed(record_id, describe_failure(exc))
                self._rollback(record)

    def get_by_id(self, record_id: str) -> UploadRecordView | None:
        record = self._upload_repo.find_by_id(record_id)
        return UploadRecordView.from_record(record) if record is not None else None

    def get_by_idempotency_key(self, idempotency_key: str) -> UploadRecordView | None:
        record = self._upload_repo.find_by_idempotency_key(idempotency_key)
        return UploadRecordView.from_record(record) if record is not None else None

    def list_all(self) -> list[UploadRecordView]:
        """All uploads, newest first."""
        return [
            UploadRecordView.from_record(record)
            for record in self._upload_repo.find_all_order_by_created_at_desc()
        ]

    def wait_for_transfer(self, record_id: str, timeout: float | None = None) -> bool:
        """Block until the transfer scheduled by this process for the record ends.

        Returns False if it is still running after ``timeout``. Returns True
        immediately when nothing is in flight for the record here.
        """
        with self._transfers_lock:
            future = self._transfers.get(record_id)
        if future is None:
            return True
        done, _ = wait([future], timeout=timeout)
        return bool(done)

    def shutdown(self, timeout: float | None = None) -> None:
        """Drain scheduled transfers and stop the executor."""
        self._executor.shutdown(wait=True, timeout=timeout)

    def _validate(
        self,
        payload: BinaryIO | None,
        size_bytes: int,
        idempotency_key: str | None,
    ) -> tuple[BinaryIO, str]:
        if idempotency_key is None or not idempotency_key.strip():
            raise InvalidInputError("Idempotency key is required")
        if payload is None:
            raise InvalidInputError("Payload is required")
        if size_bytes <= 0:
            raise InvalidInputError("Payload is empty")
        actual_size = self._size_or_none(payload)
        if actual_size == 0:
            raise InvalidInputError("Payload is empty")
        if actual_size is not None and actual_size != size_bytes:
            raise InvalidInputError(
                f"Payload has {actual_size} bytes but {size_bytes} were declared"
            )
        return payload, idempotency_key

    def _duplicate(self, record: UploadRecord) -> UploadRecordView:
        progress = "finished" if record.status.is_terminal else "still in progress"
        Log.info(
            f"Duplicate request for idempotency key '{record.idempotency_key}': "
            f"upload {record.id} is {record.status.value} ({progress})"
        )
        return UploadRecordView.from_record(
            record, message=DUPLICATE_MESSAGE, is_duplicate=True
        )

    def _size_or_none(self, payload: BinaryIO) -> int | None:
        """Real payload length, or None for streams that cannot seek."""
        try:
            return payload_size(payload)
        except (OSError, ValueError) as exc:
            Log.debug(f"Payload size not measurable before staging: {exc}")
            return None

    def _checksum_or_none(self, payload: BinaryIO) -> str | None:
        try:
            return compute_checksum(payload)
        except Exception as exc:
            Log.warning(f"Checksum calculation failed, continuing without it: {exc}")
            return None

    def _mark_failed(self, record_id: str, error: str) -> None:
        try:
            self._upload_repo.mark_failed(record_id, error)
        except Exception as exc:
            Log.error(f"Could not mark upload {record_id} as failed: {exc}")

    def _rollback(self, record: UploadRecord) -> None:
        """Delete a partially written object. One attempt, failures only logged."""
        try:
            if not self._object_store.exists(record.bucket, record.storage_key):
                Log.debug(f"No object to roll back for upload {record.id}")
                return
            self._object_store.delete(record.bucket, record.storage_key)
            Log.info(
                f"Rolled back object {record.bucket}/{record.storage_key} "
                f"for upload {record.id}"
            )
        except Exception as exc:
            Log.error(f"Rollback failed for upload {record.id}: {exc}")

    def _discard_if_failed(self, record: UploadRecord) -> None:
        try:
            current = self._upload_repo.find_by_id(record.id)
        except Exception as exc:
            Log.error(f"Could not re-read upload {record.id}, keeping its object: {exc}")
            return
        if current is None or current.status == UploadStatus.FAILED:
            self._rollback(record)

    def _track(self, record_id: str, future: Future[Any]) -> None:
        with self._transfers_lock:
            self._transfers[record_id] = future
        future.add_done_callback(lambda _: self._untrack(record_id))

    def _untrack(self, record_id: str) -> None:
        with self._transfers_lock:
            self._transfers.pop(record_id, None)


def build_upload_service(
    settings: Settings,
    object_store: BaseObjectStore | None = None,
) -> UploadService:
    """Build an UploadService with all required adapters.

    Expects the database pool to be initialized already.
    """
    if object_store is None:
        object_store = ObjectStoreFactory.create(settings)
    try:
        object_store.ensure_bucket(settings.s3_bucket)
    except TransferError as exc:
        Log.warning(
            f"Bucket {settings.s3_bucket} not ready, will retry on first upload: {exc}"
        )
    staging_root = Path(settings.staging_dir) if settings.staging_dir else None
    return UploadService(
        upload_repo=UploadRepository(),
        object_store=object_store,
        staging_area=StagingArea(staging_root),
        executor=TransferExecutor.from_settings(settings),
        bucket=settings.s3_bucket,
    )
