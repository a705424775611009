from typing import Any

from psycopg import errors
from psycopg.rows import dict_row

from app.database.connection import get_connection
from app.database.models import UploadRecord, UploadStatus
from app.database.schema import IDEMPOTENCY_KEY_CONSTRAINT
from app.uploads.exceptions import (
    DuplicateIdempotencyKeyError,
    InvalidTransitionError,
    RecordNotFoundError,
    UploadError,
)

MAX_ERROR_MESSAGE_LENGTH = 1000

_COLUMNS = """
    id, idempotency_key, original_name, storage_key, bucket, content_type,
    size_bytes, status, error_message, checksum,
    created_at, updated_at, completed_at
"""

# target status -> statuses it may be entered from
ALLOWED_TRANSITIONS: dict[UploadStatus, tuple[UploadStatus, ...]] = {
    UploadStatus.UPLOADING: (UploadStatus.PENDING,),
    UploadStatus.COMPLETED: (UploadStatus.UPLOADING,),
    UploadStatus.FAILED: (UploadStatus.PENDING, UploadStatus.UPLOADING),
}


def _to_record(row: dict[str, Any]) -> UploadRecord:
    return UploadRecord(
        id=row["id"],
        idempotency_key=row["idempotency_key"],
        original_name=row["original_name"],
        storage_key=row["storage_key"],
        bucket=row["bucket"],
        content_type=row["content_type"],
        size_bytes=row["size_bytes"],
        status=UploadStatus(row["status"]),
        error_message=row["error_message"],
        checksum=row["checksum"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        completed_at=row["completed_at"],
    )


class UploadRepository:
    """Database operations for the file_uploads table.

    Status changes only go through the mark_* methods. Each one is a single
    conditional UPDATE, so the check of the current status and the write
    happen atomically on the row.
    """

    def save(self, record: UploadRecord) -> UploadRecord:
        """Insert or update a record and return the persisted row.

        Raises:
            DuplicateIdempotencyKeyError: if another record already owns the
                idempotency key.
        """
        with get_connection() as conn:
            try:
                with conn.cursor(row_factory=dict_row) as cur:
                    cur.execute(
                        f"""
                        INSERT INTO file_uploads (
                            id, idempotency_key, original_name, storage_key, bucket,
                            content_type, size_bytes, status, error_message,
                            checksum, completed_at
                        )
                        VALUES (
                            %(id)s, %(idempotency_key)s, %(original_name)s,
                            %(storage_key)s, %(bucket)s, %(content_type)s,
                            %(size_bytes)s, %(status)s, %(error_message)s,
                            %(checksum)s, %(completed_at)s
                        )
                        ON CONFLICT (id) DO UPDATE
                        SET status = EXCLUDED.status,
                            error_message = EXCLUDED.error_message,
                            checksum = EXCLUDED.checksum,
                            completed_at = EXCLUDED.completed_at,
                            updated_at = NOW()
                        RETURNING {_COLUMNS}
                        """,
                        {
                            "id": record.id,
                            "idempotency_key": record.idempotency_key,
                            "original_name": record.original_name,
                            "storage_key": record.storage_key,
                            "bucket": record.bucket,
                            "content_type": record.content_type,
                            "size_bytes": record.size_bytes,
                            "status": record.status.value,
                            "error_message": _truncate(record.error_message),
                            "checksum": record.checksum,
                            "completed_at": record.completed_at,
                        },
                    )
                    row = cur.fetchone()
            except errors.UniqueViolation as exc:
                conn.rollback()
                if exc.diag.constraint_name == IDEMPOTENCY_KEY_CONSTRAINT:
                    raise DuplicateIdempotencyKeyError(record.idempotency_key) from exc
                raise
            conn.commit()

        if row is None:
            raise UploadError(f"Saving upload {record.id} returned no row")
        return _to_record(row)

    def find_by_id(self, record_id: str) -> UploadRecord | None:
        """Find a record by its ID."""
        return self._find_one("id = %s", (record_id,))

    def find_by_idempotency_key(self, idempotency_key: str) -> UploadRecord | None:
        """Find a record by its idempotency key."""
        return self._find_one("idempotency_key = %s", (idempotency_key,))

    def find_all_order_by_created_at_desc(self) -> list[UploadRecord]:
        """Return every record, newest first."""
        return self._find_many("TRUE", ())

    def find_by_status(self, status: UploadStatus) -> list[UploadRecord]:
        """Return all records in the given status, newest first."""
        return self._find_many("status = %s", (status.value,))

    def mark_uploading(self, record_id: str) -> UploadRecord:
        """PENDING -> UPLOADING."""
        return self._transition(
            record_id,
            UploadStatus.UPLOADING,
            "error_message = NULL",
            (),
        )

    def mark_completed(self, record_id: str) -> UploadRecord:
        """UPLOADING -> COMPLETED; stamps completed_at and clears error_message."""
        return self._transition(
            record_id,
            UploadStatus.COMPLETED,
            "error_message = NULL, completed_at = NOW()",
            (),
        )

    def mark_failed(self, record_id: str, error: str) -> UploadRecord:
        """PENDING or UPLOADING -> FAILED with the given error message."""
        return self._transition(
            record_id,
            UploadStatus.FAILED,
            "error_message = %s",
            (_truncate(error),),
        )

    def _transition(
        self,
        record_id: str,
        target: UploadStatus,
        assignments: str,
        params: tuple[Any, ...],
    ) -> UploadRecord:
        sources = [status.value for status in ALLOWED_TRANSITIONS[target]]
        current: dict[str, Any] | None = None
        with get_connection() as conn:
            with conn.cursor(row_factory=dict_row) as cur:
                cur.execute(
                    f"""
                    UPDATE file_uploads
                    SET status = %s, {assignments}, updated_at = NOW()
                    WHERE id = %s AND status = ANY(%s)
                    RETURNING {_COLUMNS}
                    """,
                    (target.value, *params, record_id, sources),
                )
                row = cur.fetchone()
                if row is None:
                    cur.execute(
                        "SELECT status FROM file_uploads WHERE id = %s",
                        (record_id,),
                    )
                    current = cur.fetchone()
            conn.commit()

        if row is not None:
            return _to_record(row)
        if current is None:
            raise RecordNotFoundError(f"Upload {record_id} not found")
        raise InvalidTransitionError(
            f"Upload {record_id} cannot move from {current['status']} to {target.value}"
        )

    def _find_one(self, where: str, params: tuple[Any, ...]) -> UploadRecord | None:
        with get_connection() as conn:
            with conn.cursor(row_factory=dict_row) as cur:
                cur.execute(
                    f"SELECT {_COLUMNS} FROM file_uploads WHERE {where}",
                    params,
                )
                row = cur.fetchone()

        if row is None:
            return None
        return _to_record(row)

    def _find_many(self, where: str, params: tuple[Any, ...]) -> list[UploadRecord]:
        with get_connection() as conn:
            with conn.cursor(row_factory=dict_row) as cur:
                cur.execute(
                    f"""
                    SELECT {_COLUMNS} FROM file_uploads
                    WHERE {where}
                    ORDER BY created_at DESC, id
                    """,
                    params,
                )
                rows = cur.fetchall()

        return [_to_record(row) for row in rows]


def _truncate(message: str | None) -> str | None:
    if message is None:
        return None
    return message[:MAX_ERROR_MESSAGE_LENGTH]


