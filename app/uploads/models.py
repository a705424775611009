from dataclasses import dataclass
from datetime import datetime
from typing import Any

from app.database.models import UploadRecord, UploadStatus

ACCEPTED_MESSAGE = (
    "Upload accepted for processing. Poll by id or idempotency key for status."
)
DUPLICATE_MESSAGE = "Upload already received for this idempotency key (duplicate request)."


@dataclass(frozen=True)
class UploadRecordView:
    """Externally visible projection of an upload record."""

    id: str
    idempotency_key: str
    original_name: str
    size_bytes: int
    content_type: str | None
    status: UploadStatus
    error_message: str | None
    checksum: str | None
    created_at: datetime | None
    completed_at: datetime | None
    message: str | None = None
    is_duplicate: bool = False

    @classmethod
    def from_record(
        cls,
        record: UploadRecord,
        message: str | None = None,
        is_duplicate: bool = False,
    ) -> "UploadRecordView":
        return cls(
            id=record.id,
            idempotency_key=record.idempotency_key,
            original_name=record.original_name,
            size_bytes=record.size_bytes,
            content_type=record.content_type,
            status=record.status,
            error_message=record.error_message,
            checksum=record.checksum,
            created_at=record.created_at,
            completed_at=record.completed_at,
            message=message,
            is_duplicate=is_duplicate,
        )

    def to_dict(self) -> dict[str, Any]:
        """JSON-ready representation for callers and the CLI."""
        return {
            "id": self.id,
            "idempotencyKey": self.idempotency_key,
            "originalName": self.original_name,
            "sizeBytes": self.size_bytes,
            "contentType": self.content_type,
            "status": self.status.value,
            "errorMessage": self.error_message,
            "checksum": self.checksum,
            "createdAt": _isoformat(self.created_at),
            "completedAt": _isoformat(self.completed_at),
            "message": self.message,
        }


def _isoformat(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None
