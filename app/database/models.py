from dataclasses import dataclass
from datetime import datetime
from enum import Enum


class UploadStatus(str, Enum):
    """Lifecycle states of an upload record."""

    PENDING = "PENDING"
    UPLOADING = "UPLOADING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self in (UploadStatus.COMPLETED, UploadStatus.FAILED)


@dataclass
class UploadRecord:
    """Represents a row from the file_uploads table."""

    id: str
    idempotency_key: str
    original_name: str
    storage_key: str
    bucket: str
    size_bytes: int
    status: UploadStatus
    content_type: str | None = None
    error_message: str | None = None
    checksum: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    completed_at: datetime | None = None
