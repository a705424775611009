import os
import uuid
from collections.abc import Callable, Generator
from typing import Any

import pytest

from app.config.settings import Settings
from app.database.connection import close_pool, get_connection, init_pool
from app.database.models import UploadRecord, UploadStatus
from app.database.schema import ensure_schema


def _test_settings() -> Settings:
    os.environ.setdefault("DB_DATABASE", "file_uploader_test")
    return Settings()


@pytest.fixture(scope="session")
def test_settings() -> Settings:
    return _test_settings()


@pytest.fixture(scope="session")
def integration_pool(test_settings: Settings) -> Generator[None, None, None]:
    try:
        init_pool(test_settings)
        ensure_schema()
    except Exception as e:
        close_pool()
        pytest.skip(
            f"PostgreSQL test DB not available: {e}. "
            "Set DB_* env to point at a scratch database"
        )
    try:
        yield
    finally:
        close_pool()


@pytest.fixture
def integration_cleanup(integration_pool: None) -> Generator[list[str], None, None]:
    """Collects idempotency keys whose rows are deleted after the test."""
    keys: list[str] = []
    yield keys
    if not keys:
        return
    with get_connection() as conn:
        conn.execute(
            "DELETE FROM file_uploads WHERE idempotency_key = ANY(%s)",
            (keys,),
        )
        conn.commit()


@pytest.fixture
def new_record(integration_cleanup: list[str]) -> Callable[..., UploadRecord]:
    def factory(**overrides: Any) -> UploadRecord:
        key = overrides.pop("idempotency_key", f"it-{uuid.uuid4()}")
        integration_cleanup.append(key)
        fields: dict[str, Any] = {
            "id": str(uuid.uuid4()),
            "idempotency_key": key,
            "original_name": "report.pdf",
            "storage_key": f"{uuid.uuid4()}.pdf",
            "bucket": "uploads-test",
            "size_bytes": 1024,
            "status": UploadStatus.PENDING,
            "content_type": "application/pdf",
        }
        fields.update(overrides)
        return UploadRecord(**fields)

    return factory
