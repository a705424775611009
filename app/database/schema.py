from app.database.connection import get_connection
from app.logging.logger import Log

IDEMPOTENCY_KEY_CONSTRAINT = "uq_file_uploads_idempotency_key"

SCHEMA_STATEMENTS: tuple[str, ...] = (
    f"""
    CREATE TABLE IF NOT EXISTS file_uploads (
        id TEXT PRIMARY KEY,
        idempotency_key TEXT NOT NULL,
        original_name TEXT NOT NULL,
        storage_key TEXT NOT NULL,
        bucket TEXT NOT NULL,
        content_type TEXT,
        size_bytes BIGINT NOT NULL CHECK (size_bytes > 0),
        status TEXT NOT NULL
            CHECK (status IN ('PENDING', 'UPLOADING', 'COMPLETED', 'FAILED')),
        error_message VARCHAR(1000),
        checksum TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        completed_at TIMESTAMPTZ,
        CONSTRAINT {IDEMPOTENCY_KEY_CONSTRAINT} UNIQUE (idempotency_key),
        CONSTRAINT uq_file_uploads_bucket_storage_key UNIQUE (bucket, storage_key)
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_file_uploads_status ON file_uploads (status)",
    "CREATE INDEX IF NOT EXISTS idx_file_uploads_created_at "
    "ON file_uploads (created_at DESC)",
)


def ensure_schema() -> None:
    """Create the file_uploads table and its indexes if they do not exist."""
    with get_connection() as conn:
        for statement in SCHEMA_STATEMENTS:
            conn.execute(statement)
        conn.commit()
    Log.info("Database schema ensured for file_uploads")
