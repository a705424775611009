from datetime import datetime, timezone
from unittest.mock import MagicMock, patch

import pytest
from psycopg import errors

from app.database.models import UploadRecord, UploadStatus
from app.database.repositories.upload_repository import UploadRepository
from app.database.schema import IDEMPOTENCY_KEY_CONSTRAINT
from app.uploads.exceptions import (
    DuplicateIdempotencyKeyError,
    InvalidTransitionError,
    RecordNotFoundError,
    UploadError,
)

_PATCH_TARGET = "app.database.repositories.upload_repository.get_connection"


def _make_row(**overrides) -> dict:
    row = {
        "id": "6f1c0f64-5a8e-4c56-9a43-3d2d8b5c9e10",
        "idempotency_key": "k1",
        "original_name": "report.pdf",
        "storage_key": "b7d1.pdf",
        "bucket": "uploads",
        "content_type": "application/pdf",
        "size_bytes": 1024,
        "status": "PENDING",
        "error_message": None,
        "checksum": "0f343b0931126a20f133d67c2b018a3b",
        "created_at": datetime(2024, 1, 1, tzinfo=timezone.utc),
        "updated_at": datetime(2024, 1, 1, tzinfo=timezone.utc),
        "completed_at": None,
    }
    row.update(overrides)
    return row


def _make_record() -> UploadRecord:
    return UploadRecord(
        id="6f1c0f64-5a8e-4c56-9a43-3d2d8b5c9e10",
        idempotency_key="k1",
        original_name="report.pdf",
        storage_key="b7d1.pdf",
        bucket="uploads",
        size_bytes=1024,
        status=UploadStatus.PENDING,
        content_type="application/pdf",
        checksum="0f343b0931126a20f133d67c2b018a3b",
    )


def _mock_connection(mock_get_conn: MagicMock) -> tuple[MagicMock, MagicMock]:
    """Wire up a mock connection + cursor and return (mock_conn, mock_cursor)."""
    mock_cursor = MagicMock()
    mock_conn = MagicMock()
    mock_conn.cursor.return_value.__enter__ = MagicMock(return_value=mock_cursor)
    mock_conn.cursor.return_value.__exit__ = MagicMock(return_value=False)
    mock_get_conn.return_value.__enter__ = MagicMock(return_value=mock_conn)
    mock_get_conn.return_value.__exit__ = MagicMock(return_value=False)
    return mock_conn, mock_cursor


class TestSave:
    @patch(_PATCH_TARGET)
    def test_inserts_and_returns_persisted_record(self, mock_get_conn: MagicMock) -> None:
        mock_conn, mock_cursor = _mock_connection(mock_get_conn)
        mock_cursor.fetchone.return_value = _make_row()

        result = UploadRepository().save(_make_record())

        sql, params = mock_cursor.execute.call_args.args
        assert "INSERT INTO file_uploads" in sql
        assert "ON CONFLICT (id) DO UPDATE" in sql
        assert params["status"] == "PENDING"
        assert params["idempotency_key"] == "k1"
        assert result.created_at is not None
        assert result.status == UploadStatus.PENDING
        mock_conn.commit.assert_called_once()

    @patch(_PATCH_TARGET)
    def test_truncates_long_error_message(self, mock_get_conn: MagicMock) -> None:
        _conn, mock_cursor = _mock_connection(mock_get_conn)
        mock_cursor.fetchone.return_value = _make_row()
        record = _make_record()
        record.error_message = "x" * 5000

        UploadRepository().save(record)

        _sql, params = mock_cursor.execute.call_args.args
        assert len(params["error_message"]) == 1000

    @patch(_PATCH_TARGET)
    def test_missing_returned_row_raises(self, mock_get_conn: MagicMock) -> None:
        _conn, mock_cursor = _mock_connection(mock_get_conn)
        mock_cursor.fetchone.return_value = None

        with pytest.raises(UploadError, match="returned no row"):
            UploadRepository().save(_make_record())

    @patch(_PATCH_TARGET)
    def test_duplicate_key_raises_domain_error(self, mock_get_conn: MagicMock) -> None:
        mock_conn, mock_cursor = _mock_connection(mock_get_conn)
        violation = errors.UniqueViolation("duplicate key")
        mock_cursor.execute.side_effect = violation

        with patch.object(
            errors.UniqueViolation,
            "diag",
            new=MagicMock(constraint_name=IDEMPOTENCY_KEY_CONSTRAINT),
        ):
            with pytest.raises(DuplicateIdempotencyKeyError, match="k1"):
                UploadRepository().save(_make_record())

        mock_conn.rollback.assert_called_once()
        mock_conn.commit.assert_not_called()

    @patch(_PATCH_TARGET)
    def test_other_unique_violation_propagates(self, mock_get_conn: MagicMock) -> None:
        _conn, mock_cursor = _mock_connection(mock_get_conn)
        mock_cursor.execute.side_effect = errors.UniqueViolation("duplicate key")

        with patch.object(
            errors.UniqueViolation,
            "diag",
            new=MagicMock(constraint_name="uq_file_uploads_bucket_storage_key"),
        ):
            with pytest.raises(errors.UniqueViolation):
                UploadRepository().save(_make_record())


class TestFind:
    @patch(_PATCH_TARGET)
    def test_find_by_id_returns_record(self, mock_get_conn: MagicMock) -> None:
        _conn, mock_cursor = _mock_connection(mock_get_conn)
        mock_cursor.fetchone.return_value = _make_row(status="UPLOADING")

        result = UploadRepository().find_by_id("6f1c0f64-5a8e-4c56-9a43-3d2d8b5c9e10")

        assert isinstance(result, UploadRecord)
        assert result.status == UploadStatus.UPLOADING
        sql, params = mock_cursor.execute.call_args.args
        assert "WHERE id = %s" in sql
        assert params == ("6f1c0f64-5a8e-4c56-9a43-3d2d8b5c9e10",)

    @patch(_PATCH_TARGET)
    def test_find_by_id_returns_none_when_missing(self, mock_get_conn: MagicMock) -> None:
        _conn, mock_cursor = _mock_connection(mock_get_conn)
        mock_cursor.fetchone.return_value = None

        assert UploadRepository().find_by_id("missing") is None

    @patch(_PATCH_TARGET)
    def test_find_by_idempotency_key(self, mock_get_conn: MagicMock) -> None:
        _conn, mock_cursor = _mock_connection(mock_get_conn)
        mock_cursor.fetchone.return_value = _make_row()

        result = UploadRepository().find_by_idempotency_key("k1")

        assert result is not None
        assert result.idempotency_key == "k1"
        sql, params = mock_cursor.execute.call_args.args
        assert "idempotency_key = %s" in sql
        assert params == ("k1",)

    @patch(_PATCH_TARGET)
    def test_find_all_orders_newest_first(self, mock_get_conn: MagicMock) -> None:
        _conn, mock_cursor = _mock_connection(mock_get_conn)
        mock_cursor.fetchall.return_value = [_make_row(id="b"), _make_row(id="a")]

        result = UploadRepository().find_all_order_by_created_at_desc()

        assert [r.id for r in result] == ["b", "a"]
        sql, _params = mock_cursor.execute.call_args.args
        assert "ORDER BY created_at DESC" in sql

    @patch(_PATCH_TARGET)
    def test_find_by_status(self, mock_get_conn: MagicMock) -> None:
        _conn, mock_cursor = _mock_connection(mock_get_conn)
        mock_cursor.fetchall.return_value = [_make_row(status="FAILED")]

        result = UploadRepository().find_by_status(UploadStatus.FAILED)

        assert result[0].status == UploadStatus.FAILED
        _sql, params = mock_cursor.execute.call_args.args
        assert params == ("FAILED",)


class TestTransitions:
    @patch(_PATCH_TARGET)
    def test_mark_uploading_only_from_pending(self, mock_get_conn: MagicMock) -> None:
        mock_conn, mock_cursor = _mock_connection(mock_get_conn)
        mock_cursor.fetchone.return_value = _make_row(status="UPLOADING")

        result = UploadRepository().mark_uploading("r1")

        assert result.status == UploadStatus.UPLOADING
        sql, params = mock_cursor.execute.call_args.args
        assert "UPDATE file_uploads" in sql
        assert "status = ANY(%s)" in sql
        assert params == ("UPLOADING", "r1", ["PENDING"])
        mock_conn.commit.assert_called_once()

    @patch(_PATCH_TARGET)
    def test_mark_completed_sets_completed_at(self, mock_get_conn: MagicMock) -> None:
        _conn, mock_cursor = _mock_connection(mock_get_conn)
        mock_cursor.fetchone.return_value = _make_row(
            status="COMPLETED", completed_at=datetime(2024, 1, 2, tzinfo=timezone.utc)
        )

        result = UploadRepository().mark_completed("r1")

        assert result.completed_at is not None
        sql, params = mock_cursor.execute.call_args.args
        assert "completed_at = NOW()" in sql
        assert "error_message = NULL" in sql
        assert params == ("COMPLETED", "r1", ["UPLOADING"])

    @patch(_PATCH_TARGET)
    def test_mark_failed_records_error(self, mock_get_conn: MagicMock) -> None:
        _conn, mock_cursor = _mock_connection(mock_get_conn)
        mock_cursor.fetchone.return_value = _make_row(
            status="FAILED", error_message="Transfer failed: boom"
        )

        result = UploadRepository().mark_failed("r1", "Transfer failed: boom")

        assert result.error_message == "Transfer failed: boom"
        _sql, params = mock_cursor.execute.call_args.args
        assert params == ("FAILED", "Transfer failed: boom", "r1", ["PENDING", "UPLOADING"])

    @patch(_PATCH_TARGET)
    def test_missing_record_raises_not_found(self, mock_get_conn: MagicMock) -> None:
        _conn, mock_cursor = _mock_connection(mock_get_conn)
        mock_cursor.fetchone.side_effect = [None, None]

        with pytest.raises(RecordNotFoundError, match="Upload r1 not found"):
            UploadRepository().mark_uploading("r1")

    @patch(_PATCH_TARGET)
    def test_terminal_record_raises_invalid_transition(self, mock_get_conn: MagicMock) -> None:
        _conn, mock_cursor = _mock_connection(mock_get_conn)
        mock_cursor.fetchone.side_effect = [None, {"status": "COMPLETED"}]

        with pytest.raises(InvalidTransitionError, match="from COMPLETED to FAILED"):
            UploadRepository().mark_failed("r1", "late failure")
