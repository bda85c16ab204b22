"""Tests for error normalization and classification."""

import errno

import pytest
import yaml
from sqlalchemy.exc import IntegrityError, OperationalError

from notevault.exceptions import ErrorCategory, ErrorCode, RepositoryError
from notevault.resilience.classifier import classify_error, normalize_error


def _operational(message: str) -> OperationalError:
    return OperationalError("SELECT 1", {}, Exception(message))


class TestNormalizeError:
    @pytest.mark.parametrize(
        "raw, expected",
        [
            (TimeoutError("slow"), ErrorCode.TIMEOUT_ERROR),
            (PermissionError("denied"), ErrorCode.PERMISSION_DENIED),
            (ConnectionError("reset"), ErrorCode.NETWORK_ERROR),
            (FileNotFoundError("gone"), ErrorCode.NOT_FOUND),
            (OSError(errno.ENOSPC, "No space left on device"), ErrorCode.STORAGE_FULL),
            (OSError(errno.EIO, "I/O error"), ErrorCode.STORAGE_NOT_AVAILABLE),
            (yaml.YAMLError("bad yaml"), ErrorCode.STORAGE_CORRUPT),
            (ValueError("bad value"), ErrorCode.VALIDATION_ERROR),
            (RuntimeError("Quota exceeded"), ErrorCode.STORAGE_FULL),
            (RuntimeError("request timed out"), ErrorCode.TIMEOUT_ERROR),
            (RuntimeError("boom"), ErrorCode.UNKNOWN_ERROR),
        ],
    )
    def test_raw_exceptions(self, raw, expected):
        assert normalize_error(raw, "op").code == expected

    @pytest.mark.parametrize(
        "message, expected",
        [
            ("database is locked", ErrorCode.TIMEOUT_ERROR),
            ("database or disk is full", ErrorCode.STORAGE_FULL),
            ("no such table: notes", ErrorCode.SCHEMA_ERROR),
            ("unable to open database file", ErrorCode.STORAGE_NOT_AVAILABLE),
            ("file is not a database", ErrorCode.STORAGE_CORRUPT),
        ],
    )
    def test_sqlite_operational_errors(self, message, expected):
        assert normalize_error(_operational(message), "op").code == expected

    def test_integrity_error_is_validation(self):
        raw = IntegrityError("INSERT", {}, Exception("UNIQUE constraint failed"))
        assert normalize_error(raw, "op").code == ErrorCode.VALIDATION_ERROR

    def test_normalized_error_returned_unchanged(self):
        error = RepositoryError.timeout("op", 100)
        assert normalize_error(error, "other") is error

    def test_context_and_cause(self):
        raw = ConnectionError("connection reset by peer")
        error = normalize_error(raw, "get_notes")

        assert error.operation == "get_notes"
        assert error.cause is raw
        assert error.context["original_error_name"] == "ConnectionError"
        assert "connection reset" in error.context["original_error"]

    def test_unknown_keeps_message(self):
        assert normalize_error(RuntimeError("boom"), "op").message == "boom"
        assert normalize_error(RuntimeError(), "op").message == "RuntimeError"

    def test_critical_message_hides_raw_text(self):
        raw = PermissionError(13, "Permission denied", "/home/me/vault/n1.md")
        error = normalize_error(raw, "save_note")

        assert error.message == "Permission denied during save_note"
        assert "/home/me" not in str(error)
        assert "/home/me" not in str(error.to_dict())
        assert "/home/me" in error.context["original_error"]


class TestClassifyError:
    def test_transient(self):
        result = classify_error(RepositoryError.timeout("op", 10))
        assert result.category == ErrorCategory.TRANSIENT
        assert result.is_retryable

    def test_conflict_action(self):
        result = classify_error(RepositoryError.conflict("save", "n1"))
        assert result.is_retryable
        assert result.suggested_action == "Retry with latest data version"

    def test_security_not_retryable(self):
        result = classify_error(RepositoryError.encryption_failed("op", "bad key"))
        assert result.category == ErrorCategory.SECURITY
        assert not result.is_retryable
