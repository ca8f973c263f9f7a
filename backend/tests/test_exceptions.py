"""Error envelope tests for storage failures that reach the API layer."""

import json

import pytest
from sqlalchemy.exc import IntegrityError, OperationalError
from starlette.requests import Request

from app.middleware.exceptions import (
    PaymentConflict,
    integrity_exception_handler,
    is_unique_violation,
    operational_exception_handler,
    propdesk_exception_handler,
)


class PgUniqueViolation(Exception):
    sqlstate = "23505"


class PgForeignKeyViolation(Exception):
    sqlstate = "23503"


def _request(path: str = "/api/ledger/bills") -> Request:
    return Request({
        "type": "http",
        "method": "POST",
        "path": path,
        "headers": [],
        "query_string": b"",
    })


def _error(resp) -> dict:
    return json.loads(resp.body)["error"]


@pytest.mark.unit
@pytest.mark.asyncio
class TestStorageErrorResponses:

    async def test_unique_violation_is_number_contention(self):
        exc = IntegrityError("INSERT INTO ledger_documents", {}, PgUniqueViolation("duplicate key"))

        resp = await integrity_exception_handler(_request(), exc)

        assert resp.status_code == 409
        assert _error(resp)["code"] == "REFERENCE_NUMBER_CONFLICT"

    async def test_sqlite_unique_message_is_recognised(self):
        exc = IntegrityError(
            "INSERT", {}, Exception("UNIQUE constraint failed: ledger_documents.reference_number")
        )
        assert is_unique_violation(exc)
        resp = await integrity_exception_handler(_request(), exc)
        assert resp.status_code == 409

    async def test_foreign_key_violation_is_a_missing_link(self):
        exc = IntegrityError("INSERT", {}, PgForeignKeyViolation("violates foreign key constraint"))

        resp = await integrity_exception_handler(_request(), exc)

        assert resp.status_code == 404
        assert _error(resp)["code"] == "LINKED_RECORD_NOT_FOUND"

    async def test_other_constraint_failures(self):
        exc = IntegrityError("INSERT", {}, Exception("CHECK constraint failed"))
        resp = await integrity_exception_handler(_request(), exc)
        assert resp.status_code == 422
        assert _error(resp)["code"] == "INTEGRITY_ERROR"

    async def test_lock_contention_is_retryable(self):
        exc = OperationalError("UPDATE", {}, Exception("database is locked"))

        resp = await operational_exception_handler(_request(), exc)

        assert resp.status_code == 409
        assert _error(resp)["code"] == "CONCURRENT_UPDATE"

    async def test_lost_connection_is_unavailable(self):
        exc = OperationalError("SELECT 1", {}, Exception("connection refused"))

        resp = await operational_exception_handler(_request(), exc)

        assert resp.status_code == 503
        assert _error(resp)["code"] == "DATABASE_UNAVAILABLE"

    async def test_domain_error_envelope(self):
        resp = await propdesk_exception_handler(_request(), PaymentConflict("doc-1", 3))

        assert resp.status_code == 409
        error = _error(resp)
        assert error["code"] == "PAYMENT_CONFLICT"
        assert "conflicted with concurrent updates 3 times" in error["message"]
