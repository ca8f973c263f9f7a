"""Ledger error taxonomy and the exception handlers that render it.

Every domain error carries a message, an HTTP status, and a stable
error code, so services can raise them directly and the API layer turns
them into the standard error body:

    {"error": {"code": "ALREADY_SETTLED", "message": "...", "details": {...}}}

Storage errors that escape the services are classified here as well.  The
only unique index a request can race on is a document number, so a unique
violation is reported as numbering contention (409, retryable), and lock
or serialization failures as a concurrent update (409, retryable).
"""

import logging

from fastapi import HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError
from starlette.exceptions import HTTPException as StarletteHTTPException

logger = logging.getLogger(__name__)

UNIQUE_VIOLATION = "23505"
FOREIGN_KEY_VIOLATION = "23503"
# Serialization failure, deadlock detected
TRANSIENT_SQLSTATES = {"40001", "40P01"}
TRANSIENT_MESSAGES = ("database is locked", "deadlock detected", "could not serialize")


class PropDeskException(Exception):
    """Base exception for ledger application errors."""

    def __init__(
        self,
        message: str,
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
        error_code: str = "INTERNAL_ERROR",
    ):
        self.message = message
        self.status_code = status_code
        self.error_code = error_code
        super().__init__(self.message)


class BusinessLogicError(PropDeskException):
    """Exception for business logic violations."""

    def __init__(self, message: str, error_code: str = "BUSINESS_LOGIC_ERROR"):
        super().__init__(
            message=message,
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            error_code=error_code,
        )


class ResourceNotFoundError(PropDeskException):
    """Exception for resources not found."""

    def __init__(self, resource: str, identifier: str):
        self.resource = resource
        self.identifier = identifier
        super().__init__(
            message=f"{resource} not found: {identifier}",
            status_code=status.HTTP_404_NOT_FOUND,
            error_code="RESOURCE_NOT_FOUND",
        )


# ── Validation errors (raised before any transaction opens) ──

class InvalidPaymentAmount(BusinessLogicError):
    def __init__(self, amount, reason: str = "must be positive"):
        self.amount = amount
        super().__init__(
            f"Payment amount {reason}, got {amount}",
            error_code="INVALID_PAYMENT_AMOUNT",
        )


class InvalidReadingRange(BusinessLogicError):
    def __init__(self, previous_reading, current_reading):
        self.previous_reading = previous_reading
        self.current_reading = current_reading
        super().__init__(
            f"Current reading {current_reading} is below previous reading {previous_reading}",
            error_code="INVALID_READING_RANGE",
        )


class InvalidCommissionInput(BusinessLogicError):
    def __init__(self, message: str):
        super().__init__(message, error_code="INVALID_COMMISSION_INPUT")


# ── State errors ─────────────────────────────────────────────

class DocumentNotPayable(PropDeskException):
    def __init__(self, reference_number: str, doc_status: str):
        super().__init__(
            message=f"Document {reference_number} is {doc_status} and cannot take payments",
            status_code=status.HTTP_409_CONFLICT,
            error_code="DOCUMENT_NOT_PAYABLE",
        )


class AlreadySettled(PropDeskException):
    def __init__(self, reference_number: str):
        super().__init__(
            message=f"Bill {reference_number} is already fully paid. No balance remaining for invoice.",
            status_code=status.HTTP_409_CONFLICT,
            error_code="ALREADY_SETTLED",
        )


class CommissionAlreadyInvoiced(PropDeskException):
    def __init__(self, reference_number: str, period: str):
        self.reference_number = reference_number
        super().__init__(
            message=f"Commission for {period} is already invoiced as {reference_number}",
            status_code=status.HTTP_409_CONFLICT,
            error_code="COMMISSION_ALREADY_INVOICED",
        )


# ── Concurrency errors ───────────────────────────────────────

class ReferenceNumberExhausted(PropDeskException):
    """Every candidate reference number, including the timestamp fallback, collided."""

    def __init__(self, kind: str, attempts: int):
        self.kind = kind
        self.attempts = attempts
        super().__init__(
            message=f"Could not allocate a unique {kind} reference number after {attempts} attempts",
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            error_code="REFERENCE_NUMBER_EXHAUSTED",
        )


class LedgerConflict(PropDeskException):
    """Transaction kept hitting serialization failures or deadlocks."""

    action = "Update"
    error_code = "LEDGER_CONFLICT"

    def __init__(self, document_id: str, attempts: int):
        self.document_id = document_id
        self.attempts = attempts
        super().__init__(
            message=(
                f"{self.action} on document {document_id} conflicted with concurrent "
                f"updates {attempts} times. Please retry."
            ),
            status_code=status.HTTP_409_CONFLICT,
            error_code=type(self).error_code,
        )


class PaymentConflict(LedgerConflict):
    action = "Payment"
    error_code = "PAYMENT_CONFLICT"


class DeletionConflict(LedgerConflict):
    action = "Deletion"
    error_code = "DELETION_CONFLICT"


# ── Storage error classification ─────────────────────────────

def _sqlstate(exc: DBAPIError) -> str | None:
    orig = getattr(exc, "orig", None)
    return getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)


def _driver_message(exc: DBAPIError) -> str:
    orig = getattr(exc, "orig", None)
    return str(orig if orig is not None else exc).lower()


def is_unique_violation(exc: DBAPIError) -> bool:
    if _sqlstate(exc) == UNIQUE_VIOLATION:
        return True
    return "unique" in _driver_message(exc)


def is_foreign_key_violation(exc: DBAPIError) -> bool:
    if _sqlstate(exc) == FOREIGN_KEY_VIOLATION:
        return True
    return "foreign key" in _driver_message(exc)


def is_transient_conflict(exc: DBAPIError) -> bool:
    """True for storage errors that a fresh transaction can get past."""
    if _sqlstate(exc) in TRANSIENT_SQLSTATES:
        return True
    message = _driver_message(exc)
    return any(fragment in message for fragment in TRANSIENT_MESSAGES)


# ── Handlers ─────────────────────────────────────────────────

def create_error_response(
    status_code: int,
    message: str,
    error_code: str = "ERROR",
    details: dict | None = None,
) -> JSONResponse:
    content = {"error": {"code": error_code, "message": message}}
    if details:
        content["error"]["details"] = details
    return JSONResponse(status_code=status_code, content=content)


def _where(request: Request) -> str:
    return f"{request.method} {request.url.path}"


async def propdesk_exception_handler(request: Request, exc: PropDeskException) -> JSONResponse:
    level = logging.ERROR if exc.status_code >= 500 else logging.INFO
    logger.log(level, "%s -> %s: %s", _where(request), exc.error_code, exc.message)
    return create_error_response(exc.status_code, exc.message, exc.error_code)


async def http_exception_handler(
    request: Request,
    exc: HTTPException | StarletteHTTPException,
) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s -> HTTP %d: %s", _where(request), exc.status_code, exc.detail)
    return create_error_response(
        exc.status_code, str(exc.detail), error_code=f"HTTP_{exc.status_code}"
    )


async def validation_exception_handler(
    request: Request,
    exc: RequestValidationError,
) -> JSONResponse:
    """Request body/query problems, reported per field without the 'body' prefix."""
    errors = []
    for error in exc.errors():
        loc = [str(part) for part in error["loc"] if part not in ("body", "query", "path")]
        errors.append({
            "field": ".".join(loc) or "request",
            "message": error["msg"],
            "type": error["type"],
        })
    logger.info("%s -> validation failed on %s", _where(request), [e["field"] for e in errors])

    return create_error_response(
        status.HTTP_422_UNPROCESSABLE_ENTITY,
        "Validation error",
        error_code="VALIDATION_ERROR",
        details={"errors": errors},
    )


async def integrity_exception_handler(request: Request, exc: IntegrityError) -> JSONResponse:
    """Constraint failures that escaped the services' own handling."""
    if is_unique_violation(exc):
        logger.warning("%s -> document number contention: %s", _where(request), exc.orig)
        return create_error_response(
            status.HTTP_409_CONFLICT,
            "A document number was claimed by a concurrent request. Please retry.",
            error_code="REFERENCE_NUMBER_CONFLICT",
        )
    if is_foreign_key_violation(exc):
        logger.warning("%s -> dangling link: %s", _where(request), exc.orig)
        return create_error_response(
            status.HTTP_404_NOT_FOUND,
            "A linked tenant or document no longer exists",
            error_code="LINKED_RECORD_NOT_FOUND",
        )

    logger.error("%s -> integrity error: %s", _where(request), exc.orig)
    return create_error_response(
        status.HTTP_422_UNPROCESSABLE_ENTITY,
        "Ledger constraint violation",
        error_code="INTEGRITY_ERROR",
    )


async def operational_exception_handler(request: Request, exc: OperationalError) -> JSONResponse:
    if is_transient_conflict(exc):
        logger.warning("%s -> concurrent update: %s", _where(request), exc.orig)
        return create_error_response(
            status.HTTP_409_CONFLICT,
            "The ledger was updated concurrently. Please retry.",
            error_code="CONCURRENT_UPDATE",
        )

    logger.error("%s -> database unavailable: %s", _where(request), exc.orig)
    return create_error_response(
        status.HTTP_503_SERVICE_UNAVAILABLE,
        "Database temporarily unavailable. Please try again.",
        error_code="DATABASE_UNAVAILABLE",
    )


async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("%s -> unhandled %s", _where(request), type(exc).__name__)
    return create_error_response(
        status.HTTP_500_INTERNAL_SERVER_ERROR,
        "An unexpected error occurred. Please try again later.",
        error_code="INTERNAL_SERVER_ERROR",
    )


def register_exception_handlers(app):
    """Register all custom exception handlers with FastAPI app."""
    app.add_exception_handler(PropDeskException, propdesk_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(IntegrityError, integrity_exception_handler)
    app.add_exception_handler(OperationalError, operational_exception_handler)
    app.add_exception_handler(Exception, general_exception_handler)
