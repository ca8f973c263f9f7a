"""Reference number generation for ledger and related documents.

Numbers have the shape PREFIX-PERIODKEY-NNNNNN and are sequential within a
period.  The next sequence is derived from the highest existing number for
the same prefix + period (descending sort, no counter table), so two
concurrent writers can compute the same candidate.  The unique index on the
number column is what guarantees uniqueness: ``insert_with_reference``
flushes each candidate inside a SAVEPOINT and, on a unique violation,
recomputes and tries again.

Format tokens:
  {period}     → period key, strftime pattern per kind (see PERIOD_FORMATS)
  {seq:N}      → zero-padded sequence number, N digits, resets per period

Default formats:
  bill:                BILL-{period}-{seq:6}       BILL-202505-000001
  bill_invoice:        BILL-INV-{period}-{seq:6}   BILL-INV-202505-000001
  rent_invoice:        INV-{period}-{seq:6}        INV-202505-000001
  commission_invoice:  COM-INV-{period}-{seq:6}    COM-INV-202505-000001
  activation_request:  ACT-{period}-{seq:4}        ACT-2025-0001
  offer_letter:        OFL-{period}-{seq:6}        OFL-2025-05-000001

When every bounded attempt collides, one last candidate suffixed with a
microsecond timestamp fragment is tried.  That keeps the call terminating
at the cost of strict sequentiality, and is logged so heavy use shows up.
"""

import asyncio
import enum
import logging
import re
import time
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.middleware.exceptions import ReferenceNumberExhausted, is_unique_violation
from app.models.ledger_document import LedgerDocument
from app.models.numbered_documents import ActivationRequest, OfferLetter
from app.utils.clock import utcnow

logger = logging.getLogger(__name__)


class ReferenceKind(str, enum.Enum):
    BILL = "bill"
    BILL_INVOICE = "bill_invoice"
    RENT_INVOICE = "rent_invoice"
    COMMISSION_INVOICE = "commission_invoice"
    ACTIVATION_REQUEST = "activation_request"
    OFFER_LETTER = "offer_letter"


DEFAULT_FORMATS = {
    ReferenceKind.BILL: "BILL-{period}-{seq:6}",
    ReferenceKind.BILL_INVOICE: "BILL-INV-{period}-{seq:6}",
    ReferenceKind.RENT_INVOICE: "INV-{period}-{seq:6}",
    ReferenceKind.COMMISSION_INVOICE: "COM-INV-{period}-{seq:6}",
    ReferenceKind.ACTIVATION_REQUEST: "ACT-{period}-{seq:4}",
    ReferenceKind.OFFER_LETTER: "OFL-{period}-{seq:6}",
}

PERIOD_FORMATS = {
    ReferenceKind.BILL: "%Y%m",
    ReferenceKind.BILL_INVOICE: "%Y%m",
    ReferenceKind.RENT_INVOICE: "%Y%m",
    ReferenceKind.COMMISSION_INVOICE: "%Y%m",
    ReferenceKind.ACTIVATION_REQUEST: "%Y",
    ReferenceKind.OFFER_LETTER: "%Y-%m",
}

# Map kinds to the mapped column that holds their number
ENTITY_COLUMN_MAP = {
    ReferenceKind.BILL: LedgerDocument.reference_number,
    ReferenceKind.BILL_INVOICE: LedgerDocument.reference_number,
    ReferenceKind.RENT_INVOICE: LedgerDocument.reference_number,
    ReferenceKind.COMMISSION_INVOICE: LedgerDocument.reference_number,
    ReferenceKind.ACTIVATION_REQUEST: ActivationRequest.request_number,
    ReferenceKind.OFFER_LETTER: OfferLetter.offer_number,
}


def period_key(kind: ReferenceKind, when: datetime | None = None) -> str:
    """Period key for ``kind`` at ``when`` (defaults to now)."""
    return (when or utcnow()).strftime(PERIOD_FORMATS[ReferenceKind(kind)])


def _get_format(kind: ReferenceKind) -> str:
    """Format template for a kind, honouring settings overrides."""
    kind = ReferenceKind(kind)
    return settings.reference_formats.get(kind.value, DEFAULT_FORMATS[kind])


def _build_prefix(fmt: str, period: str) -> str:
    """Everything before {seq:N}, with the period filled in."""
    prefix = fmt.replace("{period}", period)
    return re.sub(r"\{seq:\d+\}.*$", "", prefix)


def _seq_width(fmt: str) -> int:
    seq_match = re.search(r"\{seq:(\d+)\}", fmt)
    return int(seq_match.group(1)) if seq_match else 6


def _format_code(fmt: str, period: str, seq: int) -> str:
    code = fmt.replace("{period}", period)
    return re.sub(r"\{seq:\d+\}", f"{seq:0{_seq_width(fmt)}d}", code)


def _parse_sequence(code: str, prefix: str) -> int:
    """Sequence part of an existing code; fallback codes keep theirs before the suffix."""
    digits = code[len(prefix):].split("-", 1)[0]
    return int(digits) if digits.isdigit() else 0


async def _highest_existing(db: AsyncSession, kind: ReferenceKind, prefix: str) -> str | None:
    """Highest existing number starting with ``prefix``."""
    column = ENTITY_COLUMN_MAP[ReferenceKind(kind)]
    result = await db.execute(
        select(column)
        .where(column.like(f"{prefix}%"))
        .order_by(column.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def next_reference_number(
    db: AsyncSession,
    kind: ReferenceKind,
    period: str | None = None,
) -> str:
    """Compute the next number for ``kind`` in ``period``.

    The value is only a candidate: a concurrent writer may claim it first.
    Use ``insert_with_reference`` to persist a row under a number.
    """
    kind = ReferenceKind(kind)
    fmt = _get_format(kind)
    period = period or period_key(kind)
    prefix = _build_prefix(fmt, period)

    last = await _highest_existing(db, kind, prefix)
    seq = _parse_sequence(last, prefix) + 1 if last else 1
    return _format_code(fmt, period, seq)


def _fallback_reference(candidate: str) -> str:
    """Append a microsecond timestamp fragment to a collided candidate."""
    return f"{candidate}-{time.time_ns() // 1000 % 10**10:010d}"


async def _try_insert(db: AsyncSession, obj, attr: str, candidate: str) -> bool:
    """Flush ``obj`` under ``candidate`` in a SAVEPOINT.  False on collision."""
    setattr(obj, attr, candidate)
    try:
        async with db.begin_nested():
            db.add(obj)
            await db.flush()
    except IntegrityError as exc:
        if not is_unique_violation(exc):
            raise
        return False
    return True


async def insert_with_reference(
    db: AsyncSession,
    obj,
    kind: ReferenceKind,
    period: str | None = None,
    *,
    max_attempts: int | None = None,
) -> str:
    """Assign the next reference number to ``obj`` and flush it.

    Retries with a freshly computed number on unique violations, then falls
    back to a timestamp-suffixed number.

    Raises:
        ReferenceNumberExhausted: if the fallback collides too.
    """
    kind = ReferenceKind(kind)
    attr = ENTITY_COLUMN_MAP[kind].key
    attempts = max_attempts or settings.reference_max_attempts
    period = period or period_key(kind)

    candidate = None
    for attempt in range(1, attempts + 1):
        candidate = await next_reference_number(db, kind, period)
        if await _try_insert(db, obj, attr, candidate):
            return candidate
        logger.info(
            "Reference %s already taken (attempt %d/%d), recomputing",
            candidate, attempt, attempts,
        )
        if attempt < attempts:
            await asyncio.sleep(settings.retry_backoff_seconds * attempt)

    fallback = _fallback_reference(candidate)
    logger.warning(
        "Reference numbering for %s/%s exhausted %d attempts; using fallback %s",
        kind.value, period, attempts, fallback,
    )
    if await _try_insert(db, obj, attr, fallback):
        return fallback

    raise ReferenceNumberExhausted(kind.value, attempts + 1)
