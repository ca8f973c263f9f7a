"""Aggregate model imports for Alembic auto-detection."""

from app.models.tenant import ServiceChargeType, TaxMode, Tenant  # noqa: F401
from app.models.ledger_document import (  # noqa: F401
    BillType,
    DocumentKind,
    DocumentStatus,
    LedgerDocument,
)
from app.models.ledger_payment import LedgerPayment  # noqa: F401
from app.models.numbered_documents import ActivationRequest, OfferLetter  # noqa: F401
