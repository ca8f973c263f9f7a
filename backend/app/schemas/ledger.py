"""Pydantic schemas for ledger documents, charges and payments.

Request bodies take amounts as Decimal so no float noise reaches the
calculator.  Payment amounts are deliberately not range-checked here: the
payment engine owns that rule and reports it as INVALID_PAYMENT_AMOUNT.
Incoming datetimes are normalised to naive UTC, the form every stored
timestamp takes.
"""

from datetime import date, datetime
from decimal import Decimal

from pydantic import BaseModel, field_validator

from app.models.ledger_document import BillType, DocumentKind, DocumentStatus
from app.models.tenant import TaxMode
from app.utils.clock import as_naive_utc


def _check_tax_rate(v: Decimal | None) -> Decimal | None:
    if v is not None and not (0 <= v <= 100):
        raise ValueError("tax_rate must be between 0 and 100")
    return v


# ── Charges ──────────────────────────────────────────────────

class ChargeRequest(BaseModel):
    previous_reading: Decimal
    current_reading: Decimal
    charge_per_unit: Decimal
    tax_rate: Decimal | None = None
    tax_mode: TaxMode = TaxMode.EXCLUSIVE

    @field_validator("tax_rate")
    @classmethod
    def valid_tax_rate(cls, v: Decimal | None) -> Decimal | None:
        return _check_tax_rate(v)


class ChargeOut(BaseModel):
    units: float | None = None
    subtotal: float
    tax_amount: float
    grand_total: float
    tax_rate: float | None = None
    tax_mode: TaxMode

    model_config = {"from_attributes": True}


# ── Documents ────────────────────────────────────────────────

class BillCreate(ChargeRequest):
    tenant_id: str
    bill_type: BillType
    due_date: datetime | None = None
    description: str | None = None
    notes: str | None = None

    @field_validator("due_date")
    @classmethod
    def due_date_utc(cls, v: datetime | None) -> datetime | None:
        return as_naive_utc(v)


class BillInvoiceCreate(BaseModel):
    due_date: datetime
    notes: str | None = None

    @field_validator("due_date")
    @classmethod
    def due_date_utc(cls, v: datetime) -> datetime:
        return as_naive_utc(v)


class RentInvoiceCreate(BaseModel):
    tenant_id: str
    due_date: datetime | None = None
    payment_period: str | None = None
    notes: str | None = None

    @field_validator("due_date")
    @classmethod
    def due_date_utc(cls, v: datetime | None) -> datetime | None:
        return as_naive_utc(v)


class CommissionInvoiceCreate(BaseModel):
    tenant_id: str
    collection_amount: Decimal
    # Above 1 is a percentage (8.5), otherwise a fraction (0.085)
    commission_rate: Decimal
    vat_rate: Decimal | None = None
    period_start: datetime | None = None
    due_date: datetime | None = None
    description: str | None = None
    notes: str | None = None

    @field_validator("vat_rate")
    @classmethod
    def valid_vat_rate(cls, v: Decimal | None) -> Decimal | None:
        return _check_tax_rate(v)

    @field_validator("period_start", "due_date")
    @classmethod
    def dates_utc(cls, v: datetime | None) -> datetime | None:
        return as_naive_utc(v)


class DocumentOut(BaseModel):
    id: str
    reference_number: str
    kind: DocumentKind
    tenant_id: str
    parent_bill_id: str | None = None
    split_from_id: str | None = None
    bill_type: BillType
    description: str | None = None
    previous_reading: float | None = None
    current_reading: float | None = None
    units: float | None = None
    charge_per_unit: float | None = None
    rent: float | None = None
    service_charge: float | None = None
    payment_period: str | None = None
    tax_mode: TaxMode
    tax_rate: float | None = None
    subtotal: float
    tax_amount: float
    grand_total: float
    amount_paid: float
    balance: float
    status: DocumentStatus
    issue_date: datetime
    due_date: datetime | None = None
    paid_at: datetime | None = None
    notes: str | None = None
    created_at: datetime

    model_config = {"from_attributes": True}


# ── Payments ─────────────────────────────────────────────────

class PaymentCreate(BaseModel):
    amount: Decimal
    payment_date: date | None = None
    notes: str | None = None


class PaymentRecordOut(BaseModel):
    id: str
    document_id: str
    amount_tendered: float
    amount_applied: float
    payment_date: date
    notes: str | None = None

    model_config = {"from_attributes": True}


class OutcomeWarning(BaseModel):
    code: str
    message: str
    remaining_balance: str | None = None


class PaymentOutcomeOut(BaseModel):
    document: DocumentOut
    parent_bill: DocumentOut | None = None
    split_document: DocumentOut | None = None
    payment: PaymentRecordOut
    warnings: list[OutcomeWarning] = []

    model_config = {"from_attributes": True}


class DeletionOut(BaseModel):
    document_id: str
    reference_number: str
    removed_invoices: int
    parent_bill: DocumentOut | None = None

    model_config = {"from_attributes": True}
