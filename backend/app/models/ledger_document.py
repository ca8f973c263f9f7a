"""LedgerDocument: one billable obligation (bill or invoice).

A single table holds every document that tracks an amount owed and paid,
tagged by ``kind``:

    bill                metered utility bill; the parent of bill invoices
    bill_invoice        invoice raised against a bill's remaining balance
    rent_invoice        rent + service charge invoice
    commission_invoice  manager commission invoice

Bill invoices point at their parent bill.  The parent's ``amount_paid`` is
the source of truth for what the tenant has actually paid; its invoices
are subdivisions of the remaining balance.  When a partial payment lands
on a bill invoice, the remainder is re-issued as a new sibling invoice
(``split_from_id`` points back at the invoice that was paid).

Lifecycle:  UNPAID → PARTIAL → PAID,  UNPAID/PARTIAL → OVERDUE → PAID
            CANCELLED is terminal and only set administratively.
"""

import enum
import uuid
from datetime import datetime
from decimal import Decimal

from sqlalchemy import (
    DateTime, Enum as SAEnum, Float, ForeignKey,
    Numeric, String, Text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.database import Base
from app.models.tenant import TaxMode


class DocumentKind(str, enum.Enum):
    BILL = "bill"
    BILL_INVOICE = "bill_invoice"
    RENT_INVOICE = "rent_invoice"
    COMMISSION_INVOICE = "commission_invoice"


class DocumentStatus(str, enum.Enum):
    UNPAID = "UNPAID"
    PARTIAL = "PARTIAL"
    PAID = "PAID"
    OVERDUE = "OVERDUE"
    CANCELLED = "CANCELLED"


class BillType(str, enum.Enum):
    WATER = "WATER"
    ELECTRICITY = "ELECTRICITY"
    RENT = "RENT"
    COMMISSION = "COMMISSION"


class LedgerDocument(Base):
    __tablename__ = "ledger_documents"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    reference_number: Mapped[str] = mapped_column(
        String(64), unique=True, nullable=False, index=True
    )
    kind: Mapped[DocumentKind] = mapped_column(
        SAEnum(DocumentKind), nullable=False, index=True
    )

    # ── Links ────────────────────────────────────────────────
    tenant_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("tenants.id"), nullable=False, index=True
    )
    parent_bill_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("ledger_documents.id", ondelete="CASCADE"), index=True
    )
    split_from_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("ledger_documents.id", ondelete="SET NULL")
    )

    # ── Descriptive snapshot ─────────────────────────────────
    bill_type: Mapped[BillType] = mapped_column(SAEnum(BillType), nullable=False)
    description: Mapped[str | None] = mapped_column(Text)
    previous_reading: Mapped[float | None] = mapped_column(Float)
    current_reading: Mapped[float | None] = mapped_column(Float)
    units: Mapped[float | None] = mapped_column(Float)
    charge_per_unit: Mapped[Decimal | None] = mapped_column(Numeric(14, 4))
    rent: Mapped[Decimal | None] = mapped_column(Numeric(14, 2))
    service_charge: Mapped[Decimal | None] = mapped_column(Numeric(14, 2))
    tax_mode: Mapped[TaxMode] = mapped_column(
        SAEnum(TaxMode), default=TaxMode.NOT_APPLICABLE
    )
    # e.g. "May 2025" for rent invoices
    payment_period: Mapped[str | None] = mapped_column(String(50))

    # ── Amounts ──────────────────────────────────────────────
    subtotal: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    # 0–100; null means tax not applicable
    tax_rate: Mapped[float | None] = mapped_column(Float)
    tax_amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), default=Decimal("0"))
    # Fixed at creation; never recomputed once payments begin
    grand_total: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    amount_paid: Mapped[Decimal] = mapped_column(Numeric(14, 2), default=Decimal("0"))
    # Always grand_total - amount_paid, written together with amount_paid
    balance: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)

    # ── Status ───────────────────────────────────────────────
    status: Mapped[DocumentStatus] = mapped_column(
        SAEnum(DocumentStatus), default=DocumentStatus.UNPAID, index=True
    )

    # ── Dates ────────────────────────────────────────────────
    issue_date: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    due_date: Mapped[datetime | None] = mapped_column(DateTime, index=True)
    paid_at: Mapped[datetime | None] = mapped_column(DateTime)

    # ── Metadata ─────────────────────────────────────────────
    notes: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow
    )

    # ── Relationships ────────────────────────────────────────
    tenant = relationship("Tenant", back_populates="documents", lazy="noload")
    payments = relationship(
        "LedgerPayment",
        back_populates="document",
        lazy="noload",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    @property
    def is_child_invoice(self) -> bool:
        return self.parent_bill_id is not None
