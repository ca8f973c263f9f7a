"""LedgerPayment: one recorded payment event against a ledger document.

``amount_tendered`` is what the caller submitted; ``amount_applied`` is
what the document actually absorbed after clamping to its grand total.
Replaying the same payment twice records two rows: there is no
payment-level deduplication.
"""

import uuid
from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import Date, DateTime, ForeignKey, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.database import Base


class LedgerPayment(Base):
    __tablename__ = "ledger_payments"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    document_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("ledger_documents.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    amount_tendered: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    amount_applied: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    payment_date: Mapped[date] = mapped_column(Date, nullable=False)
    notes: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    document = relationship("LedgerDocument", back_populates="payments", lazy="noload")
