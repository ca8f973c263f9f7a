"""Non-ledger documents that still draw from the reference number generator.

Activation requests and offer letters are managed elsewhere; only their
numbering is owned here, so each table carries just enough to hold a
unique number.
"""

import uuid
from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base


class ActivationRequest(Base):
    __tablename__ = "activation_requests"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    # ACT-YYYY-NNNN
    request_number: Mapped[str] = mapped_column(
        String(64), unique=True, nullable=False, index=True
    )
    notes: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)


class OfferLetter(Base):
    __tablename__ = "offer_letters"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    # OFL-YYYY-MM-NNNNNN
    offer_number: Mapped[str] = mapped_column(
        String(64), unique=True, nullable=False, index=True
    )
    tenant_id: Mapped[str | None] = mapped_column(String(36), ForeignKey("tenants.id"))
    notes: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
