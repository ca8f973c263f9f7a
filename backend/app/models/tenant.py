"""Tenant: the renter a ledger document is billed to.

Only the fields the charge calculator reads are modelled here: base rent,
VAT configuration, unit size, and the optional service-charge formula.
Tenant CRUD lives outside this service.
"""

import enum
import uuid
from datetime import datetime
from decimal import Decimal

from sqlalchemy import DateTime, Enum as SAEnum, Float, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.database import Base


class TaxMode(str, enum.Enum):
    EXCLUSIVE = "EXCLUSIVE"          # tax added on top
    INCLUSIVE = "INCLUSIVE"          # tax embedded in the quoted amount
    NOT_APPLICABLE = "NOT_APPLICABLE"


class ServiceChargeType(str, enum.Enum):
    FIXED = "FIXED"
    PERCENTAGE = "PERCENTAGE"        # percentage of rent
    PER_SQ_FT = "PER_SQ_FT"          # rate × unit size


class Tenant(Base):
    __tablename__ = "tenants"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    full_name: Mapped[str] = mapped_column(String(255), nullable=False)

    # ── Rent & VAT ───────────────────────────────────────────
    rent: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False, default=0)
    vat_type: Mapped[TaxMode] = mapped_column(
        SAEnum(TaxMode), default=TaxMode.NOT_APPLICABLE
    )
    # Null = fall back to settings.default_tax_rate when VAT applies
    vat_rate: Mapped[float | None] = mapped_column(Float)
    unit_size_sq_ft: Mapped[float | None] = mapped_column(Float)

    # ── Service charge (all nullable: no service charge) ─────
    service_charge_type: Mapped[ServiceChargeType | None] = mapped_column(
        SAEnum(ServiceChargeType)
    )
    service_charge_fixed: Mapped[Decimal | None] = mapped_column(Numeric(14, 2))
    service_charge_percentage: Mapped[float | None] = mapped_column(Float)
    service_charge_per_sq_ft: Mapped[Decimal | None] = mapped_column(Numeric(14, 4))

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow
    )

    documents = relationship("LedgerDocument", back_populates="tenant", lazy="noload")
