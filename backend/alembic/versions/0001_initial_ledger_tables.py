"""Create tenants, ledger documents, payments and numbered document tables.

Revision ID: 0001
Revises:
Create Date: 2026-10-19
"""

revision = "0001"
down_revision = None
branch_labels = None
depends_on = None

from alembic import op
import sqlalchemy as sa

TAX_MODE = sa.Enum("EXCLUSIVE", "INCLUSIVE", "NOT_APPLICABLE", name="taxmode")
SERVICE_CHARGE_TYPE = sa.Enum("FIXED", "PERCENTAGE", "PER_SQ_FT", name="servicechargetype")
DOCUMENT_KIND = sa.Enum(
    "BILL", "BILL_INVOICE", "RENT_INVOICE", "COMMISSION_INVOICE", name="documentkind"
)
DOCUMENT_STATUS = sa.Enum(
    "UNPAID", "PARTIAL", "PAID", "OVERDUE", "CANCELLED", name="documentstatus"
)
BILL_TYPE = sa.Enum("WATER", "ELECTRICITY", "RENT", "COMMISSION", name="billtype")


def upgrade() -> None:
    op.create_table(
        "tenants",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("full_name", sa.String(255), nullable=False),
        sa.Column("rent", sa.Numeric(14, 2), nullable=False, server_default="0"),
        sa.Column("vat_type", TAX_MODE),
        sa.Column("vat_rate", sa.Float()),
        sa.Column("unit_size_sq_ft", sa.Float()),
        sa.Column("service_charge_type", SERVICE_CHARGE_TYPE),
        sa.Column("service_charge_fixed", sa.Numeric(14, 2)),
        sa.Column("service_charge_percentage", sa.Float()),
        sa.Column("service_charge_per_sq_ft", sa.Numeric(14, 4)),
        sa.Column("created_at", sa.DateTime(), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(), server_default=sa.func.now()),
    )

    op.create_table(
        "ledger_documents",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("reference_number", sa.String(64), nullable=False),
        sa.Column("kind", DOCUMENT_KIND, nullable=False),
        sa.Column("tenant_id", sa.String(36), sa.ForeignKey("tenants.id"), nullable=False),
        sa.Column(
            "parent_bill_id", sa.String(36),
            sa.ForeignKey("ledger_documents.id", ondelete="CASCADE"),
        ),
        sa.Column(
            "split_from_id", sa.String(36),
            sa.ForeignKey("ledger_documents.id", ondelete="SET NULL"),
        ),
        sa.Column("bill_type", BILL_TYPE, nullable=False),
        sa.Column("description", sa.Text()),
        sa.Column("previous_reading", sa.Float()),
        sa.Column("current_reading", sa.Float()),
        sa.Column("units", sa.Float()),
        sa.Column("charge_per_unit", sa.Numeric(14, 4)),
        sa.Column("rent", sa.Numeric(14, 2)),
        sa.Column("service_charge", sa.Numeric(14, 2)),
        sa.Column("tax_mode", TAX_MODE),
        sa.Column("payment_period", sa.String(50)),
        sa.Column("subtotal", sa.Numeric(14, 2), nullable=False),
        sa.Column("tax_rate", sa.Float()),
        sa.Column("tax_amount", sa.Numeric(14, 2), server_default="0"),
        sa.Column("grand_total", sa.Numeric(14, 2), nullable=False),
        sa.Column("amount_paid", sa.Numeric(14, 2), server_default="0"),
        sa.Column("balance", sa.Numeric(14, 2), nullable=False),
        sa.Column("status", DOCUMENT_STATUS),
        sa.Column("issue_date", sa.DateTime()),
        sa.Column("due_date", sa.DateTime()),
        sa.Column("paid_at", sa.DateTime()),
        sa.Column("notes", sa.Text()),
        sa.Column("created_at", sa.DateTime(), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(), server_default=sa.func.now()),
    )
    op.create_index(
        "ix_ledger_documents_reference_number", "ledger_documents",
        ["reference_number"], unique=True,
    )
    op.create_index("ix_ledger_documents_kind", "ledger_documents", ["kind"])
    op.create_index("ix_ledger_documents_tenant_id", "ledger_documents", ["tenant_id"])
    op.create_index("ix_ledger_documents_parent_bill_id", "ledger_documents", ["parent_bill_id"])
    op.create_index("ix_ledger_documents_status", "ledger_documents", ["status"])
    op.create_index("ix_ledger_documents_due_date", "ledger_documents", ["due_date"])

    op.create_table(
        "ledger_payments",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column(
            "document_id", sa.String(36),
            sa.ForeignKey("ledger_documents.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("amount_tendered", sa.Numeric(14, 2), nullable=False),
        sa.Column("amount_applied", sa.Numeric(14, 2), nullable=False),
        sa.Column("payment_date", sa.Date(), nullable=False),
        sa.Column("notes", sa.Text()),
        sa.Column("created_at", sa.DateTime(), server_default=sa.func.now()),
    )
    op.create_index("ix_ledger_payments_document_id", "ledger_payments", ["document_id"])

    op.create_table(
        "activation_requests",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("request_number", sa.String(64), nullable=False),
        sa.Column("notes", sa.Text()),
        sa.Column("created_at", sa.DateTime(), server_default=sa.func.now()),
    )
    op.create_index(
        "ix_activation_requests_request_number", "activation_requests",
        ["request_number"], unique=True,
    )

    op.create_table(
        "offer_letters",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("offer_number", sa.String(64), nullable=False),
        sa.Column("tenant_id", sa.String(36), sa.ForeignKey("tenants.id")),
        sa.Column("notes", sa.Text()),
        sa.Column("created_at", sa.DateTime(), server_default=sa.func.now()),
    )
    op.create_index(
        "ix_offer_letters_offer_number", "offer_letters", ["offer_number"], unique=True,
    )


def downgrade() -> None:
    op.drop_table("offer_letters")
    op.drop_table("activation_requests")
    op.drop_table("ledger_payments")
    op.drop_table("ledger_documents")
    op.drop_table("tenants")
    for enum in (BILL_TYPE, DOCUMENT_STATUS, DOCUMENT_KIND, SERVICE_CHARGE_TYPE, TAX_MODE):
        enum.drop(op.get_bind(), checkfirst=True)
