"""Reconciliation coordinator: durable ledger writes around the payment engine.

``LedgerCoordinator`` owns every transaction that moves money state:

    record_payment               invoice + parent bill + payment row (+ remainder split)
    generate_ledger_document     child invoice for a bill's remaining balance
    create_bill                  metered utility bill
    generate_rent_invoice        rent + service charge invoice from tenant config
    generate_commission_invoice  manager commission on a period's collections
    delete_ledger_document       administrative cleanup, reverses parent totals
    mark_overdue                 daily sweep, UNPAID/PARTIAL past due → OVERDUE

Concurrency:
    The target document and its parent bill are read with SELECT … FOR
    UPDATE inside the same transaction that writes them, so two payments on
    the same rows serialize instead of clamping against a stale balance.
    Rows are always locked child before parent (invoice, then its bill), in
    deletions as well as payments.  Serialization failures and deadlocks (and
    SQLite's "database is locked") retry the whole transaction, bounded by
    ``payment_max_attempts``.

Split handling:
    The remainder invoice is inserted inside a SAVEPOINT.  If numbering is
    exhausted or the insert fails, only the savepoint rolls back: the payment
    still commits and the outcome carries a ``split_failed`` warning.

Rendering is handed to ``RenderDispatcher`` only after commit.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Awaitable, Callable, TypeVar

from sqlalchemy import delete, select, update
from sqlalchemy.exc import DBAPIError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.config import settings
from app.middleware.exceptions import (
    AlreadySettled,
    BusinessLogicError,
    CommissionAlreadyInvoiced,
    DeletionConflict,
    LedgerConflict,
    PaymentConflict,
    PropDeskException,
    ResourceNotFoundError,
    is_transient_conflict,
)
from app.models.ledger_document import (
    BillType,
    DocumentKind,
    DocumentStatus,
    LedgerDocument,
)
from app.models.ledger_payment import LedgerPayment
from app.models.tenant import Tenant, TaxMode
from app.services.charges import (
    ZERO,
    as_decimal,
    commission_rate_fraction,
    compute_charge,
    compute_commission_charge,
    compute_rent_charge,
    quantize_money,
)
from app.services.payments import (
    PaymentResult,
    apply_payment,
    apply_to_parent,
    derive_status,
    validate_payment_amount,
)
from app.services.rendering import BlobSink, DocumentRenderer, RenderDispatcher
from app.utils.clock import as_naive_utc, utcnow
from app.utils.numbering import ReferenceKind, insert_with_reference, period_key

logger = logging.getLogger("propdesk.ledger")

T = TypeVar("T")


@dataclass
class PaymentOutcome:
    document: LedgerDocument
    parent_bill: LedgerDocument | None
    split_document: LedgerDocument | None
    payment: LedgerPayment
    warnings: list[dict] = field(default_factory=list)


@dataclass
class DeletionResult:
    document_id: str
    reference_number: str
    removed_invoices: int
    parent_bill: LedgerDocument | None = None


class LedgerCoordinator:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        renderer: DocumentRenderer | None = None,
        clock: Callable[[], datetime] = utcnow,
        *,
        render_sink: BlobSink | None = None,
        max_attempts: int | None = None,
        backoff_seconds: float | None = None,
    ):
        self.session_factory = session_factory
        self.dispatcher = RenderDispatcher(renderer, sink=render_sink)
        self.clock = clock
        self.max_attempts = max_attempts or settings.payment_max_attempts
        self.backoff_seconds = (
            settings.retry_backoff_seconds if backoff_seconds is None else backoff_seconds
        )

    # ── Reads ─────────────────────────────────────────────────

    async def _load(
        self,
        db: AsyncSession,
        document_id: str,
        *,
        resource: str = "Document",
        lock: bool = True,
    ) -> LedgerDocument:
        stmt = select(LedgerDocument).where(LedgerDocument.id == document_id)
        if lock:
            stmt = stmt.with_for_update()
        result = await db.execute(stmt.execution_options(populate_existing=True))
        doc = result.scalar_one_or_none()
        if not doc:
            raise ResourceNotFoundError(resource, document_id)
        return doc

    async def _load_tenant(self, db: AsyncSession, tenant_id: str, lock: bool = False) -> Tenant:
        stmt = select(Tenant).where(Tenant.id == tenant_id)
        if lock:
            stmt = stmt.with_for_update()
        result = await db.execute(stmt)
        tenant = result.scalar_one_or_none()
        if not tenant:
            raise ResourceNotFoundError("Tenant", tenant_id)
        return tenant

    async def get_document(self, document_id: str) -> LedgerDocument:
        async with self.session_factory() as db:
            return await self._load(db, document_id, lock=False)

    # ── Payments ──────────────────────────────────────────────

    async def record_payment(
        self,
        document_id: str,
        amount,
        payment_date: date | None = None,
        notes: str | None = None,
    ) -> PaymentOutcome:
        """Apply a payment to a document and, for bill invoices, its parent bill.

        Raises:
            InvalidPaymentAmount: before any transaction is opened.
            ResourceNotFoundError: unknown document.
            DocumentNotPayable: the document (or its bill) is cancelled.
            PaymentConflict: transient conflicts outlasted every retry.
        """
        amount = validate_payment_amount(amount)

        outcome = await self._retrying(
            PaymentConflict, document_id,
            self._record_payment_once, document_id, amount, payment_date, notes,
        )
        self.dispatcher.dispatch(outcome.document)
        self.dispatcher.dispatch(outcome.split_document)
        return outcome

    async def _retrying(
        self,
        conflict: type[LedgerConflict],
        document_id: str,
        operation: Callable[..., Awaitable[T]],
        *args,
    ) -> T:
        """Run ``operation`` in fresh transactions until it gets past transient conflicts."""
        for attempt in range(1, self.max_attempts + 1):
            try:
                return await operation(*args)
            except DBAPIError as exc:
                if not is_transient_conflict(exc):
                    raise
                logger.warning(
                    "%s on %s hit a transient conflict (attempt %d/%d): %s",
                    conflict.action, document_id, attempt, self.max_attempts, exc.orig,
                )
                if attempt < self.max_attempts:
                    await asyncio.sleep(self.backoff_seconds * attempt)

        raise conflict(document_id, self.max_attempts)

    async def _record_payment_once(
        self,
        document_id: str,
        amount,
        payment_date: date | None,
        notes: str | None,
    ) -> PaymentOutcome:
        now = self.clock()

        async with self.session_factory() as db:
            async with db.begin():
                doc = await self._load(db, document_id)
                parent = None
                if doc.parent_bill_id is not None:
                    parent = await self._load(db, doc.parent_bill_id, resource="Bill")

                result = apply_payment(doc, amount, now)
                parent_result = apply_to_parent(parent, amount, now) if parent is not None else None

                _write_result(doc, result)
                if parent is not None:
                    _write_result(parent, parent_result)

                payment = LedgerPayment(
                    document_id=doc.id,
                    amount_tendered=quantize_money(amount),
                    amount_applied=result.applied_amount,
                    payment_date=payment_date or now.date(),
                    notes=notes,
                    created_at=now,
                )
                db.add(payment)
                await db.flush()

                split_doc = None
                warnings = []
                if result.split_required:
                    await self._warn_if_open_remainder(db, doc)
                    split_doc, warning = await self._insert_split(db, result.split_invoice)
                    if warning:
                        warnings.append(warning)

        logger.info(
            "Payment %s on %s: paid %s/%s, status %s%s",
            amount, doc.reference_number, doc.amount_paid, doc.grand_total,
            doc.status.value,
            f", remainder {split_doc.reference_number}" if split_doc else "",
        )
        return PaymentOutcome(
            document=doc,
            parent_bill=parent,
            split_document=split_doc,
            payment=payment,
            warnings=warnings,
        )

    async def _warn_if_open_remainder(self, db: AsyncSession, doc: LedgerDocument) -> None:
        result = await db.execute(
            select(LedgerDocument.reference_number).where(
                LedgerDocument.split_from_id == doc.id,
                LedgerDocument.status != DocumentStatus.PAID,
            )
        )
        open_refs = list(result.scalars())
        if open_refs:
            logger.warning(
                "%s already has open remainder invoice(s) %s; issuing another",
                doc.reference_number, ", ".join(open_refs),
            )

    async def _insert_split(
        self,
        db: AsyncSession,
        split: LedgerDocument,
    ) -> tuple[LedgerDocument | None, dict | None]:
        """Insert the remainder invoice; failures become a warning, not an error."""
        try:
            async with db.begin_nested():
                await insert_with_reference(
                    db, split, ReferenceKind.BILL_INVOICE,
                    period=_period(ReferenceKind.BILL_INVOICE, split.issue_date),
                )
        except (PropDeskException, SQLAlchemyError) as exc:
            logger.warning(
                "Could not create remainder invoice for %s (balance %s): %s",
                split.split_from_id, split.balance, exc,
            )
            return None, {
                "code": "split_failed",
                "message": str(exc),
                "remaining_balance": str(split.balance),
            }
        return split, None

    # ── Document creation ─────────────────────────────────────

    async def generate_ledger_document(
        self,
        parent_bill_id: str,
        due_date: datetime,
        notes: str | None = None,
    ) -> LedgerDocument:
        """Issue a bill invoice for whatever the bill still owes.

        Raises:
            ResourceNotFoundError: no such bill.
            AlreadySettled: the bill has no remaining balance.
        """
        now = self.clock()
        due_date = as_naive_utc(due_date)

        async with self.session_factory() as db:
            async with db.begin():
                bill = await self._load(db, parent_bill_id, resource="Bill")
                if bill.kind != DocumentKind.BILL:
                    raise ResourceNotFoundError("Bill", parent_bill_id)

                remaining = quantize_money(
                    as_decimal(bill.grand_total) - as_decimal(bill.amount_paid)
                )
                if remaining <= ZERO:
                    raise AlreadySettled(bill.reference_number)

                invoice = LedgerDocument(
                    kind=DocumentKind.BILL_INVOICE,
                    tenant_id=bill.tenant_id,
                    parent_bill_id=bill.id,
                    bill_type=bill.bill_type,
                    description=bill.description,
                    previous_reading=bill.previous_reading,
                    current_reading=bill.current_reading,
                    units=bill.units,
                    charge_per_unit=bill.charge_per_unit,
                    tax_mode=bill.tax_mode,
                    tax_rate=bill.tax_rate,
                    # Totals snapshot the bill; the invoice is for what is left
                    subtotal=bill.subtotal,
                    tax_amount=bill.tax_amount,
                    grand_total=remaining,
                    amount_paid=ZERO,
                    balance=remaining,
                    status=derive_status(ZERO, remaining, due_date, now),
                    issue_date=now,
                    due_date=due_date,
                    notes=notes,
                    created_at=now,
                )
                await insert_with_reference(
                    db, invoice, ReferenceKind.BILL_INVOICE,
                    period=_period(ReferenceKind.BILL_INVOICE, now),
                )

        logger.info(
            "Generated %s for bill %s (balance %s)",
            invoice.reference_number, bill.reference_number, remaining,
        )
        self.dispatcher.dispatch(invoice)
        return invoice

    async def create_bill(
        self,
        tenant_id: str,
        bill_type: BillType,
        previous_reading,
        current_reading,
        charge_per_unit,
        due_date: datetime | None = None,
        tax_rate=None,
        tax_mode: TaxMode = TaxMode.EXCLUSIVE,
        description: str | None = None,
        notes: str | None = None,
    ) -> LedgerDocument:
        """Price a meter reading and store it as a bill.

        Raises:
            InvalidReadingRange: before any transaction is opened.
            ResourceNotFoundError: unknown tenant.
        """
        charge = compute_charge(
            previous_reading, current_reading, charge_per_unit, tax_rate, tax_mode
        ).quantized()
        now = self.clock()
        due_date = as_naive_utc(due_date)

        async with self.session_factory() as db:
            async with db.begin():
                await self._load_tenant(db, tenant_id)
                status = derive_status(ZERO, charge.grand_total, due_date, now)
                bill = LedgerDocument(
                    kind=DocumentKind.BILL,
                    tenant_id=tenant_id,
                    bill_type=bill_type,
                    description=description,
                    previous_reading=float(previous_reading),
                    current_reading=float(current_reading),
                    units=float(charge.units),
                    charge_per_unit=as_decimal(charge_per_unit),
                    tax_mode=charge.tax_mode,
                    tax_rate=float(charge.tax_rate) if charge.tax_rate is not None else None,
                    subtotal=charge.subtotal,
                    tax_amount=charge.tax_amount,
                    grand_total=charge.grand_total,
                    amount_paid=ZERO,
                    balance=charge.grand_total,
                    status=status,
                    paid_at=now if status == DocumentStatus.PAID else None,
                    issue_date=now,
                    due_date=due_date,
                    notes=notes,
                    created_at=now,
                )
                await insert_with_reference(
                    db, bill, ReferenceKind.BILL,
                    period=_period(ReferenceKind.BILL, now),
                )

        logger.info(
            "Created %s: %s %s", bill.reference_number, settings.currency, bill.grand_total
        )
        self.dispatcher.dispatch(bill)
        return bill

    async def generate_rent_invoice(
        self,
        tenant_id: str,
        due_date: datetime | None = None,
        payment_period: str | None = None,
        notes: str | None = None,
    ) -> LedgerDocument:
        """Invoice one rent period using the tenant's rent, VAT and service charge."""
        now = self.clock()
        due_date = as_naive_utc(due_date)

        async with self.session_factory() as db:
            async with db.begin():
                tenant = await self._load_tenant(db, tenant_id)
                tax_mode = tenant.vat_type or TaxMode.NOT_APPLICABLE
                tax_rate = None
                if tax_mode != TaxMode.NOT_APPLICABLE:
                    tax_rate = (
                        tenant.vat_rate if tenant.vat_rate is not None
                        else settings.default_tax_rate
                    )

                charge = compute_rent_charge(
                    tenant.rent,
                    tax_rate=tax_rate,
                    tax_mode=tax_mode,
                    service_charge_type=tenant.service_charge_type,
                    fixed_amount=tenant.service_charge_fixed,
                    percentage=tenant.service_charge_percentage,
                    per_sq_ft_rate=tenant.service_charge_per_sq_ft,
                    unit_size=tenant.unit_size_sq_ft,
                ).quantized()

                invoice = LedgerDocument(
                    kind=DocumentKind.RENT_INVOICE,
                    tenant_id=tenant.id,
                    bill_type=BillType.RENT,
                    description=f"Rent for {tenant.full_name}",
                    rent=charge.rent,
                    service_charge=charge.service_charge,
                    tax_mode=charge.tax_mode,
                    tax_rate=float(charge.tax_rate) if charge.tax_rate is not None else None,
                    payment_period=payment_period or now.strftime("%B %Y"),
                    subtotal=charge.subtotal,
                    tax_amount=charge.tax_amount,
                    grand_total=charge.grand_total,
                    amount_paid=ZERO,
                    balance=charge.grand_total,
                    status=derive_status(ZERO, charge.grand_total, due_date, now),
                    issue_date=now,
                    due_date=due_date,
                    notes=notes,
                    created_at=now,
                )
                if invoice.status == DocumentStatus.PAID:
                    invoice.paid_at = now
                await insert_with_reference(
                    db, invoice, ReferenceKind.RENT_INVOICE,
                    period=_period(ReferenceKind.RENT_INVOICE, now),
                )

        logger.info(
            "Generated rent invoice %s for tenant %s: %s %s",
            invoice.reference_number, tenant_id, settings.currency, invoice.grand_total,
        )
        self.dispatcher.dispatch(invoice)
        return invoice

    async def generate_commission_invoice(
        self,
        tenant_id: str,
        collection_amount,
        commission_rate,
        vat_rate=None,
        period_start: datetime | None = None,
        due_date: datetime | None = None,
        description: str | None = None,
        notes: str | None = None,
    ) -> LedgerDocument:
        """Invoice the manager's commission on one period's collections for a tenancy.

        ``commission_rate`` above 1 is read as a percentage, otherwise as a
        fraction.  One commission invoice per tenancy and period.

        Raises:
            InvalidCommissionInput: negative collections or rate.
            ResourceNotFoundError: unknown tenant.
            CommissionAlreadyInvoiced: the period is already invoiced.
        """
        charge = compute_commission_charge(
            collection_amount, commission_rate, vat_rate
        ).quantized()
        now = self.clock()
        due_date = as_naive_utc(due_date)
        period = (as_naive_utc(period_start) or now).strftime("%B %Y")

        async with self.session_factory() as db:
            async with db.begin():
                # Tenant row lock serializes the duplicate check below
                await self._load_tenant(db, tenant_id, lock=True)
                existing = await db.scalar(
                    select(LedgerDocument.reference_number).where(
                        LedgerDocument.tenant_id == tenant_id,
                        LedgerDocument.kind == DocumentKind.COMMISSION_INVOICE,
                        LedgerDocument.payment_period == period,
                    )
                )
                if existing:
                    raise CommissionAlreadyInvoiced(existing, period)

                rate_pct = quantize_money(commission_rate_fraction(commission_rate) * 100)
                status = derive_status(ZERO, charge.grand_total, due_date, now)
                invoice = LedgerDocument(
                    kind=DocumentKind.COMMISSION_INVOICE,
                    tenant_id=tenant_id,
                    bill_type=BillType.COMMISSION,
                    description=description or (
                        f"Management commission for {period}: {rate_pct}% of "
                        f"{settings.currency} {quantize_money(collection_amount)} collected"
                    ),
                    tax_mode=charge.tax_mode,
                    tax_rate=float(charge.tax_rate) if charge.tax_rate is not None else None,
                    payment_period=period,
                    subtotal=charge.subtotal,
                    tax_amount=charge.tax_amount,
                    grand_total=charge.grand_total,
                    amount_paid=ZERO,
                    balance=charge.grand_total,
                    status=status,
                    paid_at=now if status == DocumentStatus.PAID else None,
                    issue_date=now,
                    due_date=due_date,
                    notes=notes,
                    created_at=now,
                )
                await insert_with_reference(
                    db, invoice, ReferenceKind.COMMISSION_INVOICE,
                    period=_period(ReferenceKind.COMMISSION_INVOICE, now),
                )

        logger.info(
            "Generated commission invoice %s for %s: %s %s",
            invoice.reference_number, period, settings.currency, invoice.grand_total,
        )
        self.dispatcher.dispatch(invoice)
        return invoice

    # ── Administrative ────────────────────────────────────────

    async def delete_ledger_document(
        self,
        document_id: str,
        force: bool = False,
    ) -> DeletionResult:
        """Delete a document and back its payments out of the parent bill.

        Deleting a bill also deletes its invoices.  Documents older than
        ``delete_max_age_days`` need ``force=True``.

        Raises:
            ResourceNotFoundError: unknown document.
            BusinessLogicError: DOCUMENT_TOO_OLD without ``force``.
            DeletionConflict: transient conflicts outlasted every retry.
        """
        result = await self._retrying(
            DeletionConflict, document_id,
            self._delete_once, document_id, force,
        )
        if result.parent_bill is not None:
            self.dispatcher.dispatch(result.parent_bill)
        return result

    async def _lock_invoices(self, db: AsyncSession, bill_id: str) -> list[str]:
        """Lock a bill's invoices, in id order, ahead of the bill itself."""
        result = await db.execute(
            select(LedgerDocument.id)
            .where(LedgerDocument.parent_bill_id == bill_id)
            .order_by(LedgerDocument.id)
            .with_for_update()
        )
        return list(result.scalars())

    async def _delete_once(self, document_id: str, force: bool) -> DeletionResult:
        now = self.clock()
        max_age = timedelta(days=settings.delete_max_age_days)

        async with self.session_factory() as db:
            async with db.begin():
                doc = await self._load(db, document_id, lock=False)
                invoice_ids = []
                if doc.kind == DocumentKind.BILL:
                    invoice_ids = await self._lock_invoices(db, doc.id)
                doc = await self._load(db, document_id)

                if not force and doc.created_at and now - doc.created_at > max_age:
                    raise BusinessLogicError(
                        f"{doc.reference_number} is older than "
                        f"{settings.delete_max_age_days} days. Use force=true to delete it.",
                        error_code="DOCUMENT_TOO_OLD",
                    )

                parent = None
                if doc.parent_bill_id is not None:
                    parent = await self._load(db, doc.parent_bill_id, resource="Bill")
                    if as_decimal(doc.amount_paid) > ZERO:
                        _reverse_payment(parent, doc.amount_paid, now)

                doomed = [doc.id, *invoice_ids]
                await db.execute(
                    update(LedgerDocument)
                    .where(LedgerDocument.split_from_id.in_(doomed))
                    .values(split_from_id=None)
                    .execution_options(synchronize_session=False)
                )
                await db.execute(
                    delete(LedgerPayment)
                    .where(LedgerPayment.document_id.in_(doomed))
                    .execution_options(synchronize_session=False)
                )
                await db.execute(
                    delete(LedgerDocument)
                    .where(LedgerDocument.id.in_(doomed))
                    .execution_options(synchronize_session=False)
                )

        logger.info(
            "Deleted %s%s",
            doc.reference_number,
            f" and {len(invoice_ids)} invoice(s)" if invoice_ids else "",
        )
        return DeletionResult(
            document_id=doc.id,
            reference_number=doc.reference_number,
            removed_invoices=len(invoice_ids),
            parent_bill=parent,
        )

    async def mark_overdue(self, now: datetime | None = None) -> int:
        """Flip UNPAID/PARTIAL documents past their due date to OVERDUE."""
        now = as_naive_utc(now) or self.clock()
        async with self.session_factory() as db:
            async with db.begin():
                result = await db.execute(
                    update(LedgerDocument)
                    .where(
                        LedgerDocument.status.in_(
                            [DocumentStatus.UNPAID, DocumentStatus.PARTIAL]
                        ),
                        LedgerDocument.due_date.is_not(None),
                        LedgerDocument.due_date < now,
                    )
                    .values(status=DocumentStatus.OVERDUE, updated_at=now)
                    .execution_options(synchronize_session=False)
                )
        count = result.rowcount or 0
        logger.info("Marked %d document(s) overdue", count)
        return count

    async def drain(self) -> None:
        await self.dispatcher.drain()


# ── Helpers ───────────────────────────────────────────────────

def _period(kind: ReferenceKind, when: datetime) -> str:
    return period_key(kind, when)


def _write_result(doc: LedgerDocument, result: PaymentResult) -> None:
    doc.amount_paid = result.final_paid
    doc.balance = result.new_balance
    doc.status = result.new_status
    doc.paid_at = result.paid_at


def _reverse_payment(parent: LedgerDocument, amount, now: datetime) -> None:
    """Remove ``amount`` from a bill's paid total and recompute its state."""
    grand_total = quantize_money(parent.grand_total)
    new_paid = max(ZERO, quantize_money(parent.amount_paid) - quantize_money(amount))
    parent.amount_paid = new_paid
    parent.balance = grand_total - new_paid
    parent.status = derive_status(new_paid, grand_total, parent.due_date, now)
    if parent.status != DocumentStatus.PAID:
        parent.paid_at = None
