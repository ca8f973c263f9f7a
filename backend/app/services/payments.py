"""Payment application: pure state transitions for ledger documents.

Nothing here touches the database.  ``apply_payment`` takes a document
snapshot (already row-locked by the caller) and returns the state it
should move to; the coordinator in ``app.services.reconciliation`` writes
the result inside its transaction.

Rules:
    amount_paid  = min(previous paid + amount, grand_total)   overpayment is dropped
    balance      = grand_total - amount_paid                   never negative
    status       = PAID      if amount_paid >= grand_total
                   PARTIAL   if 0 < amount_paid < grand_total
                   UNPAID    otherwise
                   OVERDUE   replaces any non-PAID status once due_date has passed
    paid_at      set once, on the transition into PAID

A partial payment on a bill invoice produces a split: the remaining
balance is re-issued as a new UNPAID sibling invoice.  The invoice that was
paid keeps status PARTIAL as the record of the partial settlement.
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, InvalidOperation

from app.middleware.exceptions import DocumentNotPayable, InvalidPaymentAmount
from app.models.ledger_document import DocumentKind, DocumentStatus, LedgerDocument
from app.models.tenant import TaxMode
from app.services.charges import TWO_PLACES, ZERO, apply_tax, as_decimal, quantize_money

SPLIT_NOTE = "New invoice generated for remaining balance after partial payment"


@dataclass
class PaymentResult:
    final_paid: Decimal
    new_balance: Decimal
    new_status: DocumentStatus
    paid_at: datetime | None
    # What this payment actually moved, after clamping
    applied_amount: Decimal
    split_invoice: LedgerDocument | None = None

    @property
    def split_required(self) -> bool:
        return self.split_invoice is not None


def validate_payment_amount(amount) -> Decimal:
    """Coerce to Decimal and reject anything that is not a positive whole-cent amount.

    Sub-cent amounts are refused, never rounded.
    """
    try:
        value = as_decimal(amount)
    except (InvalidOperation, ValueError, TypeError):
        raise InvalidPaymentAmount(amount)
    if amount is None or not value.is_finite() or value <= ZERO:
        raise InvalidPaymentAmount(amount)
    try:
        whole_cents = value == value.quantize(TWO_PLACES)
    except InvalidOperation:
        whole_cents = False
    if not whole_cents:
        raise InvalidPaymentAmount(amount, reason="must be a whole number of cents")
    return value


def derive_status(
    amount_paid,
    grand_total,
    due_date: datetime | None,
    now: datetime,
) -> DocumentStatus:
    paid = as_decimal(amount_paid)
    total = as_decimal(grand_total)

    if paid >= total:
        return DocumentStatus.PAID
    if due_date is not None and due_date < now:
        return DocumentStatus.OVERDUE
    if paid > ZERO:
        return DocumentStatus.PARTIAL
    return DocumentStatus.UNPAID


def apply_payment(doc: LedgerDocument, amount, now: datetime) -> PaymentResult:
    """Compute the state ``doc`` moves to after receiving ``amount``.

    Raises:
        InvalidPaymentAmount: amount is not positive.
        DocumentNotPayable: the document is cancelled.
    """
    amount = validate_payment_amount(amount)
    if doc.status == DocumentStatus.CANCELLED:
        raise DocumentNotPayable(doc.reference_number, doc.status.value)

    grand_total = quantize_money(doc.grand_total)
    previous_paid = quantize_money(doc.amount_paid)

    final_paid = quantize_money(min(previous_paid + amount, grand_total))
    new_balance = max(ZERO, grand_total - final_paid)
    new_status = derive_status(final_paid, grand_total, doc.due_date, now)

    paid_at = doc.paid_at
    if new_status == DocumentStatus.PAID and doc.status != DocumentStatus.PAID:
        paid_at = now

    result = PaymentResult(
        final_paid=final_paid,
        new_balance=new_balance,
        new_status=new_status,
        paid_at=paid_at,
        applied_amount=final_paid - previous_paid,
    )

    if (
        new_status == DocumentStatus.PARTIAL
        and doc.is_child_invoice
        and new_balance > ZERO
    ):
        result.split_invoice = build_remainder_invoice(doc, new_balance, now)

    return result


def apply_to_parent(parent: LedgerDocument, amount, now: datetime) -> PaymentResult:
    """Credit a parent bill with a payment tendered against one of its invoices.

    The parent is credited with the tendered amount (not the child's clamped
    amount), bounded by the parent's own grand total.  Parents are never split.
    """
    result = apply_payment(parent, amount, now)
    result.split_invoice = None
    return result


def _remainder_tax(remainder: Decimal, doc: LedgerDocument) -> tuple[Decimal, Decimal]:
    """Subtotal/tax view of a remainder, treating it as tax-inclusive."""
    if doc.tax_rate is None or doc.tax_mode == TaxMode.NOT_APPLICABLE:
        return remainder, ZERO
    subtotal, tax, _, _, _ = apply_tax(remainder, doc.tax_rate, TaxMode.INCLUSIVE)
    tax = quantize_money(tax)
    return remainder - tax, tax


def build_remainder_invoice(
    doc: LedgerDocument,
    remainder: Decimal,
    now: datetime,
) -> LedgerDocument:
    """Unsaved sibling invoice for ``remainder``.

    It has no reference number yet; the coordinator assigns one when it
    inserts the row.
    """
    subtotal, tax = _remainder_tax(remainder, doc)
    return LedgerDocument(
        kind=DocumentKind.BILL_INVOICE,
        tenant_id=doc.tenant_id,
        parent_bill_id=doc.parent_bill_id,
        split_from_id=doc.id,
        bill_type=doc.bill_type,
        description=doc.description,
        previous_reading=doc.previous_reading,
        current_reading=doc.current_reading,
        units=doc.units,
        charge_per_unit=doc.charge_per_unit,
        rent=doc.rent,
        service_charge=doc.service_charge,
        tax_mode=doc.tax_mode,
        payment_period=doc.payment_period,
        subtotal=subtotal,
        tax_rate=doc.tax_rate,
        tax_amount=tax,
        grand_total=remainder,
        amount_paid=ZERO,
        balance=remainder,
        status=DocumentStatus.UNPAID,
        issue_date=now,
        due_date=doc.due_date,
        notes=SPLIT_NOTE,
        created_at=now,
    )
