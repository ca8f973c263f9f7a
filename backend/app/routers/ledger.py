"""Ledger endpoints: charges, bills, invoices and payments.

Endpoints:
    POST   /api/ledger/charges/compute                 Price a meter reading
    POST   /api/ledger/bills                           Create a metered bill
    POST   /api/ledger/bills/{bill_id}/invoices        Invoice a bill's remaining balance
    POST   /api/ledger/rent-invoices                   Invoice one rent period
    POST   /api/ledger/commission-invoices             Invoice a period's management commission
    POST   /api/ledger/documents/{document_id}/payments  Record a payment
    GET    /api/ledger/documents/{document_id}         Fetch one document
    DELETE /api/ledger/documents/{document_id}         Administrative delete (?force=true)
"""

from fastapi import APIRouter, Depends, Query, status

from app.deps import get_coordinator
from app.schemas.ledger import (
    BillCreate,
    BillInvoiceCreate,
    ChargeOut,
    ChargeRequest,
    CommissionInvoiceCreate,
    DeletionOut,
    DocumentOut,
    PaymentCreate,
    PaymentOutcomeOut,
    RentInvoiceCreate,
)
from app.services.charges import compute_charge
from app.services.reconciliation import LedgerCoordinator

router = APIRouter()


@router.post("/charges/compute", response_model=ChargeOut)
async def compute_charges(body: ChargeRequest):
    charge = compute_charge(
        body.previous_reading,
        body.current_reading,
        body.charge_per_unit,
        body.tax_rate,
        body.tax_mode,
    ).quantized()
    return ChargeOut.model_validate(charge)


@router.post("/bills", response_model=DocumentOut, status_code=status.HTTP_201_CREATED)
async def create_bill(
    body: BillCreate,
    coordinator: LedgerCoordinator = Depends(get_coordinator),
):
    bill = await coordinator.create_bill(
        tenant_id=body.tenant_id,
        bill_type=body.bill_type,
        previous_reading=body.previous_reading,
        current_reading=body.current_reading,
        charge_per_unit=body.charge_per_unit,
        due_date=body.due_date,
        tax_rate=body.tax_rate,
        tax_mode=body.tax_mode,
        description=body.description,
        notes=body.notes,
    )
    return DocumentOut.model_validate(bill)


@router.post(
    "/bills/{bill_id}/invoices",
    response_model=DocumentOut,
    status_code=status.HTTP_201_CREATED,
)
async def generate_bill_invoice(
    bill_id: str,
    body: BillInvoiceCreate,
    coordinator: LedgerCoordinator = Depends(get_coordinator),
):
    invoice = await coordinator.generate_ledger_document(
        bill_id, due_date=body.due_date, notes=body.notes
    )
    return DocumentOut.model_validate(invoice)


@router.post("/rent-invoices", response_model=DocumentOut, status_code=status.HTTP_201_CREATED)
async def generate_rent_invoice(
    body: RentInvoiceCreate,
    coordinator: LedgerCoordinator = Depends(get_coordinator),
):
    invoice = await coordinator.generate_rent_invoice(
        body.tenant_id,
        due_date=body.due_date,
        payment_period=body.payment_period,
        notes=body.notes,
    )
    return DocumentOut.model_validate(invoice)


@router.post("/commission-invoices", response_model=DocumentOut, status_code=status.HTTP_201_CREATED)
async def generate_commission_invoice(
    body: CommissionInvoiceCreate,
    coordinator: LedgerCoordinator = Depends(get_coordinator),
):
    invoice = await coordinator.generate_commission_invoice(
        body.tenant_id,
        body.collection_amount,
        body.commission_rate,
        vat_rate=body.vat_rate,
        period_start=body.period_start,
        due_date=body.due_date,
        description=body.description,
        notes=body.notes,
    )
    return DocumentOut.model_validate(invoice)


@router.post(
    "/documents/{document_id}/payments",
    response_model=PaymentOutcomeOut,
    status_code=status.HTTP_201_CREATED,
)
async def record_payment(
    document_id: str,
    body: PaymentCreate,
    coordinator: LedgerCoordinator = Depends(get_coordinator),
):
    outcome = await coordinator.record_payment(
        document_id,
        body.amount,
        payment_date=body.payment_date,
        notes=body.notes,
    )
    return PaymentOutcomeOut.model_validate(outcome)


@router.get("/documents/{document_id}", response_model=DocumentOut)
async def get_document(
    document_id: str,
    coordinator: LedgerCoordinator = Depends(get_coordinator),
):
    return DocumentOut.model_validate(await coordinator.get_document(document_id))


@router.delete("/documents/{document_id}", response_model=DeletionOut)
async def delete_document(
    document_id: str,
    force: bool = Query(False),
    coordinator: LedgerCoordinator = Depends(get_coordinator),
):
    result = await coordinator.delete_ledger_document(document_id, force=force)
    return DeletionOut.model_validate(result)
