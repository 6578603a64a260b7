"""
Invoice Routes - Viewing, Payment Recording and Lifecycle

Routes:
- GET  /invoices                     - Invoices for a counterparty
- GET  /invoices/{id}                - Invoice detail (by ID or number)
- GET  /invoices/{id}/pdf            - Invoice as PDF
- POST /invoices/{id}/payments       - Record a payment (admin or invoice agent)
- POST /invoices/{id}/send           - Mark as sent (admin or invoice agent)
- POST /invoices/{id}/cancel         - Cancel (admin)

Invoices are visible to admins, the issuing agent and the counterparty.
"""

from __future__ import annotations

import logging
from decimal import Decimal
from typing import Optional, Union

from fastapi import APIRouter, Depends, Query
from fastapi.responses import Response
from pydantic import AliasChoices, BaseModel, Field

from core.settlement import (
    AuthorizationError,
    CounterpartyRole,
    Invoice,
    InvoiceStatus,
    SettlementServices,
    User,
    ValidationError,
)
from reporting.invoice_pdf import render_invoice_pdf
from web.auth import get_settlement_services, require_actor, require_admin
from web.responses import ok


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/invoices", tags=["invoices"])


# =============================================================================
# Request Models
# =============================================================================


class PaymentBody(BaseModel):
    amount: Union[Decimal, str]
    method: str = "bank_transfer"
    reference: Optional[str] = None
    received_at: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("receivedAt", "received_at")
    )
    notes: Optional[str] = None


class SendBody(BaseModel):
    channel: str = "email"


class CancelBody(BaseModel):
    reason: str = ""


# =============================================================================
# Access
# =============================================================================


def _can_view(actor: User, invoice: Invoice) -> bool:
    return actor.is_admin or actor.user_id in (invoice.agent_id, invoice.counterparty_id)


def _require_view(actor: User, invoice: Invoice) -> None:
    if not _can_view(actor, invoice):
        raise AuthorizationError("Not authorised to view this invoice")


def _require_manage(actor: User, invoice: Invoice) -> None:
    if not (actor.is_admin or actor.user_id == invoice.agent_id):
        raise AuthorizationError("Only the issuing agent or an admin can change this invoice")


def _sync_payment_record(services: SettlementServices, invoice: Invoice) -> None:
    try:
        services.payment_records.sync_with_invoice(invoice)
    except Exception:
        logger.exception("Payment record sync failed for %s", invoice.invoice_number)


# =============================================================================
# Routes
# =============================================================================


@router.get("")
def list_invoices(
    counterparty_id: Optional[str] = Query(default=None, alias="counterpartyId"),
    role: Optional[str] = Query(default=None),
    actor: User = Depends(require_actor),
    services: SettlementServices = Depends(get_settlement_services),
):
    """
    Invoices addressed to a seller or buyer, newest first.

    Non-admins may only list their own invoices; counterpartyId defaults to
    the caller.
    """
    counterparty_id = counterparty_id or actor.user_id
    if counterparty_id != actor.user_id and not actor.is_admin:
        raise AuthorizationError("Not authorised to list another user's invoices")

    counterparty_role = None
    if role:
        try:
            counterparty_role = CounterpartyRole(role)
        except ValueError as e:
            raise ValidationError.for_field("role", "Role must be seller or buyer", role) from e

    invoices = services.ledger.list_for_counterparty(counterparty_id, counterparty_role)
    return ok({
        "invoices": [i.to_dict() for i in invoices],
        "summary": services.ledger.summary_for_counterparty(counterparty_id),
    })


@router.get("/{invoice_id}")
def get_invoice(
    invoice_id: str,
    actor: User = Depends(require_actor),
    services: SettlementServices = Depends(get_settlement_services),
):
    """Invoice detail. The counterparty opening a sent invoice marks it viewed."""
    invoice = services.ledger.require(invoice_id)
    _require_view(actor, invoice)

    if actor.user_id == invoice.counterparty_id and invoice.status == InvoiceStatus.SENT:
        invoice = services.ledger.mark_viewed(invoice.invoice_id, viewed_by=actor.user_id)
    return ok(invoice.to_dict())


@router.get("/{invoice_id}/pdf")
def get_invoice_pdf(
    invoice_id: str,
    actor: User = Depends(require_actor),
    services: SettlementServices = Depends(get_settlement_services),
):
    invoice = services.ledger.require(invoice_id)
    _require_view(actor, invoice)

    pdf = render_invoice_pdf(
        invoice,
        agent=services.directory.get(invoice.agent_id),
        counterparty=services.directory.get(invoice.counterparty_id),
    )
    return Response(
        content=pdf,
        media_type="application/pdf",
        headers={"Content-Disposition": f'inline; filename="{invoice.invoice_number}.pdf"'},
    )


@router.post("/{invoice_id}/payments")
def record_payment(
    invoice_id: str,
    body: PaymentBody,
    actor: User = Depends(require_actor),
    services: SettlementServices = Depends(get_settlement_services),
):
    invoice = services.ledger.require(invoice_id)
    _require_manage(actor, invoice)

    invoice = services.ledger.record_payment(
        invoice.invoice_id,
        amount=body.amount,
        method=body.method,
        reference=body.reference,
        recorded_by=actor.user_id,
        received_at=body.received_at,
        notes=body.notes,
    )
    _sync_payment_record(services, invoice)
    return ok(invoice.to_dict(), "Payment recorded")


@router.post("/{invoice_id}/send")
def send_invoice(
    invoice_id: str,
    body: Optional[SendBody] = None,
    actor: User = Depends(require_actor),
    services: SettlementServices = Depends(get_settlement_services),
):
    invoice = services.ledger.require(invoice_id)
    _require_manage(actor, invoice)

    channel = body.channel if body else "email"
    invoice = services.ledger.mark_sent(invoice.invoice_id, sent_by=actor.user_id, channel=channel)
    return ok(invoice.to_dict(), "Invoice marked as sent")


@router.post("/{invoice_id}/cancel")
def cancel_invoice(
    invoice_id: str,
    body: Optional[CancelBody] = None,
    admin: User = Depends(require_admin),
    services: SettlementServices = Depends(get_settlement_services),
):
    invoice = services.ledger.cancel(
        invoice_id, cancelled_by=admin.user_id, reason=body.reason if body else ""
    )
    _sync_payment_record(services, invoice)
    return ok(invoice.to_dict(), "Invoice cancelled")
