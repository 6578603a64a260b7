"""
Admin Routes - Operator Surface for Settlement Recovery and Reconciliation

All routes under /admin/* require an admin bearer token.
Non-admin callers receive 403 Forbidden.

Routes:
- GET  /admin/status-history                       - Entries by processing status
- GET  /admin/status-history/{id}                  - Entry detail with integrity check
- POST /admin/status-history/{id}/resume           - Finish a failed settlement
- POST /admin/reconcile                            - Resume every unfinished settlement
- GET  /admin/properties/{id}/integrity            - Verify a property's history chain
- GET  /admin/payment-records                      - Reconciliation records
- POST /admin/payment-records/{id}/notes           - Add an admin note
- POST /admin/invoices/{id}/refund                 - Refund a paid invoice
- POST /admin/invoices/mark-overdue                - Roll open invoices past due to overdue
- GET  /admin/notifications/dead-letter            - Undeliverable outbox events
- POST /admin/notifications/{event_id}/requeue     - Retry a dead-lettered event
- POST /admin/notifications/flush                  - Deliver due outbox events now
"""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from core.settlement import (
    NotFoundError,
    PaymentRecordStatus,
    ProcessingStatus,
    SettlementServices,
    User,
    ValidationError,
)
from web.auth import get_settlement_services, require_admin
from web.responses import ok


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin", tags=["admin"])


class NoteBody(BaseModel):
    note: str


class RefundBody(BaseModel):
    reason: str = ""


def _parse_enum(enum_cls, value: Optional[str], field: str):
    if value is None:
        return None
    try:
        return enum_cls(value)
    except ValueError as e:
        allowed = ", ".join(m.value for m in enum_cls)
        raise ValidationError.for_field(field, f"Must be one of: {allowed}", value) from e


# =============================================================================
# Status History
# =============================================================================


@router.get("/status-history")
def list_status_history(
    processing_status: Optional[str] = Query(default=None, alias="processingStatus"),
    admin: User = Depends(require_admin),
    services: SettlementServices = Depends(get_settlement_services),
):
    """Entries filtered by processing status (oldest first), or all entries."""
    status = _parse_enum(ProcessingStatus, processing_status, "processingStatus")
    if status is None:
        entries = services.recorder.list_all()
    else:
        entries = services.recorder.list_by_processing_status(status)
    return ok({"entries": [e.to_dict() for e in entries], "count": len(entries)})


@router.get("/status-history/{entry_id}")
def get_status_history_entry(
    entry_id: str,
    admin: User = Depends(require_admin),
    services: SettlementServices = Depends(get_settlement_services),
):
    entry = services.recorder.require(entry_id)
    return ok({
        "entry": entry.to_dict(),
        "integrity_verified": services.recorder.verify_integrity(entry),
        "outbox": [e.to_dict() for e in services.outbox.list_for_entry(entry_id)],
    })


@router.post("/status-history/{entry_id}/resume")
def resume_status_history(
    entry_id: str,
    admin: User = Depends(require_admin),
    services: SettlementServices = Depends(get_settlement_services),
):
    """Re-run the unfinished invoice steps of a settlement entry."""
    result = services.engine.resume(entry_id, admin)
    services.dispatcher.deliver_pending()
    data = result.to_response()
    data["processingStatus"] = result.entry.processing_status.value
    return ok(data, result.message)


@router.post("/reconcile")
def reconcile(
    older_than_seconds: int = Query(default=60, ge=0, alias="olderThanSeconds"),
    admin: User = Depends(require_admin),
    services: SettlementServices = Depends(get_settlement_services),
):
    logger.info("Reconcile requested by %s", admin.user_id)
    outcomes = services.engine.reconcile(older_than=timedelta(seconds=older_than_seconds))
    services.dispatcher.deliver_pending()
    return ok({"results": outcomes, "count": len(outcomes)})


@router.get("/properties/{property_id}/integrity")
def verify_property_history(
    property_id: str,
    admin: User = Depends(require_admin),
    services: SettlementServices = Depends(get_settlement_services),
):
    prop = services.properties.get_by_ref(property_id)
    if prop is None:
        raise NotFoundError("Property not found", {"property": property_id})
    return ok(services.recorder.verify_property_chain(prop.property_id))


# =============================================================================
# Payments and Invoices
# =============================================================================


@router.get("/payment-records")
def list_payment_records(
    status: Optional[str] = Query(default=None),
    admin: User = Depends(require_admin),
    services: SettlementServices = Depends(get_settlement_services),
):
    record_status = _parse_enum(PaymentRecordStatus, status, "status")
    records = services.payment_records.list_all(record_status)
    return ok({
        "records": [r.to_dict() for r in records],
        "summary": services.payment_records.summary(),
    })


@router.post("/payment-records/{record_id}/notes")
def add_payment_record_note(
    record_id: str,
    body: NoteBody,
    admin: User = Depends(require_admin),
    services: SettlementServices = Depends(get_settlement_services),
):
    record = services.payment_records.add_admin_note(record_id, body.note, admin.user_id)
    return ok(record.to_dict(), "Note added")


@router.post("/invoices/mark-overdue")
def mark_invoices_overdue(
    admin: User = Depends(require_admin),
    services: SettlementServices = Depends(get_settlement_services),
):
    changed = services.ledger.mark_overdue()
    return ok({"invoices": [i.invoice_number for i in changed], "count": len(changed)})


@router.post("/invoices/{invoice_id}/refund")
def refund_invoice(
    invoice_id: str,
    body: Optional[RefundBody] = None,
    admin: User = Depends(require_admin),
    services: SettlementServices = Depends(get_settlement_services),
):
    invoice = services.ledger.refund(
        invoice_id, refunded_by=admin.user_id, reason=body.reason if body else ""
    )
    services.payment_records.sync_with_invoice(invoice)
    return ok(invoice.to_dict(), "Invoice refunded")


# =============================================================================
# Notification Outbox
# =============================================================================


@router.get("/notifications/dead-letter")
def list_dead_letters(
    admin: User = Depends(require_admin),
    services: SettlementServices = Depends(get_settlement_services),
):
    events = services.outbox.list_dead_letters()
    return ok({"events": [e.to_dict() for e in events], "count": len(events)})


@router.post("/notifications/{event_id}/requeue")
def requeue_notification(
    event_id: str,
    admin: User = Depends(require_admin),
    services: SettlementServices = Depends(get_settlement_services),
):
    event = services.outbox.requeue(event_id)
    logger.info("Outbox event %s requeued by %s", event_id, admin.user_id)
    return ok(event.to_dict(), "Event requeued")


@router.post("/notifications/flush")
def flush_notifications(
    admin: User = Depends(require_admin),
    services: SettlementServices = Depends(get_settlement_services),
):
    stats = services.dispatcher.deliver_pending()
    return ok({**stats, "pending": services.outbox.pending_count()})
