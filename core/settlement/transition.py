"""
Status Transition Engine - Sales Status Changes and Settlement Invoicing

Orchestrates one status change:

1. Validate the request and authorise the caller (no writes on failure)
2. Persist the new status on the property
3. Record the history entry (PROCESSING)
4. On settlement, obtain the seller, buyer and platform invoices
5. Create payment records for newly issued invoices
6. Enqueue notifications
7. Finalise the history entry

There is no transaction around these steps. Each downstream step leaves a
marker on the history entry so an interrupted or failed settlement can be
resumed later; the ledger's idempotency makes re-running an invoice step
safe. A billing failure never undoes the status change.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Final, Optional

from core.settlement.commission import InvoiceCategory
from core.settlement.directory import User, UserDirectory, UserRole
from core.settlement.errors import ConflictError, NotFoundError, ValidationError
from core.settlement.history import (
    INVOICE_STEPS,
    STEP_NOTIFICATIONS,
    STEP_PROPERTY_UPDATE,
    AuditTrailRecorder,
    InvoiceSlot,
    ProcessingStatus,
    RequestMetadata,
    StatusHistoryEntry,
    StepState,
)
from core.settlement.invoice import CounterpartyRole, InvoiceLedger, InvoiceResult
from core.settlement.notifications import NotificationDispatcher
from core.settlement.payment_record import PaymentRecordRepository
from core.settlement.properties import PropertyRepository
from core.settlement.schema import Property, SalesStatus, build_deposit_terms
from core.settlement.validation import (
    authorize_transition,
    check_listing_state,
    check_progression,
    validate_transition_request,
)


logger = logging.getLogger(__name__)


# Actor used when the system resumes work on its own
SYSTEM_ACTOR: Final[User] = User(
    user_id="system",
    name="System",
    email="system@localhost",
    role=UserRole.ADMIN,
)

SLOT_CATEGORIES: Final[dict[InvoiceSlot, InvoiceCategory]] = {
    InvoiceSlot.SELLER: InvoiceCategory.SETTLEMENT_COMMISSION,
    InvoiceSlot.BUYER: InvoiceCategory.BUYER_PAYMENT,
    InvoiceSlot.PLATFORM: InvoiceCategory.PLATFORM_COMMISSION,
}


# =============================================================================
# Request / Result
# =============================================================================


@dataclass
class TransitionRequest:
    """A requested sales status change."""

    status: Any
    change_reason: Optional[str] = None
    settlement_details: Optional[dict] = None
    seller_id: Optional[str] = None
    buyer_id: Optional[str] = None
    metadata: RequestMetadata = field(default_factory=RequestMetadata)


@dataclass
class TransitionResult:
    """Outcome of an accepted status change."""

    property: Property
    entry: StatusHistoryEntry
    invoice: Optional[InvoiceResult] = None
    buyer_invoice: Optional[InvoiceResult] = None
    platform_invoice: Optional[InvoiceResult] = None
    warnings: list[str] = field(default_factory=list)
    message: str = ""

    def to_response(self) -> dict:
        """Response payload. Invoice keys are present only when issued."""
        data: dict[str, Any] = {
            "property": self.property.to_summary_dict(),
            "statusHistory": self.entry.to_summary(),
        }
        if self.invoice is not None:
            data["invoice"] = self.invoice.invoice.to_summary()
        if self.buyer_invoice is not None:
            data["buyerInvoice"] = self.buyer_invoice.invoice.to_summary()
        if self.platform_invoice is not None:
            data["platformInvoice"] = self.platform_invoice.invoice.to_summary()
        data["warnings"] = list(self.warnings)
        return data


# =============================================================================
# Engine
# =============================================================================


class StatusTransitionEngine:
    """Applies sales status changes and drives settlement side effects."""

    def __init__(
        self,
        properties: PropertyRepository,
        directory: UserDirectory,
        ledger: InvoiceLedger,
        recorder: AuditTrailRecorder,
        dispatcher: NotificationDispatcher,
        payment_records: Optional[PaymentRecordRepository] = None,
        strict_progression: bool = False,
    ):
        self.properties = properties
        self.directory = directory
        self.ledger = ledger
        self.recorder = recorder
        self.dispatcher = dispatcher
        self.payment_records = payment_records
        self.strict_progression = strict_progression

    # =========================================================================
    # Transition
    # =========================================================================

    def transition(
        self,
        property_ref: str,
        request: TransitionRequest,
        actor: User,
    ) -> TransitionResult:
        """
        Change a property's sales status.

        Args:
            property_ref: Property ID or slug
            request: Requested change
            actor: Authenticated caller

        Returns:
            TransitionResult; invoice fields are None when not issued

        Raises:
            NotFoundError: Unknown property
            ValidationError: Invalid request, sold listing, or (strict mode)
                an off-progression change
            AuthorizationError: Caller is not an admin or the acting agent
        """
        prop = self.properties.get_by_ref(property_ref)
        if prop is None:
            raise NotFoundError("Property not found", {"property": property_ref})

        validation = validate_transition_request(
            prop,
            status=request.status,
            change_reason=request.change_reason,
            settlement_details=request.settlement_details,
            seller_id=request.seller_id,
        )
        validation.raise_for_errors()
        new_status = validation.status
        settlement = validation.settlement

        authorize_transition(prop, actor)
        check_listing_state(prop, new_status)
        warnings = []
        warning = check_progression(prop, new_status, strict=self.strict_progression)
        if warning:
            warnings.append(warning)

        logger.info(
            "Status change requested on %s: %s -> %s by %s",
            prop.property_id,
            prop.sales_status.value if prop.sales_status else None,
            new_status.value,
            actor.user_id,
        )

        is_settling = new_status == SalesStatus.SETTLED
        now = datetime.utcnow()

        # Property
        settlement_date = settlement.settlement_date if settlement else None
        if is_settling and settlement_date is None:
            settlement_date = now
        previous_status = prop.apply_sales_status(new_status, actor.user_id, settlement_date)
        self.properties.save(prop)

        # History entry
        seller_id = str(request.seller_id) if request.seller_id else prop.owner_id
        buyer_id = str(request.buyer_id) if request.buyer_id else None
        legal_release = bool(settlement and settlement.legal_release_confirmed)

        settlement_snapshot = settlement.to_dict() if settlement else {}
        steps = {STEP_PROPERTY_UPDATE: StepState.COMMITTED}
        if is_settling:
            settlement_snapshot["deposit"] = build_deposit_terms(prop.price, now)
            settlement_snapshot["parties"] = {"seller_id": seller_id, "buyer_id": buyer_id}
            settlement_snapshot["legal_release_confirmed"] = legal_release
            steps[INVOICE_STEPS[InvoiceSlot.SELLER]] = StepState.PENDING
            steps[INVOICE_STEPS[InvoiceSlot.BUYER]] = (
                StepState.PENDING if buyer_id else StepState.SKIPPED
            )
            steps[INVOICE_STEPS[InvoiceSlot.PLATFORM]] = (
                StepState.PENDING if legal_release else StepState.SKIPPED
            )
        steps[STEP_NOTIFICATIONS] = StepState.PENDING

        entry = self.recorder.record(
            property_id=prop.property_id,
            previous_status=previous_status,
            new_status=new_status,
            changed_by=actor.user_id,
            change_reason=request.change_reason.strip() if request.change_reason else None,
            metadata=request.metadata,
            settlement_details=settlement_snapshot,
            steps=steps,
        )

        # Invoices and payment records
        results: dict[InvoiceSlot, InvoiceResult] = {}
        if is_settling:
            results = self._run_invoice_steps(entry, prop, actor, seller_id, buyer_id)

        # Notifications
        self._enqueue_notifications(entry, prop, previous_status, new_status, actor, results)

        if entry.processing_status != ProcessingStatus.FAILED:
            self.recorder.mark_processed(entry)

        logger.info(
            "Status change %s finished on %s (%s)",
            entry.entry_id, prop.property_id, entry.processing_status.value,
        )
        return TransitionResult(
            property=prop,
            entry=entry,
            invoice=results.get(InvoiceSlot.SELLER),
            buyer_invoice=results.get(InvoiceSlot.BUYER),
            platform_invoice=results.get(InvoiceSlot.PLATFORM),
            warnings=warnings,
            message=f"Property status updated to {new_status.display_name}",
        )

    def _counterparty(
        self,
        slot: InvoiceSlot,
        seller_id: str,
        buyer_id: Optional[str],
    ) -> tuple[CounterpartyRole, Optional[str]]:
        if slot == InvoiceSlot.BUYER:
            return CounterpartyRole.BUYER, buyer_id
        return CounterpartyRole.SELLER, seller_id

    def _run_invoice_steps(
        self,
        entry: StatusHistoryEntry,
        prop: Property,
        actor: User,
        seller_id: str,
        buyer_id: Optional[str],
    ) -> dict[InvoiceSlot, InvoiceResult]:
        """
        Run every invoice step that is not yet committed or skipped.

        A seller invoice failure fails the entry and raises an admin alert;
        buyer and platform failures are logged on the entry only.
        """
        active = prop.active_agent
        agent_id = active.agent_id if active else actor.user_id
        results: dict[InvoiceSlot, InvoiceResult] = {}

        for slot in (InvoiceSlot.SELLER, InvoiceSlot.BUYER, InvoiceSlot.PLATFORM):
            step = INVOICE_STEPS[slot]
            if entry.step_state(step) in (StepState.COMMITTED, StepState.SKIPPED):
                continue

            role, counterparty_id = self._counterparty(slot, seller_id, buyer_id)
            if counterparty_id is None:
                self.recorder.set_step(entry, step, StepState.SKIPPED)
                continue
            try:
                result = self.ledger.get_or_create(
                    category=SLOT_CATEGORIES[slot],
                    prop=prop,
                    counterparty_role=role,
                    counterparty_id=counterparty_id,
                    agent_id=agent_id,
                    settlement_date=prop.settlement_date,
                    created_by=actor.user_id,
                )
            except Exception as e:
                logger.exception(
                    "%s invoice generation failed for property %s",
                    SLOT_CATEGORIES[slot].value, prop.property_id,
                )
                self.recorder.set_step(entry, step, StepState.FAILED)
                if slot == InvoiceSlot.SELLER:
                    self.recorder.mark_failed(entry, e, step=step)
                    self._raise_alert(prop, actor, e, entry)
                else:
                    self.recorder.log_error(entry, e, step=step)
                continue

            self.recorder.attach_invoice(entry, slot, result)
            results[slot] = result
            if not result.already_existed:
                self._create_payment_record(result, prop)

        return results

    def _create_payment_record(self, result: InvoiceResult, prop: Property) -> None:
        if self.payment_records is None:
            return
        try:
            self.payment_records.create_from_invoice(result.invoice, prop)
        except Exception:
            logger.exception(
                "Payment record creation failed for invoice %s", result.invoice.invoice_number
            )

    def _raise_alert(
        self,
        prop: Property,
        actor: User,
        error: Exception,
        entry: StatusHistoryEntry,
    ) -> None:
        try:
            self.dispatcher.raise_invoice_failure_alert(prop, actor, error, entry.entry_id)
        except Exception:
            logger.exception("Could not queue invoice failure alert for %s", prop.property_id)

    def _enqueue_notifications(
        self,
        entry: StatusHistoryEntry,
        prop: Property,
        previous_status: Optional[SalesStatus],
        new_status: SalesStatus,
        actor: User,
        results: dict[InvoiceSlot, InvoiceResult],
    ) -> None:
        try:
            self.dispatcher.notify_status_change(
                prop, previous_status, new_status, actor, entry.entry_id
            )
            self._enqueue_invoice_notifications(entry, prop, results)
        except Exception:
            logger.exception("Could not queue notifications for %s", entry.entry_id)
            self.recorder.set_step(entry, STEP_NOTIFICATIONS, StepState.FAILED)
        else:
            self.recorder.set_step(entry, STEP_NOTIFICATIONS, StepState.COMMITTED)

    def _enqueue_invoice_notifications(
        self,
        entry: StatusHistoryEntry,
        prop: Property,
        results: dict[InvoiceSlot, InvoiceResult],
    ) -> None:
        for result in results.values():
            if not result.already_existed:
                self.dispatcher.notify_invoice_generated(result.invoice, prop, entry.entry_id)

    # =========================================================================
    # Recovery
    # =========================================================================

    def resume(self, entry_id: str, actor: Optional[User] = None) -> TransitionResult:
        """
        Finish the invoice steps of an interrupted or failed settlement.

        Prior errors on the entry are marked resolved before the retry; a new
        seller invoice failure fails the entry again.

        Raises:
            NotFoundError: Unknown entry or property
            ValidationError: The entry is not a settlement
            ConflictError: The entry is already completed
        """
        actor = actor or SYSTEM_ACTOR
        entry = self.recorder.require(entry_id)
        if entry.new_status != SalesStatus.SETTLED:
            raise ValidationError.for_field(
                "status", "Only settlement entries can be resumed", entry.new_status.value
            )
        if entry.processing_status == ProcessingStatus.COMPLETED:
            raise ConflictError(
                f"Status history entry {entry_id} is already completed",
                {"entry_id": entry_id},
            )

        prop = self.properties.get(entry.property_id)
        if prop is None:
            raise NotFoundError(f"Property {entry.property_id} not found")

        parties = entry.change.settlement_details.get("parties", {})
        seller_id = parties.get("seller_id") or prop.owner_id
        buyer_id = parties.get("buyer_id")

        logger.info("Resuming status history %s by %s", entry_id, actor.user_id)
        self.recorder.resolve_errors(entry)
        self.recorder.mark_processing(entry)

        results = self._run_invoice_steps(entry, prop, actor, seller_id, buyer_id)
        try:
            self._enqueue_invoice_notifications(entry, prop, results)
        except Exception:
            logger.exception("Could not queue invoice notifications for %s", entry_id)

        if entry.processing_status != ProcessingStatus.FAILED:
            self.recorder.mark_processed(entry)

        # Include invoices committed before the resume
        for slot in InvoiceSlot:
            link = getattr(entry, slot.value)
            if slot not in results and link is not None and link.invoice_id:
                invoice = self.ledger.get(link.invoice_id)
                if invoice is not None:
                    results[slot] = InvoiceResult(invoice=invoice, already_existed=True)

        return TransitionResult(
            property=prop,
            entry=entry,
            invoice=results.get(InvoiceSlot.SELLER),
            buyer_invoice=results.get(InvoiceSlot.BUYER),
            platform_invoice=results.get(InvoiceSlot.PLATFORM),
            message=f"Processing {entry.processing_status.value} for {entry_id}",
        )

    def reconcile(
        self,
        older_than: timedelta = timedelta(seconds=60),
        now: Optional[datetime] = None,
    ) -> list[dict]:
        """
        Resume every unfinished settlement.

        Failed entries are always retried; entries still PROCESSING are only
        picked up once older than ``older_than`` so in-flight requests are
        left alone.

        Returns:
            One summary dict per entry attempted
        """
        now = now or datetime.utcnow()
        candidates = [
            e for e in self.recorder.list_by_processing_status(ProcessingStatus.FAILED)
            if e.new_status == SalesStatus.SETTLED
        ]
        candidates += [
            e for e in self.recorder.list_by_processing_status(ProcessingStatus.PROCESSING)
            if e.new_status == SalesStatus.SETTLED and now - e.created_at >= older_than
        ]

        outcomes = []
        for entry in candidates:
            try:
                result = self.resume(entry.entry_id, SYSTEM_ACTOR)
            except Exception as e:
                logger.exception("Reconcile of %s failed", entry.entry_id)
                outcomes.append({"entry_id": entry.entry_id, "status": "error", "error": str(e)})
                continue
            outcomes.append({
                "entry_id": entry.entry_id,
                "status": result.entry.processing_status.value,
                "invoice": result.invoice.invoice.invoice_number if result.invoice else None,
            })

        if outcomes:
            logger.info("Reconciled %d status history entries", len(outcomes))
        return outcomes
