"""
Tests for the Status Transition Engine

Tests covering:
1. Settling a 500k listing issues one 6,050.00 seller invoice
2. Validation and authorization reject before any write
3. Off-progression changes warn by default and fail in strict mode
4. Sold listings only accept settled; repeating a status is accepted
5. Buyer deposit and platform commission invoices
6. Seller invoice failure keeps the status, fails the entry and alerts admins
7. Resume and reconcile finish interrupted settlements
"""

from __future__ import annotations

from datetime import datetime, timedelta
from decimal import Decimal

import pytest

from core.settlement import (
    AuthorizationError,
    ConflictError,
    InvoiceCategory,
    ListingStatus,
    NotFoundError,
    ProcessingStatus,
    Property,
    SalesStatus,
    StepState,
    TransitionRequest,
    UserRole,
    ValidationError,
)
from core.settlement.history import (
    STEP_BUYER_INVOICE,
    STEP_NOTIFICATIONS,
    STEP_PLATFORM_INVOICE,
    STEP_SELLER_INVOICE,
)
from core.settlement.notifications import EVENT_INVOICE_FAILURE, EVENT_INVOICE_GENERATED, EVENT_STATUS_CHANGE
from core.settlement.transition import SYSTEM_ACTOR


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def engine(services):
    return services.engine


@pytest.fixture
def agent(users):
    return users["agent"]


def _all_events(services):
    events = []
    for entry in services.recorder.list_all():
        events.extend(services.outbox.list_for_entry(entry.entry_id))
    return events


def settle(engine, prop, actor, **kwargs):
    return engine.transition(prop.property_id, TransitionRequest(status="settled", **kwargs), actor)


# =============================================================================
# Settlement
# =============================================================================


class TestSettlement:
    """The settled transition and its seller invoice."""

    def test_settle_500k_listing(self, services, engine, listing, agent):
        """Settling issues a 6,050.00 commission invoice."""
        result = settle(engine, listing, agent, change_reason="Keys handed over")

        assert result.property.sales_status == SalesStatus.SETTLED
        assert result.property.status == ListingStatus.SOLD
        assert result.property.settlement_date is not None
        assert result.invoice.already_existed is False
        assert result.invoice.invoice.total_amount == Decimal("6050.00")
        assert result.buyer_invoice is None
        assert result.platform_invoice is None
        assert result.message == "Property status updated to Settled"

        entry = result.entry
        assert entry.processing_status == ProcessingStatus.COMPLETED
        assert entry.invoice.amount == "6050.00"
        assert entry.step_state(STEP_SELLER_INVOICE) == StepState.COMMITTED
        assert entry.step_state(STEP_BUYER_INVOICE) == StepState.SKIPPED
        assert entry.step_state(STEP_PLATFORM_INVOICE) == StepState.SKIPPED
        assert entry.step_state(STEP_NOTIFICATIONS) == StepState.COMMITTED

    def test_response_shape(self, engine, listing, agent):
        data = settle(engine, listing, agent).to_response()

        assert data["property"]["salesStatus"] == "settled"
        assert data["property"]["status"] == "sold"
        assert data["statusHistory"]["newStatus"] == "settled"
        assert data["invoice"]["amount"] == "6050.00"
        assert "buyerInvoice" not in data
        assert data["warnings"] == []

    def test_settlement_snapshot_on_entry(self, engine, listing, agent):
        result = settle(engine, listing, agent, settlement_details={
            "settlementDate": "2026-01-15",
            "solicitorEmail": "  Law@Example.COM ",
        })
        details = result.entry.change.settlement_details

        assert details["solicitor_email"] == "law@example.com"
        assert details["deposit"]["expected_amount"] == "50000.00"
        assert details["parties"] == {"seller_id": "seller-1", "buyer_id": None}
        assert result.property.settlement_date == datetime(2026, 1, 15)

    def test_payment_record_created(self, services, engine, listing, agent):
        result = settle(engine, listing, agent)
        record = services.payment_records.get_by_invoice(result.invoice.invoice.invoice_id)

        assert record is not None
        assert record.amount == Decimal("6050.00")
        assert record.payer_details["role"] == "seller"

    def test_notifications_queued_not_delivered(self, services, engine, listing, agent):
        """The transition only enqueues; delivery happens later."""
        settle(engine, listing, agent)

        types = sorted(e.event_type for e in _all_events(services))
        assert types == sorted([EVENT_STATUS_CHANGE, EVENT_INVOICE_GENERATED])
        assert services.store.list_for_user("seller-1") == []

    def test_resettling_reuses_invoice(self, services, engine, listing, agent):
        """A repeated settle does not bill twice."""
        first = settle(engine, listing, agent)
        second = settle(engine, listing, agent)

        assert second.invoice.already_existed is True
        assert second.invoice.invoice.invoice_id == first.invoice.invoice.invoice_id
        assert len(services.ledger.list_for_property(listing.property_id)) == 1
        assert len(services.recorder.list_for_property(listing.property_id)) == 2
        # No second invoice notification
        generated = [e for e in _all_events(services) if e.event_type == EVENT_INVOICE_GENERATED]
        assert len(generated) == 1

    def test_settle_by_slug(self, engine, listing, agent):
        result = engine.transition("12-harbour-street", TransitionRequest(status="settled"), agent)
        assert result.property.property_id == listing.property_id


class TestAdditionalInvoices:
    """Buyer deposit and platform commission invoices."""

    def test_buyer_invoice(self, engine, listing, agent):
        result = settle(engine, listing, agent, buyer_id="buyer-1")

        assert result.buyer_invoice.invoice.category == InvoiceCategory.BUYER_PAYMENT
        assert result.buyer_invoice.invoice.total_amount == Decimal("55000.00")
        assert result.buyer_invoice.invoice.buyer_id == "buyer-1"
        assert result.entry.buyer_invoice.generated is True
        assert result.to_response()["buyerInvoice"]["amount"] == "55000.00"

    def test_platform_invoice_on_legal_release(self, engine, listing, agent):
        result = settle(engine, listing, agent, settlement_details={"legalReleaseConfirmed": True})

        invoice = result.platform_invoice.invoice
        assert invoice.category == InvoiceCategory.PLATFORM_COMMISSION
        assert invoice.total_amount == Decimal("3025.00")
        assert invoice.seller_id == "seller-1"

    def test_buyer_invoice_failure_does_not_fail_entry(self, engine, listing, agent):
        """Only the seller invoice is critical."""
        result = settle(engine, listing, agent, buyer_id="ghost-buyer")

        assert result.invoice is not None
        assert result.buyer_invoice is None
        assert result.entry.processing_status == ProcessingStatus.COMPLETED
        assert result.entry.step_state(STEP_BUYER_INVOICE) == StepState.FAILED
        assert result.entry.error_log[0].step == STEP_BUYER_INVOICE


# =============================================================================
# Rejections
# =============================================================================


class TestRejections:
    """Hard failures leave no trace."""

    def _assert_untouched(self, services, listing):
        assert listing.sales_status is None
        assert services.recorder.list_for_property(listing.property_id) == []
        assert services.ledger.list_all() == []

    def test_unknown_property(self, engine, agent):
        with pytest.raises(NotFoundError):
            engine.transition("PROP-NOPE", TransitionRequest(status="settled"), agent)

    @pytest.mark.parametrize("status", [
        None, "", "sold", "pending", "SETTLED", "contract_exchanged", " settled", " Contract_Exchanged ",
    ])
    def test_invalid_status(self, services, engine, listing, agent, status):
        with pytest.raises(ValidationError) as exc_info:
            engine.transition(listing.property_id, TransitionRequest(status=status), agent)

        assert exc_info.value.errors[0].field == "status"
        self._assert_untouched(services, listing)

    def test_reason_too_long(self, services, engine, listing, agent):
        with pytest.raises(ValidationError) as exc_info:
            engine.transition(
                listing.property_id,
                TransitionRequest(status="unconditional", change_reason="x" * 501),
                agent,
            )
        assert exc_info.value.errors[0].field == "changeReason"
        self._assert_untouched(services, listing)

    def test_deleted_property(self, services, engine, listing, agent):
        services.properties.soft_delete(listing.property_id)
        with pytest.raises(ValidationError) as exc_info:
            settle(engine, listing, agent)
        assert exc_info.value.errors[0].field == "id"

    def test_seller_mismatch(self, services, engine, listing, agent):
        with pytest.raises(ValidationError) as exc_info:
            settle(engine, listing, agent, seller_id="seller-999")
        assert exc_info.value.errors[0].field == "sellerId"
        self._assert_untouched(services, listing)

    def test_non_agent_refused(self, services, engine, listing, users):
        with pytest.raises(AuthorizationError, match="Only agents"):
            settle(engine, listing, users["seller"])
        self._assert_untouched(services, listing)

    def test_unassigned_agent_refused(self, services, engine, listing, users):
        with pytest.raises(AuthorizationError) as exc_info:
            settle(engine, listing, users["other_agent"])
        assert exc_info.value.details["assigned_agents"] == ["agent-1"]
        self._assert_untouched(services, listing)

    def test_previous_agent_refused(self, services, engine, listing, users):
        """Only the active assignment counts."""
        listing.assign_agent("agent-2")
        services.properties.save(listing)

        with pytest.raises(AuthorizationError):
            settle(engine, listing, users["agent"])

    def test_admin_allowed(self, engine, listing, users):
        result = settle(engine, listing, users["admin"])
        # The acting agent is still the invoice agent
        assert result.invoice.invoice.agent_id == "agent-1"

    def test_validation_runs_before_authorization(self, engine, listing, users):
        with pytest.raises(ValidationError):
            engine.transition(listing.property_id, TransitionRequest(status="bogus"), users["buyer"])


# =============================================================================
# Progression
# =============================================================================


class TestProgression:
    """Canonical progression is advisory unless strict."""

    def test_same_status_accepted(self, services, engine, listing, agent):
        engine.transition(listing.property_id, TransitionRequest(status="contract-exchanged"), agent)
        result = engine.transition(
            listing.property_id, TransitionRequest(status="contract-exchanged"), agent
        )

        assert result.warnings == []
        assert result.entry.previous_status == SalesStatus.CONTRACT_EXCHANGED
        assert len(services.recorder.list_for_property(listing.property_id)) == 2

    def test_backwards_move_warns(self, engine, listing, agent):
        engine.transition(listing.property_id, TransitionRequest(status="unconditional"), agent)
        result = engine.transition(
            listing.property_id, TransitionRequest(status="contract-exchanged"), agent
        )

        assert result.property.sales_status == SalesStatus.CONTRACT_EXCHANGED
        assert len(result.warnings) == 1
        assert "Unusual status progression" in result.warnings[0]

    def test_strict_mode_rejects(self, services_factory):
        services = services_factory(strict_progression=True)
        agent = services.directory.add("Alex", "alex@example.com", UserRole.AGENT, user_id="agent-1")
        services.directory.add("Sam", "sam@example.com", UserRole.SELLER, user_id="seller-1")
        prop = services.properties.add(
            Property.create(title="1 Strict Lane", price=400000, owner_id="seller-1", agent_id="agent-1")
        )
        services.engine.transition(prop.property_id, TransitionRequest(status="unconditional"), agent)

        with pytest.raises(ValidationError):
            services.engine.transition(
                prop.property_id, TransitionRequest(status="contract-exchanged"), agent
            )
        assert prop.sales_status == SalesStatus.UNCONDITIONAL
        assert len(services.recorder.list_for_property(prop.property_id)) == 1

    def test_sold_listing_only_settles(self, engine, listing, agent):
        settle(engine, listing, agent)

        with pytest.raises(ValidationError, match="sold property"):
            engine.transition(listing.property_id, TransitionRequest(status="unconditional"), agent)
        assert listing.sales_status == SalesStatus.SETTLED


# =============================================================================
# Failure Isolation and Recovery
# =============================================================================


@pytest.fixture
def orphan_listing(services, users):
    """Listing whose owner is missing from the directory."""
    prop = Property.create(
        title="7 Missing Owner Road",
        price="500000",
        owner_id="seller-ghost",
        agent_id=users["agent"].user_id,
    )
    return services.properties.add(prop)


class TestSellerInvoiceFailure:
    """Billing failure never undoes the status change."""

    def test_status_kept_entry_failed(self, services, engine, orphan_listing, agent):
        result = settle(engine, orphan_listing, agent)

        assert result.property.sales_status == SalesStatus.SETTLED
        assert services.properties.get(orphan_listing.property_id).sales_status == SalesStatus.SETTLED
        assert result.invoice is None
        assert result.entry.processing_status == ProcessingStatus.FAILED
        assert result.entry.step_state(STEP_SELLER_INVOICE) == StepState.FAILED
        assert "seller-ghost" in result.entry.error_log[0].error

    def test_admin_alert_queued(self, services, engine, orphan_listing, agent):
        result = settle(engine, orphan_listing, agent)
        alerts = [
            e for e in services.outbox.list_for_entry(result.entry.entry_id)
            if e.event_type == EVENT_INVOICE_FAILURE
        ]

        assert len(alerts) == 1
        assert alerts[0].payload["property_title"] == "7 Missing Owner Road"

        services.dispatcher.deliver_pending()
        admin_queue = services.store.list_for_user("admin")
        assert admin_queue[0].title == "Invoice Generation Failed"
        assert admin_queue[0].data["requires_manual_action"] is True

    def test_resume_after_fix(self, services, engine, orphan_listing, agent):
        result = settle(engine, orphan_listing, agent)
        services.directory.add("Ghost Seller", "ghost@example.com", UserRole.SELLER, user_id="seller-ghost")

        resumed = engine.resume(result.entry.entry_id)

        assert resumed.entry.processing_status == ProcessingStatus.COMPLETED
        assert resumed.invoice.invoice.total_amount == Decimal("6050.00")
        assert resumed.entry.unresolved_errors == []
        assert len(resumed.entry.error_log) == 1
        assert services.payment_records.get_by_invoice(resumed.invoice.invoice.invoice_id) is not None

    def test_resume_still_failing(self, engine, orphan_listing, agent):
        result = settle(engine, orphan_listing, agent)
        resumed = engine.resume(result.entry.entry_id)

        assert resumed.entry.processing_status == ProcessingStatus.FAILED
        assert len(resumed.entry.unresolved_errors) == 1
        assert len(resumed.entry.error_log) == 2


class TestResume:
    """Guards on resume."""

    def test_completed_entry_conflicts(self, engine, listing, agent):
        result = settle(engine, listing, agent)
        with pytest.raises(ConflictError):
            engine.resume(result.entry.entry_id)

    def test_non_settlement_entry_rejected(self, engine, listing, agent):
        result = engine.transition(listing.property_id, TransitionRequest(status="unconditional"), agent)
        with pytest.raises(ValidationError):
            engine.resume(result.entry.entry_id)

    def test_unknown_entry(self, engine):
        with pytest.raises(NotFoundError):
            engine.resume("HIST-NOPE")

    def test_resume_includes_committed_invoices(self, services, engine, listing, agent):
        """Invoices committed before the resume are reported as existing."""
        result = settle(engine, listing, agent, buyer_id="ghost-buyer")
        services.recorder.mark_failed(result.entry, "operator retry")
        services.directory.add("Late Buyer", "late@example.com", UserRole.BUYER, user_id="ghost-buyer")

        resumed = engine.resume(result.entry.entry_id)

        assert resumed.invoice.already_existed is True
        assert resumed.buyer_invoice.already_existed is False
        assert resumed.entry.processing_status == ProcessingStatus.COMPLETED


class TestReconcile:
    """Background recovery of unfinished settlements."""

    def _interrupted_entry(self, services, listing):
        """Simulate a crash after the history entry was written."""
        listing.apply_sales_status(SalesStatus.SETTLED, "agent-1")
        services.properties.save(listing)
        return services.recorder.record(
            property_id=listing.property_id,
            previous_status=None,
            new_status=SalesStatus.SETTLED,
            changed_by="agent-1",
            steps={
                STEP_SELLER_INVOICE: StepState.PENDING,
                STEP_BUYER_INVOICE: StepState.SKIPPED,
                STEP_PLATFORM_INVOICE: StepState.SKIPPED,
            },
        )

    def test_stale_processing_entry_resumed(self, services, engine, listing):
        entry = self._interrupted_entry(services, listing)

        outcomes = engine.reconcile(now=datetime.utcnow() + timedelta(minutes=5))

        assert len(outcomes) == 1
        assert outcomes[0]["entry_id"] == entry.entry_id
        assert outcomes[0]["status"] == "completed"
        assert outcomes[0]["invoice"].startswith("INV-")
        assert services.ledger.list_for_property(listing.property_id)[0].agent_id == "agent-1"

    def test_recent_processing_entry_left_alone(self, services, engine, listing):
        self._interrupted_entry(services, listing)
        assert engine.reconcile(older_than=timedelta(minutes=10)) == []

    def test_failed_entry_retried(self, services, engine, orphan_listing, agent):
        settle(engine, orphan_listing, agent)
        services.directory.add("Ghost Seller", "ghost@example.com", UserRole.SELLER, user_id="seller-ghost")

        outcomes = engine.reconcile()
        assert [o["status"] for o in outcomes] == ["completed"]
        assert engine.reconcile() == []

    def test_system_actor_is_admin(self):
        assert SYSTEM_ACTOR.is_admin
