"""
Tests for Notification Delivery

Tests covering:
1. Outbox retry with exponential backoff and dead-lettering
2. Requeue of dead letters
3. Dispatcher delivers status and invoice notifications after the fact
4. Invoice notifications are built from the stored invoice at delivery time
5. Email runs as its own event; a mail failure does not repeat in-app delivery
6. Live rooms: emit, room isolation and dropping broken connections
7. In-app store read state and JSON persistence
"""

from __future__ import annotations

import tempfile
from datetime import datetime, timedelta
from pathlib import Path

import pytest

from core.settlement import (
    ConnectionRegistry,
    EmailGateway,
    InAppNotificationStore,
    Notification,
    NotificationOutbox,
    NotificationType,
    NotFoundError,
    OutboxStatus,
    Property,
    TransitionRequest,
    UserRole,
    WebhookEmailGateway,
)
from core.settlement.notifications import (
    ADMIN_ROOM,
    EVENT_EMAIL,
    rooms_for_user,
    seller_room,
)


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def temp_dir():
    """Create a temporary directory for persistence."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def outbox():
    return NotificationOutbox(max_attempts=3, backoff_seconds=10)


class RecordingGateway(EmailGateway):
    """Collects sent emails."""

    def __init__(self):
        self.sent = []

    def send(self, to, subject, body, metadata=None):
        self.sent.append({"to": to, "subject": subject, "body": body, "metadata": metadata})


class FailingGateway(EmailGateway):
    """Mail relay that is always down."""

    def __init__(self):
        self.calls = 0

    def send(self, to, subject, body, metadata=None):
        self.calls += 1
        raise RuntimeError("relay unavailable")


def _settle(services, prop, actor, **kwargs):
    return services.engine.transition(
        prop.property_id, TransitionRequest(status="settled", **kwargs), actor
    )


# =============================================================================
# Outbox
# =============================================================================


class TestOutbox:
    """Retry schedule and dead letters."""

    def test_claim_due(self, outbox):
        event = outbox.enqueue("status_change", {"property_id": "PROP-1"})
        now = datetime.utcnow() + timedelta(seconds=1)

        assert outbox.claim_due(now) == [event]
        assert event.status == OutboxStatus.CLAIMED
        # A claimed event is not handed out twice
        assert outbox.claim_due(now) == []

    def test_backoff_doubles(self, outbox):
        event = outbox.enqueue("status_change", {})
        now = datetime.utcnow() + timedelta(seconds=1)

        outbox.claim_due(now)
        outbox.mark_failed(event, "boom", now=now)
        assert event.status == OutboxStatus.FAILED
        assert event.next_attempt_at == now + timedelta(seconds=10)
        assert outbox.claim_due(now + timedelta(seconds=9)) == []

        retry_at = now + timedelta(seconds=10)
        assert outbox.claim_due(retry_at) == [event]
        outbox.mark_failed(event, "boom again", now=retry_at)
        assert event.next_attempt_at == retry_at + timedelta(seconds=20)
        assert event.attempts == 2
        assert event.last_error == "boom again"

    def test_dead_letter_after_max_attempts(self, outbox):
        event = outbox.enqueue("status_change", {})
        for _ in range(3):
            outbox.mark_failed(event, "boom")

        assert event.status == OutboxStatus.DEAD_LETTER
        assert outbox.list_dead_letters() == [event]
        assert outbox.pending_count() == 0
        assert outbox.claim_due(datetime.utcnow() + timedelta(days=1)) == []

    def test_requeue(self, outbox):
        event = outbox.enqueue("status_change", {})
        for _ in range(3):
            outbox.mark_failed(event, "boom")

        outbox.requeue(event.event_id)
        assert event.status == OutboxStatus.PENDING
        assert event.attempts == 0
        assert outbox.pending_count() == 1

    def test_requeue_unknown(self, outbox):
        with pytest.raises(NotFoundError):
            outbox.requeue("EVT-NOPE")

    def test_claims_released_on_reload(self, temp_dir):
        path = str(temp_dir / "outbox.json")
        outbox = NotificationOutbox(path)
        event = outbox.enqueue("status_change", {"property_id": "PROP-1"})
        outbox.claim_due(datetime.utcnow() + timedelta(seconds=1))

        reloaded = NotificationOutbox(path)
        assert reloaded.get(event.event_id).status == OutboxStatus.PENDING
        assert reloaded.get(event.event_id).payload == {"property_id": "PROP-1"}


# =============================================================================
# Dispatcher
# =============================================================================


class TestDispatcher:
    """Delivery of queued events."""

    def test_settlement_delivers_to_seller(self, services, listing, users):
        _settle(services, listing, users["agent"])
        stats = services.dispatcher.deliver_pending()

        assert stats == {"sent": 2, "retrying": 0, "dead_letter": 0}
        notifications = services.store.list_for_user("seller-1")
        types = sorted(n.type for n in notifications)
        assert types == sorted([NotificationType.STATUS_CHANGE, NotificationType.INVOICE_GENERATED])

        status_note = next(n for n in notifications if n.type == NotificationType.STATUS_CHANGE)
        assert status_note.message == "Your property status has been updated from Not Set to Settled"
        assert status_note.data["changed_by"] == "agent-1"

    def test_receipts_on_history_entry(self, services, listing, users):
        result = _settle(services, listing, users["agent"])
        services.dispatcher.deliver_pending()

        receipts = result.entry.notifications
        assert len(receipts) == 2
        assert {r["recipient_id"] for r in receipts} == {"seller-1"}

    def test_buyer_receives_invoice_notification(self, services, listing, users):
        _settle(services, listing, users["agent"], buyer_id="buyer-1")
        services.dispatcher.deliver_pending()

        buyer_notes = services.store.list_for_user("buyer-1")
        assert len(buyer_notes) == 1
        assert buyer_notes[0].type == NotificationType.INVOICE_GENERATED
        assert buyer_notes[0].data["category"] == "buyer_payment"
        assert buyer_notes[0].data["payment_methods"][0]["type"] == "bank_transfer"

    def test_invoice_data_fetched_at_delivery(self, services, listing, users):
        """The notification reflects the invoice as stored when delivered."""
        result = _settle(services, listing, users["agent"])
        services.ledger.mark_sent(result.invoice.invoice.invoice_id, sent_by="agent-1")
        services.dispatcher.deliver_pending()

        note = next(
            n for n in services.store.list_for_user("seller-1")
            if n.type == NotificationType.INVOICE_GENERATED
        )
        assert note.data["status"] == "sent"
        assert note.data["total_amount"] == "6050.00"
        assert note.data["agent"]["name"] == "Alex Agent"
        assert note.invoice_id == result.invoice.invoice.invoice_id

    def test_unknown_event_type_retries(self, services):
        services.outbox.enqueue("carrier_pigeon", {})
        stats = services.dispatcher.deliver_pending()

        assert stats["retrying"] == 1
        assert services.outbox.list_by_status(OutboxStatus.FAILED)[0].last_error.startswith(
            "No handler"
        )

    def test_missing_invoice_dead_letters(self, services, listing):
        """An event that can never be delivered ends up in the dead letter queue."""
        services.outbox.enqueue("invoice_generated", {"invoice_id": "INVC-GONE"})
        now = datetime.utcnow() + timedelta(seconds=1)
        for attempt in range(3):
            services.dispatcher.deliver_pending(now=now + timedelta(days=attempt))

        dead = services.outbox.list_dead_letters()
        assert len(dead) == 1
        assert "INVC-GONE" in dead[0].last_error

    def test_status_update_pushed_to_room(self, services, listing, users):
        received = []
        connection_id = services.registry.add_connection("seller-1", received.append)
        services.registry.join(connection_id, seller_room("seller-1"))

        _settle(services, listing, users["agent"])
        services.dispatcher.deliver_pending()

        events = [m["event"] for m in received]
        assert "status-update" in events
        assert "invoice-update" in events
        status_update = next(m for m in received if m["event"] == "status-update")
        assert status_update["data"]["newStatus"] == "settled"


class TestEmail:
    """Email as a separate outbox event."""

    def _listing_with_email(self, services, users):
        prop = Property.create(
            title="3 Mail Street",
            price="600000",
            owner_id=users["seller"].user_id,
            agent_id=users["agent"].user_id,
            contact_email="sam@example.com",
        )
        return services.properties.add(prop)

    def test_gateway_is_abstract(self):
        with pytest.raises(TypeError):
            EmailGateway()

    def test_email_sent_on_second_run(self, services_factory):
        gateway = RecordingGateway()
        services = services_factory()
        services.dispatcher.email_gateway = gateway
        users = {
            "agent": services.directory.add("Alex", "alex@example.com", UserRole.AGENT, user_id="agent-1"),
            "seller": services.directory.add("Sam", "sam@example.com", UserRole.SELLER, user_id="seller-1"),
        }
        prop = self._listing_with_email(services, users)

        services.engine.transition(
            prop.property_id, TransitionRequest(status="unconditional"), users["agent"]
        )
        services.dispatcher.deliver_pending()
        services.dispatcher.deliver_pending()

        assert len(gateway.sent) == 1
        assert gateway.sent[0]["to"] == "sam@example.com"
        assert gateway.sent[0]["subject"] == "Property Status Updated: 3 Mail Street"
        assert "Hello Sam" in gateway.sent[0]["body"]

    def test_mail_failure_does_not_repeat_in_app(self, services_factory):
        gateway = FailingGateway()
        services = services_factory()
        services.dispatcher.email_gateway = gateway
        users = {
            "agent": services.directory.add("Alex", "alex@example.com", UserRole.AGENT, user_id="agent-1"),
            "seller": services.directory.add("Sam", "sam@example.com", UserRole.SELLER, user_id="seller-1"),
        }
        prop = self._listing_with_email(services, users)
        services.engine.transition(
            prop.property_id, TransitionRequest(status="unconditional"), users["agent"]
        )

        services.dispatcher.deliver_pending()
        stats = services.dispatcher.deliver_pending()

        assert stats["retrying"] == 1
        assert gateway.calls == 1
        assert len(services.store.list_for_user("seller-1")) == 1
        failed = services.outbox.list_by_status(OutboxStatus.FAILED)
        assert [e.event_type for e in failed] == [EVENT_EMAIL]

    def test_webhook_gateway_posts_json(self):
        class FakeResponse:
            def raise_for_status(self):
                return None

        class FakeSession:
            def __init__(self):
                self.calls = []

            def post(self, url, json=None, timeout=None):
                self.calls.append((url, json, timeout))
                return FakeResponse()

        session = FakeSession()
        gateway = WebhookEmailGateway("https://mail.example.com/hook", timeout=5, session=session)
        gateway.send("a@example.com", "Hi", "Body")

        url, payload, timeout = session.calls[0]
        assert url == "https://mail.example.com/hook"
        assert payload == {"to": "a@example.com", "subject": "Hi", "body": "Body", "metadata": {}}
        assert timeout == 5


# =============================================================================
# Live Connections
# =============================================================================


class TestConnectionRegistry:
    """Rooms and fan-out."""

    def test_emit_reaches_room_members_only(self):
        registry = ConnectionRegistry()
        inbox_a, inbox_b = [], []
        a = registry.add_connection("user-a", inbox_a.append)
        b = registry.add_connection("user-b", inbox_b.append)
        registry.join(a, "seller-user-a")
        registry.join(b, "buyer-user-b")

        reached = registry.emit("seller-user-a", "status-update", {"x": 1})

        assert reached == 1
        assert inbox_a == [{"event": "status-update", "room": "seller-user-a", "data": {"x": 1}}]
        assert inbox_b == []

    def test_leave_room(self):
        registry = ConnectionRegistry()
        inbox = []
        connection_id = registry.add_connection("user-a", inbox.append)
        registry.join(connection_id, "seller-user-a")
        registry.leave(connection_id, "seller-user-a")

        assert registry.emit("seller-user-a", "status-update", {}) == 0
        assert registry.rooms_of(connection_id) == set()

    def test_broken_connection_dropped(self):
        registry = ConnectionRegistry()

        def broken(message):
            raise ConnectionError("socket closed")

        connection_id = registry.add_connection("user-a", broken)
        registry.join(connection_id, ADMIN_ROOM)

        assert registry.emit(ADMIN_ROOM, "system-alert", {}) == 0
        assert registry.count() == 0

    def test_lookup_and_remove(self):
        registry = ConnectionRegistry()
        first = registry.add_connection("user-a", lambda m: None)
        registry.add_connection("user-a", lambda m: None)

        assert len(registry.lookup("user-a")) == 2
        assert registry.remove_connection(first) is True
        assert registry.remove_connection(first) is False
        assert len(registry.lookup("user-a")) == 1

    def test_join_unknown_connection(self):
        with pytest.raises(NotFoundError):
            ConnectionRegistry().join("missing", "admin")

    def test_rooms_for_user(self, users):
        assert rooms_for_user(users["seller"]) == {"seller-seller-1", "buyer-seller-1", "agent-seller-1"}
        assert ADMIN_ROOM in rooms_for_user(users["admin"])


# =============================================================================
# In-App Store
# =============================================================================


class TestInAppStore:
    """Read state and persistence."""

    def _note(self, recipient="seller-1"):
        return Notification.create(
            recipient_id=recipient,
            type=NotificationType.STATUS_CHANGE,
            title="Property Status Updated",
            message="Updated",
        )

    def test_mark_read(self):
        store = InAppNotificationStore()
        note = store.deliver(self._note())

        assert store.unread_count("seller-1") == 1
        store.mark_read(note.notification_id, "seller-1")
        assert store.unread_count("seller-1") == 0
        assert store.list_for_user("seller-1", unread_only=True) == []
        assert note.read_at is not None

    def test_mark_read_wrong_recipient(self):
        store = InAppNotificationStore()
        note = store.deliver(self._note())

        with pytest.raises(NotFoundError):
            store.mark_read(note.notification_id, "someone-else")

    def test_persistence(self, temp_dir):
        path = str(temp_dir / "notifications.json")
        store = InAppNotificationStore(path)
        note = store.deliver(self._note())

        reloaded = InAppNotificationStore(path)
        assert reloaded.get(note.notification_id).title == "Property Status Updated"
        assert reloaded.get(note.notification_id).type == NotificationType.STATUS_CHANGE
