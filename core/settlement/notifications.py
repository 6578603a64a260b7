"""
Notification Dispatcher - Outbox-Backed Fan-Out After Status Changes

Notifications never run on the request path. The transition engine only
enqueues OutboxEvents; ``deliver_pending`` runs afterwards (as a FastAPI
background task or from the admin flush endpoint) and performs the actual
delivery:

- In-app notifications go to the InAppNotificationStore
- Emails go through an EmailGateway when one is configured
- Live updates go to rooms on the ConnectionRegistry

Delivery is at-least-once. A failing event is retried with exponential
backoff and moves to DEAD_LETTER after ``max_attempts``; admins can requeue
dead letters.
"""

from __future__ import annotations

import json
import logging
import threading
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from pathlib import Path
from typing import Callable, Final, Optional

import requests

from core.settlement.directory import User, UserDirectory
from core.settlement.errors import NotFoundError
from core.settlement.history import AuditTrailRecorder
from core.settlement.invoice import Invoice, InvoiceLedger
from core.settlement.properties import PropertyRepository
from core.settlement.schema import Property, SalesStatus


logger = logging.getLogger(__name__)


# =============================================================================
# Enums and Constants
# =============================================================================


class NotificationType(Enum):
    STATUS_CHANGE = "status_change"
    INVOICE_GENERATED = "invoice_generated"
    SYSTEM_ERROR = "system_error"


class NotificationCategory(Enum):
    INFO = "info"
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"
    URGENT = "urgent"


class NotificationPriority(Enum):
    NORMAL = "normal"
    HIGH = "high"


class OutboxStatus(Enum):
    PENDING = "pending"
    CLAIMED = "claimed"
    SENT = "sent"
    FAILED = "failed"
    DEAD_LETTER = "dead_letter"


EVENT_STATUS_CHANGE: Final[str] = "status_change"
EVENT_INVOICE_GENERATED: Final[str] = "invoice_generated"
EVENT_INVOICE_FAILURE: Final[str] = "invoice_failure"
EVENT_EMAIL: Final[str] = "email"

ADMIN_RECIPIENT: Final[str] = "admin"
ADMIN_ROOM: Final[str] = "admin"

DEFAULT_MAX_ATTEMPTS: Final[int] = 5
DEFAULT_BACKOFF_SECONDS: Final[float] = 30.0


def display_status(status: Optional[SalesStatus]) -> str:
    """Human-readable status for messages."""
    return status.display_name if status else "Not Set"


def seller_room(user_id: str) -> str:
    return f"seller-{user_id}"


def buyer_room(user_id: str) -> str:
    return f"buyer-{user_id}"


def agent_room(user_id: str) -> str:
    return f"agent-{user_id}"


def rooms_for_user(user: User) -> set[str]:
    """Rooms a user may join on the live channel."""
    rooms = {seller_room(user.user_id), buyer_room(user.user_id), agent_room(user.user_id)}
    if user.is_admin:
        rooms.add(ADMIN_ROOM)
    return rooms


# =============================================================================
# In-App Notifications
# =============================================================================


@dataclass
class Notification:
    """A notification addressed to a user, or to ``admin`` for the operator queue."""

    notification_id: str
    recipient_id: str
    type: NotificationType
    title: str
    message: str
    category: NotificationCategory = NotificationCategory.INFO
    priority: NotificationPriority = NotificationPriority.NORMAL
    property_id: Optional[str] = None
    invoice_id: Optional[str] = None
    data: dict = field(default_factory=dict)
    channels: dict = field(default_factory=lambda: {"in_app": True, "email": False})
    is_read: bool = False
    read_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=datetime.utcnow)

    @classmethod
    def create(cls, recipient_id: str, type: NotificationType, title: str, message: str, **kwargs) -> "Notification":
        return cls(
            notification_id=f"NTF-{uuid.uuid4().hex[:12].upper()}",
            recipient_id=str(recipient_id),
            type=type,
            title=title,
            message=message,
            **kwargs,
        )

    def receipt(self) -> dict:
        """Entry appended to the status history once delivered."""
        return {
            "notification_id": self.notification_id,
            "recipient_id": self.recipient_id,
            "type": self.type.value,
            "sent_at": self.created_at.isoformat(),
        }

    def to_dict(self) -> dict:
        return {
            "notification_id": self.notification_id,
            "recipient_id": self.recipient_id,
            "type": self.type.value,
            "title": self.title,
            "message": self.message,
            "category": self.category.value,
            "priority": self.priority.value,
            "property_id": self.property_id,
            "invoice_id": self.invoice_id,
            "data": self.data,
            "channels": self.channels,
            "is_read": self.is_read,
            "read_at": self.read_at.isoformat() if self.read_at else None,
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Notification":
        return cls(
            notification_id=data["notification_id"],
            recipient_id=data["recipient_id"],
            type=NotificationType(data["type"]),
            title=data["title"],
            message=data["message"],
            category=NotificationCategory(data.get("category", "info")),
            priority=NotificationPriority(data.get("priority", "normal")),
            property_id=data.get("property_id"),
            invoice_id=data.get("invoice_id"),
            data=data.get("data", {}),
            channels=data.get("channels", {"in_app": True, "email": False}),
            is_read=data.get("is_read", False),
            read_at=datetime.fromisoformat(data["read_at"]) if data.get("read_at") else None,
            created_at=datetime.fromisoformat(data["created_at"]),
        )


class InAppNotificationStore:
    """Notification sink for in-app delivery."""

    def __init__(self, persist_path: Optional[str] = None):
        self._notifications: dict[str, Notification] = {}
        self._lock = threading.RLock()
        self._persist_path = Path(persist_path) if persist_path else None

        if self._persist_path and self._persist_path.exists():
            self._load_from_file()

    def _save_to_file(self) -> None:
        if not self._persist_path:
            return

        data = {
            "notifications": {nid: n.to_dict() for nid, n in self._notifications.items()},
            "saved_at": datetime.utcnow().isoformat(),
        }
        self._persist_path.parent.mkdir(parents=True, exist_ok=True)
        self._persist_path.write_text(json.dumps(data, indent=2))

    def _load_from_file(self) -> None:
        try:
            data = json.loads(self._persist_path.read_text())
            for nid, n_data in data.get("notifications", {}).items():
                self._notifications[nid] = Notification.from_dict(n_data)
        except (json.JSONDecodeError, KeyError, ValueError) as e:
            logger.warning("Could not load notifications from %s: %s", self._persist_path, e)

    def deliver(self, notification: Notification) -> Notification:
        with self._lock:
            self._notifications[notification.notification_id] = notification
            self._save_to_file()
        return notification

    def get(self, notification_id: str) -> Optional[Notification]:
        with self._lock:
            return self._notifications.get(notification_id)

    def list_for_user(self, recipient_id: str, unread_only: bool = False) -> list[Notification]:
        """Notifications for a recipient, newest first."""
        with self._lock:
            found = [
                n for n in self._notifications.values()
                if n.recipient_id == str(recipient_id) and not (unread_only and n.is_read)
            ]
        return sorted(found, key=lambda n: n.created_at, reverse=True)

    def mark_read(self, notification_id: str, recipient_id: str) -> Notification:
        """
        Mark a notification read.

        Raises:
            NotFoundError: If it does not exist or belongs to someone else
        """
        with self._lock:
            notification = self._notifications.get(notification_id)
            if notification is None or notification.recipient_id != str(recipient_id):
                raise NotFoundError(f"Notification {notification_id} not found")
            if not notification.is_read:
                notification.is_read = True
                notification.read_at = datetime.utcnow()
                self._save_to_file()
            return notification

    def unread_count(self, recipient_id: str) -> int:
        return len(self.list_for_user(recipient_id, unread_only=True))


# =============================================================================
# Email
# =============================================================================


class EmailGateway(ABC):
    """Outbound email boundary. Implementations raise on failure."""

    @abstractmethod
    def send(self, to: str, subject: str, body: str, metadata: Optional[dict] = None) -> None:
        """
        Deliver one email.

        Raises:
            Exception: Any delivery failure; the outbox retries the event
        """


class WebhookEmailGateway(EmailGateway):
    """Posts email jobs as JSON to a mail-relay webhook."""

    def __init__(self, url: str, timeout: int = 30, session: Optional[requests.Session] = None):
        self.url = url
        self.timeout = timeout
        self.session = session or requests.Session()

    def send(self, to: str, subject: str, body: str, metadata: Optional[dict] = None) -> None:
        response = self.session.post(
            self.url,
            json={"to": to, "subject": subject, "body": body, "metadata": metadata or {}},
            timeout=self.timeout,
        )
        response.raise_for_status()


# =============================================================================
# Live Connections
# =============================================================================


@dataclass
class Connection:
    connection_id: str
    user_id: str
    send: Callable[[dict], None]
    rooms: set[str] = field(default_factory=set)
    connected_at: datetime = field(default_factory=datetime.utcnow)


class ConnectionRegistry:
    """
    Live connections and the rooms they joined.

    ``send`` callables must not block; the WebSocket route hands messages to
    its event loop through a queue.
    """

    def __init__(self):
        self._connections: dict[str, Connection] = {}
        self._lock = threading.RLock()

    def add_connection(self, user_id: str, send: Callable[[dict], None]) -> str:
        """Register a connection. It starts in no rooms."""
        connection_id = uuid.uuid4().hex
        with self._lock:
            self._connections[connection_id] = Connection(
                connection_id=connection_id, user_id=str(user_id), send=send,
            )
        logger.debug("Connection %s added for user %s", connection_id, user_id)
        return connection_id

    def remove_connection(self, connection_id: str) -> bool:
        with self._lock:
            removed = self._connections.pop(connection_id, None)
        return removed is not None

    def lookup(self, user_id: str) -> list[str]:
        """Connection IDs held by a user."""
        with self._lock:
            return [c.connection_id for c in self._connections.values() if c.user_id == str(user_id)]

    def join(self, connection_id: str, room: str) -> None:
        with self._lock:
            connection = self._connections.get(connection_id)
            if connection is None:
                raise NotFoundError(f"Connection {connection_id} not found")
            connection.rooms.add(room)

    def leave(self, connection_id: str, room: str) -> None:
        with self._lock:
            connection = self._connections.get(connection_id)
            if connection is not None:
                connection.rooms.discard(room)

    def rooms_of(self, connection_id: str) -> set[str]:
        with self._lock:
            connection = self._connections.get(connection_id)
            return set(connection.rooms) if connection else set()

    def emit(self, room: str, event: str, payload: dict) -> int:
        """
        Send an event to every connection in a room.

        Connections whose send fails are dropped. Returns the number of
        connections reached.
        """
        with self._lock:
            targets = [c for c in self._connections.values() if room in c.rooms]

        message = {"event": event, "room": room, "data": payload}
        delivered = 0
        for connection in targets:
            try:
                connection.send(message)
                delivered += 1
            except Exception:
                logger.exception("Dropping connection %s after send failure", connection.connection_id)
                self.remove_connection(connection.connection_id)
        return delivered

    def count(self) -> int:
        with self._lock:
            return len(self._connections)


# =============================================================================
# Outbox
# =============================================================================


@dataclass
class OutboxEvent:
    """A queued delivery."""

    event_id: str
    event_type: str
    payload: dict
    status: OutboxStatus = OutboxStatus.PENDING
    attempts: int = 0
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    next_attempt_at: datetime = field(default_factory=datetime.utcnow)
    last_error: Optional[str] = None
    history_entry_id: Optional[str] = None
    created_at: datetime = field(default_factory=datetime.utcnow)
    sent_at: Optional[datetime] = None

    def to_dict(self) -> dict:
        return {
            "event_id": self.event_id,
            "event_type": self.event_type,
            "payload": self.payload,
            "status": self.status.value,
            "attempts": self.attempts,
            "max_attempts": self.max_attempts,
            "next_attempt_at": self.next_attempt_at.isoformat(),
            "last_error": self.last_error,
            "history_entry_id": self.history_entry_id,
            "created_at": self.created_at.isoformat(),
            "sent_at": self.sent_at.isoformat() if self.sent_at else None,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "OutboxEvent":
        return cls(
            event_id=data["event_id"],
            event_type=data["event_type"],
            payload=data.get("payload", {}),
            status=OutboxStatus(data["status"]),
            attempts=data.get("attempts", 0),
            max_attempts=data.get("max_attempts", DEFAULT_MAX_ATTEMPTS),
            next_attempt_at=datetime.fromisoformat(data["next_attempt_at"]),
            last_error=data.get("last_error"),
            history_entry_id=data.get("history_entry_id"),
            created_at=datetime.fromisoformat(data["created_at"]),
            sent_at=datetime.fromisoformat(data["sent_at"]) if data.get("sent_at") else None,
        )


class NotificationOutbox:
    """Durable queue of pending deliveries."""

    def __init__(
        self,
        persist_path: Optional[str] = None,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        backoff_seconds: float = DEFAULT_BACKOFF_SECONDS,
    ):
        self.max_attempts = max_attempts
        self.backoff_seconds = backoff_seconds
        self._events: dict[str, OutboxEvent] = {}
        self._lock = threading.RLock()
        self._persist_path = Path(persist_path) if persist_path else None

        if self._persist_path and self._persist_path.exists():
            self._load_from_file()

    def _save_to_file(self) -> None:
        if not self._persist_path:
            return

        data = {
            "events": {eid: e.to_dict() for eid, e in self._events.items()},
            "saved_at": datetime.utcnow().isoformat(),
        }
        self._persist_path.parent.mkdir(parents=True, exist_ok=True)
        self._persist_path.write_text(json.dumps(data, indent=2))

    def _load_from_file(self) -> None:
        try:
            data = json.loads(self._persist_path.read_text())
            for eid, e_data in data.get("events", {}).items():
                event = OutboxEvent.from_dict(e_data)
                # A claim does not survive a restart
                if event.status == OutboxStatus.CLAIMED:
                    event.status = OutboxStatus.PENDING
                self._events[eid] = event
        except (json.JSONDecodeError, KeyError, ValueError) as e:
            logger.warning("Could not load outbox from %s: %s", self._persist_path, e)

    def enqueue(
        self,
        event_type: str,
        payload: dict,
        history_entry_id: Optional[str] = None,
    ) -> OutboxEvent:
        event = OutboxEvent(
            event_id=f"EVT-{uuid.uuid4().hex[:12].upper()}",
            event_type=event_type,
            payload=payload,
            max_attempts=self.max_attempts,
            history_entry_id=history_entry_id,
        )
        with self._lock:
            self._events[event.event_id] = event
            self._save_to_file()
        logger.debug("Outbox event %s queued (%s)", event.event_id, event_type)
        return event

    def claim_due(self, now: Optional[datetime] = None, limit: int = 100) -> list[OutboxEvent]:
        """Claim pending or retryable events whose next attempt is due."""
        now = now or datetime.utcnow()
        claimed = []
        with self._lock:
            for event in self._events.values():
                if len(claimed) >= limit:
                    break
                if event.status in (OutboxStatus.PENDING, OutboxStatus.FAILED) and event.next_attempt_at <= now:
                    event.status = OutboxStatus.CLAIMED
                    claimed.append(event)
            if claimed:
                self._save_to_file()
        return claimed

    def mark_sent(self, event: OutboxEvent, now: Optional[datetime] = None) -> None:
        with self._lock:
            event.status = OutboxStatus.SENT
            event.attempts += 1
            event.sent_at = now or datetime.utcnow()
            event.last_error = None
            self._save_to_file()

    def mark_failed(self, event: OutboxEvent, error: str, now: Optional[datetime] = None) -> None:
        """Record a failed attempt and schedule a retry or dead-letter the event."""
        now = now or datetime.utcnow()
        with self._lock:
            event.attempts += 1
            event.last_error = error
            if event.attempts >= event.max_attempts:
                event.status = OutboxStatus.DEAD_LETTER
            else:
                event.status = OutboxStatus.FAILED
                delay = self.backoff_seconds * (2 ** (event.attempts - 1))
                event.next_attempt_at = now + timedelta(seconds=delay)
            self._save_to_file()

        if event.status == OutboxStatus.DEAD_LETTER:
            logger.error(
                "Outbox event %s moved to dead letter after %d attempts. Last error: %s",
                event.event_id, event.attempts, error,
            )
        else:
            logger.warning(
                "Outbox event %s failed (attempt %d/%d), retry at %s: %s",
                event.event_id, event.attempts, event.max_attempts,
                event.next_attempt_at.isoformat(), error,
            )

    def requeue(self, event_id: str) -> OutboxEvent:
        """Return a dead-lettered event to the queue with a fresh attempt budget."""
        with self._lock:
            event = self._events.get(event_id)
            if event is None:
                raise NotFoundError(f"Outbox event {event_id} not found")
            event.status = OutboxStatus.PENDING
            event.attempts = 0
            event.next_attempt_at = datetime.utcnow()
            self._save_to_file()
            return event

    def get(self, event_id: str) -> Optional[OutboxEvent]:
        with self._lock:
            return self._events.get(event_id)

    def list_by_status(self, status: OutboxStatus) -> list[OutboxEvent]:
        with self._lock:
            return [e for e in self._events.values() if e.status == status]

    def list_dead_letters(self) -> list[OutboxEvent]:
        return self.list_by_status(OutboxStatus.DEAD_LETTER)

    def list_for_entry(self, history_entry_id: str) -> list[OutboxEvent]:
        with self._lock:
            return [e for e in self._events.values() if e.history_entry_id == history_entry_id]

    def pending_count(self) -> int:
        with self._lock:
            return sum(
                1 for e in self._events.values()
                if e.status in (OutboxStatus.PENDING, OutboxStatus.FAILED)
            )


# =============================================================================
# Dispatcher
# =============================================================================


class NotificationDispatcher:
    """
    Enqueues notification work and delivers it later.

    Invoice notifications carry only IDs in the outbox; the invoice, property
    and people involved are re-fetched at delivery time so the message
    reflects the stored state.
    """

    def __init__(
        self,
        store: InAppNotificationStore,
        outbox: NotificationOutbox,
        registry: ConnectionRegistry,
        properties: PropertyRepository,
        ledger: InvoiceLedger,
        directory: UserDirectory,
        recorder: Optional[AuditTrailRecorder] = None,
        email_gateway: Optional[EmailGateway] = None,
    ):
        self.store = store
        self.outbox = outbox
        self.registry = registry
        self.properties = properties
        self.ledger = ledger
        self.directory = directory
        self.recorder = recorder
        self.email_gateway = email_gateway
        self._handlers: dict[str, Callable[[OutboxEvent], None]] = {
            EVENT_STATUS_CHANGE: self._deliver_status_change,
            EVENT_INVOICE_GENERATED: self._deliver_invoice_generated,
            EVENT_INVOICE_FAILURE: self._deliver_failure_alert,
            EVENT_EMAIL: self._deliver_email,
        }

    # =========================================================================
    # Enqueue
    # =========================================================================

    def notify_status_change(
        self,
        prop: Property,
        previous_status: Optional[SalesStatus],
        new_status: SalesStatus,
        actor: User,
        history_entry_id: Optional[str] = None,
    ) -> OutboxEvent:
        return self.outbox.enqueue(
            EVENT_STATUS_CHANGE,
            {
                "property_id": prop.property_id,
                "previous_status": previous_status.value if previous_status else None,
                "new_status": new_status.value,
                "changed_by": actor.user_id,
                "changed_by_name": actor.name,
                "changed_at": datetime.utcnow().isoformat(),
            },
            history_entry_id=history_entry_id,
        )

    def notify_invoice_generated(
        self,
        invoice: Invoice,
        prop: Property,
        history_entry_id: Optional[str] = None,
    ) -> OutboxEvent:
        return self.outbox.enqueue(
            EVENT_INVOICE_GENERATED,
            {"invoice_id": invoice.invoice_id, "property_id": prop.property_id},
            history_entry_id=history_entry_id,
        )

    def raise_invoice_failure_alert(
        self,
        prop: Property,
        actor: User,
        error: Exception,
        history_entry_id: Optional[str] = None,
    ) -> OutboxEvent:
        return self.outbox.enqueue(
            EVENT_INVOICE_FAILURE,
            {
                "property_id": prop.property_id,
                "property_title": prop.title,
                "agent_id": actor.user_id,
                "error_message": str(error),
                "timestamp": datetime.utcnow().isoformat(),
            },
            history_entry_id=history_entry_id,
        )

    # =========================================================================
    # Delivery
    # =========================================================================

    def deliver_pending(self, now: Optional[datetime] = None) -> dict[str, int]:
        """
        Deliver every due outbox event.

        Failures are logged and rescheduled; nothing is raised to the caller.

        Returns:
            Counts of sent, retried and dead-lettered events
        """
        now = now or datetime.utcnow()
        stats = {"sent": 0, "retrying": 0, "dead_letter": 0}

        for event in self.outbox.claim_due(now):
            handler = self._handlers.get(event.event_type)
            try:
                if handler is None:
                    raise ValueError(f"No handler for event type {event.event_type!r}")
                handler(event)
            except Exception as e:
                logger.exception("Delivery of outbox event %s failed", event.event_id)
                self.outbox.mark_failed(event, str(e), now=now)
                if event.status == OutboxStatus.DEAD_LETTER:
                    stats["dead_letter"] += 1
                else:
                    stats["retrying"] += 1
            else:
                self.outbox.mark_sent(event, now=now)
                stats["sent"] += 1

        if any(stats.values()):
            logger.info("Notification delivery run: %s", stats)
        return stats

    def _record_receipt(self, event: OutboxEvent, notification: Notification) -> None:
        if self.recorder is None or not event.history_entry_id:
            return
        if self.recorder.get(event.history_entry_id) is None:
            return
        self.recorder.add_notification(event.history_entry_id, notification.receipt())

    def _require_property(self, property_id: str) -> Property:
        prop = self.properties.get(property_id)
        if prop is None:
            raise NotFoundError(f"Property {property_id} not found")
        return prop

    def _deliver_status_change(self, event: OutboxEvent) -> None:
        payload = event.payload
        prop = self._require_property(payload["property_id"])
        previous = SalesStatus.from_string(payload.get("previous_status"))
        new = SalesStatus(payload["new_status"])

        notification = Notification.create(
            recipient_id=prop.owner_id,
            type=NotificationType.STATUS_CHANGE,
            title=f"Property Status Updated: {prop.title}",
            message=(
                f"Your property status has been updated from {display_status(previous)} "
                f"to {display_status(new)}"
            ),
            category=(
                NotificationCategory.SUCCESS if new == SalesStatus.SETTLED else NotificationCategory.INFO
            ),
            property_id=prop.property_id,
            data={
                "previous_status": payload.get("previous_status"),
                "new_status": payload["new_status"],
                "changed_by": payload["changed_by"],
                "timestamp": payload["changed_at"],
            },
            channels={"in_app": True, "email": bool(prop.contact_email and self.email_gateway)},
        )
        self.store.deliver(notification)
        self._record_receipt(event, notification)

        self.registry.emit(seller_room(prop.owner_id), "status-update", {
            "property": prop.to_summary_dict(),
            "previousStatus": payload.get("previous_status"),
            "newStatus": payload["new_status"],
            "notificationId": notification.notification_id,
        })

        # Email goes out as its own event so a mail failure does not repeat the in-app delivery
        if prop.contact_email and self.email_gateway is not None:
            owner = self.directory.get(prop.owner_id)
            self.outbox.enqueue(
                EVENT_EMAIL,
                {
                    "to": prop.contact_email,
                    "subject": notification.title,
                    "body": (
                        f"Hello {owner.name if owner else 'there'},\n\n"
                        f"{notification.message}.\n\n"
                        f"Updated by: {payload.get('changed_by_name') or payload['changed_by']}"
                    ),
                    "metadata": {"property_id": prop.property_id, "type": "status_change"},
                },
                history_entry_id=event.history_entry_id,
            )

    def _deliver_invoice_generated(self, event: OutboxEvent) -> None:
        invoice = self.ledger.get(event.payload["invoice_id"])
        if invoice is None:
            raise NotFoundError(f"Invoice {event.payload['invoice_id']} not found")
        prop = self._require_property(invoice.property_id)
        agent = self.directory.get(invoice.agent_id)
        counterparty = self.directory.get(invoice.counterparty_id)
        if counterparty is None:
            raise NotFoundError(f"User {invoice.counterparty_id} not found")

        invoice_data = {
            "invoice_id": invoice.invoice_id,
            "invoice_number": invoice.invoice_number,
            "category": invoice.category.value,
            "status": invoice.status.value,
            "total_amount": str(invoice.total_amount),
            "amount_due": str(invoice.amount_due),
            "due_date": invoice.due_date.isoformat(),
            "property": {"id": prop.property_id, "title": prop.title, "address": prop.address},
            "agent": agent.contact_snapshot() if agent else {"id": invoice.agent_id},
            "counterparty": {**counterparty.contact_snapshot(), "role": invoice.counterparty_role.value},
            "payment_methods": invoice.payment_methods,
        }

        notification = Notification.create(
            recipient_id=counterparty.user_id,
            type=NotificationType.INVOICE_GENERATED,
            title=f"Invoice {invoice.invoice_number} for {prop.title}",
            message=(
                f"An invoice of {invoice.display_currency}{invoice.total_amount:,.2f} "
                f"is due on {invoice.due_date.date().isoformat()}"
            ),
            category=NotificationCategory.INFO,
            property_id=prop.property_id,
            invoice_id=invoice.invoice_id,
            data=invoice_data,
        )
        self.store.deliver(notification)
        self._record_receipt(event, notification)

        update = {
            "invoiceId": invoice.invoice_id,
            "invoiceNumber": invoice.invoice_number,
            "status": invoice.status.value,
            "amount": str(invoice.total_amount),
            "amountPaid": str(invoice.amount_paid),
            "amountDue": str(invoice.amount_due),
            "property": prop.property_id,
            "updateType": "invoice_generated",
            "timestamp": datetime.utcnow().isoformat(),
        }
        if invoice.seller_id:
            self.registry.emit(seller_room(invoice.seller_id), "invoice-update", update)
        if invoice.buyer_id:
            self.registry.emit(buyer_room(invoice.buyer_id), "invoice-update", update)
        self.registry.emit(agent_room(invoice.agent_id), "invoice-update", update)

    def _deliver_failure_alert(self, event: OutboxEvent) -> None:
        payload = event.payload
        notification = Notification.create(
            recipient_id=ADMIN_RECIPIENT,
            type=NotificationType.SYSTEM_ERROR,
            title="Invoice Generation Failed",
            message=f"Failed to generate invoice for settled property: {payload['property_title']}",
            category=NotificationCategory.URGENT,
            priority=NotificationPriority.HIGH,
            property_id=payload["property_id"],
            data={
                "agent_id": payload["agent_id"],
                "error_message": payload["error_message"],
                "timestamp": payload["timestamp"],
                "history_entry_id": event.history_entry_id,
                "requires_manual_action": True,
            },
        )
        self.store.deliver(notification)
        self._record_receipt(event, notification)
        self.registry.emit(ADMIN_ROOM, "system-alert", notification.to_dict())

    def _deliver_email(self, event: OutboxEvent) -> None:
        if self.email_gateway is None:
            raise RuntimeError("No email gateway configured")
        payload = event.payload
        self.email_gateway.send(
            to=payload["to"],
            subject=payload["subject"],
            body=payload["body"],
            metadata=payload.get("metadata"),
        )
