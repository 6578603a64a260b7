"""
Service Wiring - One Container for the Settlement Collaborators

Builds the repositories, ledger, recorder, dispatcher and engine from a
Config and hands them around as one object. The web app keeps the container
on ``app.state``; the CLI builds one per command.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from core.settlement.directory import UserDirectory
from core.settlement.history import AuditTrailRecorder
from core.settlement.invoice import InvoiceLedger
from core.settlement.notifications import (
    ConnectionRegistry,
    EmailGateway,
    InAppNotificationStore,
    NotificationDispatcher,
    NotificationOutbox,
    WebhookEmailGateway,
)
from core.settlement.payment_record import PaymentRecordRepository
from core.settlement.properties import PropertyRepository
from core.settlement.transition import StatusTransitionEngine
from utils.config import Config


logger = logging.getLogger(__name__)


@dataclass
class SettlementServices:
    """Every collaborator the workflow needs."""

    config: Config
    properties: PropertyRepository
    directory: UserDirectory
    ledger: InvoiceLedger
    recorder: AuditTrailRecorder
    payment_records: PaymentRecordRepository
    store: InAppNotificationStore
    outbox: NotificationOutbox
    registry: ConnectionRegistry
    dispatcher: NotificationDispatcher
    engine: StatusTransitionEngine
    email_gateway: Optional[EmailGateway] = None


def build_services(
    config: Optional[Config] = None,
    email_gateway: Optional[EmailGateway] = None,
) -> SettlementServices:
    """
    Build a fresh container.

    With no DATA_DIR every repository is in-memory only.

    Args:
        config: Configuration (loaded from the environment if omitted)
        email_gateway: Gateway override; defaults to the webhook gateway when
            EMAIL_WEBHOOK_URL is set
    """
    config = config or Config.load()

    if email_gateway is None and config.email_webhook_url:
        email_gateway = WebhookEmailGateway(config.email_webhook_url, timeout=config.request_timeout)

    directory = UserDirectory(config.data_path("users.json"))
    properties = PropertyRepository(config.data_path("properties.json"))
    ledger = InvoiceLedger(directory, config.data_path("invoices.json"))
    recorder = AuditTrailRecorder(config.data_path("status_history.json"))
    payment_records = PaymentRecordRepository(directory, config.data_path("payment_records.json"))
    store = InAppNotificationStore(config.data_path("notifications.json"))
    outbox = NotificationOutbox(
        config.data_path("outbox.json"),
        max_attempts=config.notification_max_attempts,
        backoff_seconds=config.notification_backoff_seconds,
    )
    registry = ConnectionRegistry()
    dispatcher = NotificationDispatcher(
        store=store,
        outbox=outbox,
        registry=registry,
        properties=properties,
        ledger=ledger,
        directory=directory,
        recorder=recorder,
        email_gateway=email_gateway,
    )
    engine = StatusTransitionEngine(
        properties=properties,
        directory=directory,
        ledger=ledger,
        recorder=recorder,
        dispatcher=dispatcher,
        payment_records=payment_records,
        strict_progression=config.strict_progression,
    )

    logger.info(
        "Settlement services ready (data_dir=%s, strict_progression=%s, email=%s)",
        config.data_dir or "memory",
        config.strict_progression,
        "on" if email_gateway else "off",
    )
    return SettlementServices(
        config=config,
        properties=properties,
        directory=directory,
        ledger=ledger,
        recorder=recorder,
        payment_records=payment_records,
        store=store,
        outbox=outbox,
        registry=registry,
        dispatcher=dispatcher,
        engine=engine,
        email_gateway=email_gateway,
    )
