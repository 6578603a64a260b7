"""
Settlement Engine - Core Business Logic

This module provides the property sales-status workflow:
1. Validation & Authorization (hard rejection before any write)
2. Status Transition (property update, soft progression rule)
3. Audit Trail (hash-linked history entries with processing state)
4. Invoice Ledger (idempotent per property, counterparty and category)
5. Commission Calculation (policy rates, GST, half-up rounding)
6. Notification Fan-Out (outbox with retry and dead letter)
"""

from .settlement import (
    SalesStatus,
    Property,
    InvoiceCategory,
    calculate_commission,
    InvoiceLedger,
    AuditTrailRecorder,
    StatusTransitionEngine,
    TransitionRequest,
    TransitionResult,
    NotificationDispatcher,
    SettlementServices,
    build_services,
)

__all__ = [
    "SalesStatus",
    "Property",
    "InvoiceCategory",
    "calculate_commission",
    "InvoiceLedger",
    "AuditTrailRecorder",
    "StatusTransitionEngine",
    "TransitionRequest",
    "TransitionResult",
    "NotificationDispatcher",
    "SettlementServices",
    "build_services",
]
