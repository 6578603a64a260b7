"""
Settlement Module - Sales Status Workflow and Settlement Invoicing

An agent moves a property through contract-exchanged, unconditional and
settled. Settling issues the seller commission invoice (and, when asked,
the buyer deposit and platform commission invoices) exactly once per
property and counterparty, records an audit entry for every change, and
notifies the people involved after the response.

Principles:
1. Status truth is never held hostage to billing failures
2. One active invoice per (property, counterparty, category)
3. Amounts come from policy rates, not from the caller
4. Every change leaves a durable, tamper-evident record
"""

from core.settlement.errors import (
    SettlementError,
    FieldError,
    ValidationError,
    AuthorizationError,
    NotFoundError,
    ConflictError,
    DuplicateInvoiceError,
    InvoiceGenerationError,
)
from core.settlement.schema import (
    SalesStatus,
    ListingStatus,
    AgentRole,
    ChangeSource,
    AgentAssignment,
    Property,
    SettlementDetails,
    CANONICAL_PROGRESSION,
    is_canonical_progression,
)
from core.settlement.properties import PropertyRepository
from core.settlement.directory import User, UserRole, UserDirectory
from core.settlement.commission import (
    InvoiceCategory,
    CommissionBreakdown,
    calculate_commission,
    SETTLEMENT_COMMISSION_RATE,
    PLATFORM_COMMISSION_RATE,
    BUYER_PAYMENT_RATE,
    GST_RATE,
)
from core.settlement.invoice import (
    Invoice,
    InvoiceStatus,
    CounterpartyRole,
    InvoiceResult,
    InvoiceLedger,
    LineItem,
    Payment,
    make_invoice_key,
)
from core.settlement.payment_record import (
    PaymentRecord,
    PaymentRecordStatus,
    PaymentRecordRepository,
)
from core.settlement.history import (
    ProcessingStatus,
    StepState,
    InvoiceSlot,
    RequestMetadata,
    StatusChange,
    StatusHistoryEntry,
    AuditTrailRecorder,
)
from core.settlement.validation import (
    TransitionValidationResult,
    validate_transition_request,
    authorize_transition,
)
from core.settlement.notifications import (
    Notification,
    NotificationType,
    InAppNotificationStore,
    EmailGateway,
    WebhookEmailGateway,
    ConnectionRegistry,
    OutboxEvent,
    OutboxStatus,
    NotificationOutbox,
    NotificationDispatcher,
)
from core.settlement.transition import (
    TransitionRequest,
    TransitionResult,
    StatusTransitionEngine,
)
from core.settlement.services import (
    SettlementServices,
    build_services,
)

__all__ = [
    # Errors
    "SettlementError",
    "FieldError",
    "ValidationError",
    "AuthorizationError",
    "NotFoundError",
    "ConflictError",
    "DuplicateInvoiceError",
    "InvoiceGenerationError",
    # Property
    "SalesStatus",
    "ListingStatus",
    "AgentRole",
    "ChangeSource",
    "AgentAssignment",
    "Property",
    "SettlementDetails",
    "CANONICAL_PROGRESSION",
    "is_canonical_progression",
    "PropertyRepository",
    # Users
    "User",
    "UserRole",
    "UserDirectory",
    # Commission
    "InvoiceCategory",
    "CommissionBreakdown",
    "calculate_commission",
    "SETTLEMENT_COMMISSION_RATE",
    "PLATFORM_COMMISSION_RATE",
    "BUYER_PAYMENT_RATE",
    "GST_RATE",
    # Invoices
    "Invoice",
    "InvoiceStatus",
    "CounterpartyRole",
    "InvoiceResult",
    "InvoiceLedger",
    "LineItem",
    "Payment",
    "make_invoice_key",
    "PaymentRecord",
    "PaymentRecordStatus",
    "PaymentRecordRepository",
    # History
    "ProcessingStatus",
    "StepState",
    "InvoiceSlot",
    "RequestMetadata",
    "StatusChange",
    "StatusHistoryEntry",
    "AuditTrailRecorder",
    # Validation
    "TransitionValidationResult",
    "validate_transition_request",
    "authorize_transition",
    # Notifications
    "Notification",
    "NotificationType",
    "InAppNotificationStore",
    "EmailGateway",
    "WebhookEmailGateway",
    "ConnectionRegistry",
    "OutboxEvent",
    "OutboxStatus",
    "NotificationOutbox",
    "NotificationDispatcher",
    # Engine
    "TransitionRequest",
    "TransitionResult",
    "StatusTransitionEngine",
    # Wiring
    "SettlementServices",
    "build_services",
]
