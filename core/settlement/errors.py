"""
Settlement Errors - Exception Taxonomy for the Status Workflow

Each class maps onto one HTTP outcome in web/app.py:
- ValidationError       -> 400 (rejected before any write)
- AuthorizationError    -> 403 (rejected before any write)
- NotFoundError         -> 404
- ConflictError         -> 409
- InvoiceGenerationError is raised by the ledger and absorbed by the
  transition engine; it never reaches the caller of a status change.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional


@dataclass(frozen=True)
class FieldError:
    """A single field-level validation problem."""

    field: str
    message: str
    value: Any = None

    def to_dict(self) -> dict:
        """Convert to dictionary for API responses."""
        return {
            "field": self.field,
            "message": self.message,
            "value": self.value,
        }


class SettlementError(Exception):
    """Base exception for the settlement workflow."""

    status_code: int = 500

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ValidationError(SettlementError):
    """Raised when a request is malformed or disallowed."""

    status_code = 400

    def __init__(
        self,
        message: str = "Validation failed",
        errors: Optional[list[FieldError]] = None,
        details: Optional[dict] = None,
    ):
        super().__init__(message, details)
        self.errors = list(errors or [])

    @classmethod
    def for_field(cls, field: str, message: str, value: Any = None) -> "ValidationError":
        """Shortcut for a single failing field."""
        return cls(message, [FieldError(field=field, message=message, value=value)])


class AuthorizationError(SettlementError):
    """Raised when the caller may not perform the operation."""

    status_code = 403


class NotFoundError(SettlementError):
    """Raised when a referenced entity does not exist."""

    status_code = 404


class ConflictError(SettlementError):
    """Raised when an operation collides with existing state."""

    status_code = 409


class DuplicateInvoiceError(ConflictError):
    """Raised by the ledger's uniqueness index for an occupied invoice key."""

    def __init__(self, key: tuple, existing_invoice_id: str):
        super().__init__(
            "An active invoice already exists for this property and counterparty",
            {"key": list(key), "existing_invoice_id": existing_invoice_id},
        )
        self.key = key
        self.existing_invoice_id = existing_invoice_id


class InvoiceGenerationError(SettlementError):
    """Raised when an invoice cannot be produced (billing-side failure)."""

    status_code = 500
