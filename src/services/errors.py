"""
Billing Exceptions

Structured error taxonomy for the webhook processor and the credit ledger.
Each error carries a machine-readable ``code`` and a ``details`` dict so
routes can turn it into a JSON response without string matching.
"""
from __future__ import annotations

from typing import Any, Optional


class BillingError(Exception):
    """Base exception for all billing errors."""

    code = "BILLING_ERROR"
    http_status = 500

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict:
        return {"error": self.code, "message": self.message, "details": self.details}


class SignatureInvalid(BillingError):
    """Webhook signature missing, malformed, stale or wrong. Rejected with 400."""

    code = "SIGNATURE_INVALID"
    http_status = 400


class DuplicateEvent(BillingError):
    """The provider event id was already processed. Not a failure."""

    code = "DUPLICATE_EVENT"
    http_status = 200

    def __init__(self, provider_event_id: str):
        super().__init__(
            f"Event {provider_event_id} already processed",
            {"provider_event_id": provider_event_id},
        )
        self.provider_event_id = provider_event_id


class RecordNotFound(BillingError):
    """No PaymentRecord for the referenced subscription/payment. Expected gap."""

    code = "RECORD_NOT_FOUND"
    http_status = 200

    def __init__(self, record_id: str):
        super().__init__(f"No payment record for {record_id}", {"record_id": record_id})
        self.record_id = record_id


class AccountNotFound(BillingError):
    code = "ACCOUNT_NOT_FOUND"
    http_status = 404

    def __init__(self, user_id: str):
        super().__init__(f"No credit account for user {user_id}", {"user_id": user_id})
        self.user_id = user_id


class InsufficientBalance(BillingError):
    """Raised by spend/debit operations when available credits fall short."""

    code = "INSUFFICIENT_BALANCE"
    http_status = 402

    def __init__(self, user_id: str, required: int, available: int):
        super().__init__(
            f"Insufficient credits. Required: {required}, available: {available}",
            {
                "user_id": user_id,
                "required": required,
                "available": available,
                "shortfall": max(0, required - available),
            },
        )
        self.required = required
        self.available = available


class PlanNotFound(BillingError):
    """Price id has no plan in the catalog. Configuration error."""

    code = "PLAN_NOT_FOUND"
    http_status = 500

    def __init__(self, price_id: Optional[str]):
        super().__init__(f"No plan configured for price {price_id!r}", {"price_id": price_id})
        self.price_id = price_id


class StorageFailure(BillingError):
    """Database error. Propagated so the provider retries the delivery."""

    code = "STORAGE_FAILURE"
    http_status = 500


class ProviderError(BillingError):
    """Fetching a resource from Stripe failed. Propagated so the provider retries."""

    code = "PROVIDER_ERROR"
    http_status = 500
