"""Billing error kinds. Routes map them to HTTP status codes; the webhook path only logs them."""

from __future__ import annotations


class BillingError(Exception):
    status_code = 500

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class ValidationError(BillingError):
    """Missing or invalid input; nothing was written."""

    status_code = 400


class ConflictError(BillingError):
    """User already has a subscription in the active set."""

    status_code = 409


class NotFoundError(BillingError):
    status_code = 404


class ProviderError(BillingError):
    """Payment provider call failed or timed out; no local state was changed."""

    status_code = 502

    def __init__(self, message: str, operation: str | None = None, status: int | None = None):
        super().__init__(message)
        self.operation = operation
        self.status = status


class PersistenceError(BillingError):
    """Local write failed after the provider accepted the request (remote agreement is orphaned)."""

    status_code = 500

    def __init__(self, message: str, agreement_id: str | None = None):
        super().__init__(message)
        self.agreement_id = agreement_id


class ReconciliationGap(BillingError):
    """A notification points at an agreement or payment that cannot be matched locally."""

    def __init__(self, message: str, kind: str, reference: str | None = None):
        super().__init__(message)
        self.kind = kind
        self.reference = reference
