"""
Payment provider contract used by the billing core.
Any concrete client (MercadoPago, a test fake) implements ProviderGateway.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol

APPROVED_PAYMENT_STATUS = "approved"


@dataclass
class AgreementDescriptor:
    """Recurring billing mandate to create on the provider side."""

    reason: str
    payer_email: str
    amount: float
    currency: str
    frequency: int
    frequency_type: str
    trial_days: int
    back_url: str
    external_reference: str | None = None
    notification_url: str | None = None
    status: str = "pending"


@dataclass
class Agreement:
    id: str
    status: str
    checkout_url: str | None = None
    payer_email: str | None = None
    external_reference: str | None = None


@dataclass
class ProviderPayment:
    id: str
    status: str
    amount: float
    currency: str
    agreement_id: str | None = None
    status_detail: str | None = None
    payment_method_id: str | None = None
    payment_type: str | None = None
    paid_at: datetime | None = None
    raw: dict[str, Any] = field(default_factory=dict)

    @property
    def is_approved(self) -> bool:
        return self.status == APPROVED_PAYMENT_STATUS


class ProviderGateway(Protocol):
    async def create_agreement(self, descriptor: AgreementDescriptor) -> Agreement: ...

    async def get_agreement(self, agreement_id: str) -> Agreement: ...

    async def update_agreement(self, agreement_id: str, status: str) -> Agreement: ...

    async def search_agreements(self, status: str) -> list[Agreement]: ...

    async def get_payment(self, payment_id: str) -> ProviderPayment: ...
