"""Request/response bodies for the subscription API."""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field


class CreateSubscriptionRequest(BaseModel):
    email: str = Field(..., description="Payer email used for the provider checkout")
    plan: str | None = None
    amount: float | None = Field(default=None, gt=0)
    currency: str | None = Field(default=None, min_length=3, max_length=8)


class SubscriptionPaymentOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    provider_payment_id: str
    amount: float
    currency: str
    status: str
    status_detail: str | None = None
    payment_method_id: str | None = None
    payment_type: str | None = None
    paid_at: datetime | None = None
    created_at: datetime


class SubscriptionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    user_id: int
    provider_agreement_id: str | None = None
    plan: str
    amount: float
    currency: str
    billing_frequency: int
    billing_frequency_type: str
    status: str
    start_date: datetime
    is_trial_active: bool
    trial_end_date: datetime | None = None
    next_billing_date: datetime | None = None
    last_payment_date: datetime | None = None
    last_payment_status: str | None = None
    last_payment_amount: float | None = None
    end_date: datetime | None = None


class CreateSubscriptionResponse(BaseModel):
    success: bool = True
    subscription: SubscriptionOut
    init_point: str | None = None


class SubscriptionResponse(BaseModel):
    success: bool = True
    subscription: SubscriptionOut
    payments: list[SubscriptionPaymentOut] = []


class CancelSubscriptionResponse(BaseModel):
    success: bool = True
    message: str = "Subscription cancelled successfully"
    subscription: SubscriptionOut
