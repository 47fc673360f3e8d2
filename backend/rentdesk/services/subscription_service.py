"""Subscription lifecycle: create and cancel provider agreements, keep the user status projection in sync."""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta, timezone
from typing import TypeVar

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload
from sqlalchemy.orm.exc import StaleDataError

from rentdesk.config import settings
from rentdesk.core.exceptions import ConflictError, NotFoundError, PersistenceError, ValidationError
from rentdesk.core.metrics import RECONCILIATION_GAPS
from rentdesk.models.subscription import ACTIVE_STATUSES, Subscription
from rentdesk.models.subscription_payment import SubscriptionPayment
from rentdesk.models.user import User
from rentdesk.services.provider_gateway import AgreementDescriptor, ProviderGateway
from rentdesk.services import subscription_state as state

logger = logging.getLogger(__name__)

T = TypeVar("T")

MAX_WRITE_ATTEMPTS = 3
RECENT_PAYMENTS_LIMIT = 5


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


async def get_active_subscription(session: AsyncSession, user_id: int) -> Subscription | None:
    r = await session.execute(
        select(Subscription)
        .where(Subscription.user_id == user_id, Subscription.status.in_(ACTIVE_STATUSES))
        .order_by(Subscription.created_at.desc())
        .limit(1)
    )
    return r.scalar_one_or_none()


async def write_subscription(
    session: AsyncSession,
    subscription_id: int,
    apply: Callable[[Subscription, User], Awaitable[T]],
) -> T:
    """
    Re-read the subscription and its owner, apply a transition, commit.
    The version column makes a concurrent writer fail with StaleDataError; the whole
    read-apply-write is then retried on fresh rows.
    """
    for attempt in range(1, MAX_WRITE_ATTEMPTS + 1):
        sub = await session.get(Subscription, subscription_id, populate_existing=True)
        if sub is None:
            raise NotFoundError(f"Subscription {subscription_id} not found")
        user = await session.get(User, sub.user_id, populate_existing=True)
        if user is None:
            raise NotFoundError(f"User {sub.user_id} not found")
        result = await apply(sub, user)
        try:
            await session.commit()
            return result
        except StaleDataError:
            await session.rollback()
            logger.info(
                "Concurrent update on subscription_id=%s (attempt %s/%s), retrying",
                subscription_id,
                attempt,
                MAX_WRITE_ATTEMPTS,
            )
    raise ConflictError(f"Subscription {subscription_id} is being updated concurrently, try again")


async def create_subscription(
    session: AsyncSession,
    gateway: ProviderGateway,
    user_id: int,
    email: str,
    plan: str | None = None,
    amount: float | None = None,
    currency: str | None = None,
) -> tuple[Subscription, str | None]:
    """
    Create a recurring agreement with the provider, then persist it as a pending subscription
    in trial and mark the user as trial. Returns (subscription, checkout_url).
    Nothing is written locally when the provider call fails.
    """
    if not email or not email.strip():
        raise ValidationError("Email is required")
    if amount is not None and amount <= 0:
        raise ValidationError("Amount must be positive")
    plan = plan or settings.subscription_default_plan
    amount = amount if amount is not None else settings.subscription_default_amount
    currency = (currency or settings.subscription_default_currency).upper()

    if await session.get(User, user_id) is None:
        raise NotFoundError("User not found")
    if await get_active_subscription(session, user_id) is not None:
        raise ConflictError("User already has an active subscription")
    # No transaction stays open across the provider call
    await session.rollback()

    start_date = _utcnow()
    trial_end_date = start_date + timedelta(days=settings.subscription_trial_days)
    descriptor = AgreementDescriptor(
        reason=f"{settings.subscription_reason_prefix} - Plan {plan}",
        payer_email=email.strip(),
        amount=amount,
        currency=currency,
        frequency=settings.subscription_billing_frequency,
        frequency_type=settings.subscription_billing_frequency_type,
        trial_days=settings.subscription_trial_days,
        back_url=settings.mp_success_url,
        external_reference=f"user:{user_id}",
        notification_url=settings.mp_webhook_url or None,
    )
    logger.info("Creating provider agreement for user_id=%s plan=%s amount=%s %s", user_id, plan, amount, currency)
    agreement = await gateway.create_agreement(descriptor)
    logger.info("Provider agreement created id=%s status=%s", agreement.id, agreement.status)

    sub = Subscription(
        user_id=user_id,
        provider_agreement_id=agreement.id,
        plan=plan,
        amount=amount,
        currency=currency,
        billing_frequency=settings.subscription_billing_frequency,
        billing_frequency_type=settings.subscription_billing_frequency_type,
        status=state.PENDING,
        start_date=start_date,
        is_trial_active=True,
        trial_end_date=trial_end_date,
        next_billing_date=trial_end_date,
    )
    try:
        user = await session.get(User, user_id, populate_existing=True)
        if user is None:
            raise NotFoundError("User not found")
        session.add(sub)
        user.subscription_status = state.USER_STATUS_TRIAL
        user.subscription_plan = plan
        user.subscription_start_date = start_date
        user.trial_ends_at = trial_end_date
        user.next_payment_date = trial_end_date
        await session.commit()
    except NotFoundError as e:
        _report_orphaned_agreement(agreement.id, user_id, e)
        raise PersistenceError("User removed during subscription creation", agreement_id=agreement.id) from e
    except IntegrityError as e:
        await session.rollback()
        _report_orphaned_agreement(agreement.id, user_id, e)
        raise ConflictError("User already has an active subscription") from e
    except SQLAlchemyError as e:
        await session.rollback()
        _report_orphaned_agreement(agreement.id, user_id, e)
        raise PersistenceError("Subscription could not be saved", agreement_id=agreement.id) from e
    logger.info("Subscription created subscription_id=%s user_id=%s", sub.id, user_id)
    return sub, agreement.checkout_url


def _report_orphaned_agreement(agreement_id: str, user_id: int, error: Exception) -> None:
    RECONCILIATION_GAPS.labels(kind="orphaned_agreement").inc()
    logger.error(
        "Orphaned provider agreement id=%s for user_id=%s: local write failed (%s); needs operator follow-up",
        agreement_id,
        user_id,
        error,
    )


async def cancel_subscription(
    session: AsyncSession,
    gateway: ProviderGateway,
    user_id: int,
) -> Subscription:
    """
    Cancel the user's active subscription: provider first, local state only after the provider
    confirmed. A provider failure (including timeout) propagates and leaves local state untouched.
    """
    sub = await get_active_subscription(session, user_id)
    if sub is None:
        raise NotFoundError("No active subscription found")
    subscription_id, agreement_id = sub.id, sub.provider_agreement_id
    await session.rollback()
    if agreement_id:
        await gateway.update_agreement(agreement_id, state.CANCELLED)
        logger.info("Provider agreement %s cancelled for user_id=%s", agreement_id, user_id)

    async def apply(s: Subscription, user: User) -> Subscription:
        now = _utcnow()
        s.status = state.CANCELLED
        s.is_trial_active = False
        if s.end_date is None:
            s.end_date = now
        s.updated_at = now
        user.subscription_status = state.CANCELLED
        return s

    cancelled = await write_subscription(session, subscription_id, apply)
    logger.info("Subscription cancelled subscription_id=%s user_id=%s", subscription_id, user_id)
    return cancelled


async def get_user_subscription(
    session: AsyncSession, user_id: int
) -> tuple[Subscription, list[SubscriptionPayment]]:
    """Most recent active subscription with its latest payments. Raises NotFoundError if none."""
    r = await session.execute(
        select(Subscription)
        .options(selectinload(Subscription.payments))
        .execution_options(populate_existing=True)
        .where(Subscription.user_id == user_id, Subscription.status.in_(ACTIVE_STATUSES))
        .order_by(Subscription.created_at.desc())
        .limit(1)
    )
    sub = r.scalar_one_or_none()
    if sub is None:
        raise NotFoundError("No subscription found")
    return sub, list(sub.payments[:RECENT_PAYMENTS_LIMIT])
