"""
Provider webhook reconciliation.

Notifications are only pointers: every handler re-fetches the agreement or payment from the
provider and derives local state from that read. Each notification is stored in the
webhook_events inbox first, so failed processing can be re-driven later.
"""
from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

from sqlalchemy import and_, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from rentdesk.config import settings
from rentdesk.core.exceptions import ConflictError, ReconciliationGap
from rentdesk.core.metrics import DUPLICATE_PAYMENTS, RECONCILIATION_GAPS, WEBHOOK_EVENTS
from rentdesk.db.session import get_session_maker
from rentdesk.models.subscription import ACTIVE_STATUSES, Subscription
from rentdesk.models.subscription_payment import SubscriptionPayment
from rentdesk.models.user import User
from rentdesk.models.webhook_event import WebhookEvent
from rentdesk.services import subscription_state as state
from rentdesk.services.provider_gateway import Agreement, ProviderGateway, ProviderPayment
from rentdesk.services.subscription_service import MAX_WRITE_ATTEMPTS, write_subscription

logger = logging.getLogger(__name__)

AGREEMENT_TOPICS = ("subscription_preapproval",)
PAYMENT_TOPICS = ("subscription_authorized_payment", "payment")

# Outcomes of a single reconciliation
PROCESSED = "processed"
UNCHANGED = "unchanged"
DUPLICATE = "duplicate"
IGNORED = "ignored"

# Events left in "received" longer than this are treated as crashed mid-processing
STUCK_EVENT_AFTER = timedelta(minutes=5)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class WebhookNotification:
    type: str | None
    action: str | None
    resource_id: str | None


def parse_notification(query: Mapping[str, str], body: Any) -> WebhookNotification:
    """
    Build a notification from GET query params and/or a POST JSON body.
    Supports the webhook form (type, data.id) and the legacy IPN form (topic, id).
    """
    body = body if isinstance(body, dict) else {}
    data = body.get("data") if isinstance(body.get("data"), dict) else {}
    topic = query.get("type") or query.get("topic") or body.get("type") or body.get("topic")
    resource_id = query.get("data.id") or data.get("id")
    if not resource_id and query.get("topic"):
        resource_id = query.get("id")
    return WebhookNotification(
        type=topic or None,
        action=body.get("action") or query.get("action") or None,
        resource_id=str(resource_id) if resource_id else None,
    )


async def _subscription_by_agreement(session: AsyncSession, agreement_id: str) -> Subscription | None:
    r = await session.execute(
        select(Subscription)
        .where(Subscription.provider_agreement_id == agreement_id)
        .execution_options(populate_existing=True)
    )
    return r.scalar_one_or_none()


async def reconcile_agreement(session: AsyncSession, gateway: ProviderGateway, agreement_id: str) -> str:
    """
    Overwrite the local subscription status with the provider's agreement status.
    Applying the same remote status twice leaves the second call without writes.
    Raises ReconciliationGap when the agreement is unknown locally.
    """
    remote = await gateway.get_agreement(agreement_id)
    sub = await _subscription_by_agreement(session, agreement_id)
    if sub is None:
        raise ReconciliationGap(
            f"No subscription for provider agreement {agreement_id}",
            kind="unknown_agreement",
            reference=agreement_id,
        )

    async def apply(s: Subscription, user: User) -> str:
        return _apply_agreement_status(s, user, remote)

    outcome = await write_subscription(session, sub.id, apply)
    logger.info(
        "Agreement %s reconciled: subscription_id=%s status=%s (%s)",
        agreement_id,
        sub.id,
        remote.status,
        outcome,
    )
    return outcome


def _apply_agreement_status(sub: Subscription, user: User, remote: Agreement) -> str:
    target = remote.status
    if not state.can_transition(sub.status, target):
        logger.warning(
            "Ignoring agreement %s status %s: subscription_id=%s is %s",
            remote.id,
            target,
            sub.id,
            sub.status,
        )
        return IGNORED
    if not state.is_known_transition(sub.status, target):
        logger.warning(
            "Unrecognised agreement status %s -> %s for subscription_id=%s; storing provider value",
            sub.status,
            target,
            sub.id,
        )

    user_status = state.USER_STATUS_FOR_REMOTE.get(target)
    trial_active = False if target == state.AUTHORIZED else sub.is_trial_active
    if (
        sub.status == target
        and sub.is_trial_active == trial_active
        and (user_status is None or user.subscription_status == user_status)
    ):
        return UNCHANGED

    now = _utcnow()
    sub.status = target
    sub.is_trial_active = trial_active
    sub.updated_at = now
    if target == state.CANCELLED and sub.end_date is None:
        sub.end_date = now
    if user_status is not None:
        user.subscription_status = user_status
    return PROCESSED


async def reconcile_payment(session: AsyncSession, gateway: ProviderGateway, payment_id: str) -> str:
    """
    Record a provider payment in the ledger exactly once and update the subscription's
    last-payment fields. An approved payment moves next billing one period ahead and marks
    the user active. Repeated deliveries of the same payment id return DUPLICATE without writes.
    """
    payment = await gateway.get_payment(payment_id)
    if not payment.agreement_id:
        logger.warning("Payment %s has no agreement id; cannot reconcile", payment_id)
        raise ReconciliationGap(
            f"Payment {payment_id} carries no agreement id",
            kind="payment_without_agreement",
            reference=payment_id,
        )

    for attempt in range(1, MAX_WRITE_ATTEMPTS + 1):
        sub = await _subscription_by_agreement(session, payment.agreement_id)
        if sub is None:
            raise ReconciliationGap(
                f"No subscription for provider agreement {payment.agreement_id} (payment {payment_id})",
                kind="unknown_agreement",
                reference=payment.agreement_id,
            )
        if await _ledger_has(session, payment.id):
            return _duplicate(payment)

        session.add(_ledger_entry(sub, payment))
        try:
            await session.flush()
        except IntegrityError:
            await session.rollback()
            if await _ledger_has(session, payment.id):
                # A parallel delivery inserted the same provider payment id first
                return _duplicate(payment)
            raise

        user = await session.get(User, sub.user_id)
        _apply_payment(sub, user, payment)
        try:
            await session.commit()
        except StaleDataError:
            await session.rollback()
            logger.info("Concurrent update while recording payment %s (attempt %s), retrying", payment.id, attempt)
            continue
        logger.info(
            "Payment %s recorded for subscription_id=%s status=%s amount=%s",
            payment.id,
            sub.id,
            payment.status,
            payment.amount,
        )
        return PROCESSED
    raise ConflictError(f"Payment {payment.id} could not be recorded due to concurrent updates")


async def _ledger_has(session: AsyncSession, payment_id: str) -> bool:
    r = await session.execute(
        select(SubscriptionPayment.id).where(SubscriptionPayment.provider_payment_id == payment_id)
    )
    return r.scalar_one_or_none() is not None


def _duplicate(payment: ProviderPayment) -> str:
    DUPLICATE_PAYMENTS.inc()
    logger.info("Payment %s already recorded; duplicate notification", payment.id)
    return DUPLICATE


def _ledger_entry(sub: Subscription, payment: ProviderPayment) -> SubscriptionPayment:
    return SubscriptionPayment(
        subscription_id=sub.id,
        provider_payment_id=payment.id,
        amount=payment.amount,
        currency=payment.currency or sub.currency,
        status=payment.status,
        status_detail=payment.status_detail,
        payment_method_id=payment.payment_method_id,
        payment_type=payment.payment_type,
        paid_at=payment.paid_at,
        raw=payment.raw,
    )


def _apply_payment(sub: Subscription, user: User | None, payment: ProviderPayment) -> None:
    now = _utcnow()
    sub.last_payment_date = now
    sub.last_payment_status = payment.status
    sub.last_payment_amount = payment.amount
    sub.updated_at = now
    # A trailing charge on a cancelled subscription is recorded but schedules nothing and does not re-activate the user
    if not payment.is_approved or sub.status == state.CANCELLED:
        return
    sub.next_billing_date = state.advance_billing_date(now, sub.billing_frequency, sub.billing_frequency_type)
    if user is None:
        return
    user.subscription_status = state.USER_STATUS_ACTIVE
    user.last_payment_date = now
    user.next_payment_date = sub.next_billing_date


async def process_webhook(
    session: AsyncSession,
    gateway: ProviderGateway,
    topic: str | None,
    resource_id: str | None,
) -> str:
    """Dispatch a notification by topic. Unknown topics and notifications without id are ignored."""
    if topic in AGREEMENT_TOPICS:
        if not resource_id:
            logger.warning("Agreement notification without data.id")
            return IGNORED
        return await reconcile_agreement(session, gateway, resource_id)
    if topic in PAYMENT_TOPICS:
        if not resource_id:
            logger.warning("Payment notification without data.id")
            return IGNORED
        return await reconcile_payment(session, gateway, resource_id)
    logger.info("Unhandled webhook type %s", topic)
    return IGNORED


async def record_webhook(session: AsyncSession, notification: WebhookNotification, payload: dict | None = None) -> WebhookEvent:
    event = WebhookEvent(
        topic=notification.type,
        action=notification.action,
        resource_id=notification.resource_id,
        status="received",
        attempts=0,
        payload=payload,
    )
    session.add(event)
    await session.flush()
    return event


async def process_webhook_event(gateway: ProviderGateway, event_id: int) -> str:
    """
    Process one inbox event in its own session and store the outcome on the event.
    Reconciliation failures are logged, counted and left as "failed" for re-drive; only
    store errors on the inbox row itself propagate.
    """
    async with get_session_maker()() as session:
        event = await session.get(WebhookEvent, event_id)
        if event is None:
            logger.warning("Webhook event %s not found", event_id)
            return IGNORED
        topic, resource_id = event.topic, event.resource_id
        # No transaction stays open across the provider calls below
        await session.commit()
        status = "processed"
        error: str | None = None
        try:
            outcome = await process_webhook(session, gateway, topic, resource_id)
            if outcome == IGNORED:
                status = "ignored"
        except ReconciliationGap as e:
            await session.rollback()
            RECONCILIATION_GAPS.labels(kind=e.kind).inc()
            logger.error("Reconciliation gap (%s) for webhook event %s: %s", e.kind, event_id, e.message)
            outcome, error = e.kind, e.message
            # A payment with no agreement will never match; unknown agreements may appear once creation commits
            status = "ignored" if e.kind == "payment_without_agreement" else "failed"
        except Exception as e:
            await session.rollback()
            logger.exception("Webhook event %s (%s %s) failed: %s", event_id, topic, resource_id, e)
            outcome, error, status = "failed", str(e), "failed"

        event = await session.get(WebhookEvent, event_id, populate_existing=True)
        event.attempts += 1
        event.status = status
        event.last_error = error[:1000] if error else None
        event.processed_at = _utcnow()
        await session.commit()
    WEBHOOK_EVENTS.labels(type=topic or "unknown", outcome=status).inc()
    return outcome


async def handle_webhook(gateway: ProviderGateway, notification: WebhookNotification, payload: dict | None = None) -> str:
    """
    Entry point for the provider-facing endpoint: store the notification, then reconcile it.
    Never raises, so the endpoint can always acknowledge the delivery.
    """
    logger.info(
        "Webhook received type=%s action=%s id=%s",
        notification.type,
        notification.action,
        notification.resource_id,
    )
    try:
        async with get_session_maker()() as session:
            event = await record_webhook(session, notification, payload)
            await session.commit()
            event_id = event.id
    except Exception as e:
        logger.exception("Could not store webhook notification %s: %s", notification, e)
        WEBHOOK_EVENTS.labels(type=notification.type or "unknown", outcome="failed").inc()
        return "failed"
    try:
        return await process_webhook_event(gateway, event_id)
    except Exception as e:
        # Bookkeeping on the inbox row failed; the event stays "received" and the stuck-event re-drive retries it
        logger.exception("Webhook event %s could not be processed: %s", event_id, e)
        WEBHOOK_EVENTS.labels(type=notification.type or "unknown", outcome="failed").inc()
        return "failed"


async def redrive_failed_webhooks(gateway: ProviderGateway, max_attempts: int | None = None) -> int:
    """Re-process failed (and stuck) inbox events below the attempt cap. Returns how many were retried."""
    max_attempts = max_attempts if max_attempts is not None else settings.webhook_max_attempts
    stuck_before = _utcnow() - STUCK_EVENT_AFTER
    async with get_session_maker()() as session:
        r = await session.execute(
            select(WebhookEvent.id)
            .where(
                WebhookEvent.attempts < max_attempts,
                or_(
                    WebhookEvent.status == "failed",
                    and_(WebhookEvent.status == "received", WebhookEvent.received_at < stuck_before),
                ),
            )
            .order_by(WebhookEvent.received_at)
        )
        event_ids = [row[0] for row in r.all()]
    for event_id in event_ids:
        try:
            await process_webhook_event(gateway, event_id)
        except Exception as e:
            logger.exception("Re-drive of webhook event %s failed: %s", event_id, e)
    if event_ids:
        logger.info("Re-drove %s webhook events", len(event_ids))
    return len(event_ids)


async def find_orphaned_agreements(session: AsyncSession, gateway: ProviderGateway) -> list[Agreement]:
    """
    Remote agreements in the active set with no local subscription (creation succeeded at the
    provider but the local write failed). Reported for operator follow-up; never rolled back.
    """
    remote: list[Agreement] = []
    for status in ACTIVE_STATUSES:
        remote.extend(await gateway.search_agreements(status))
    if not remote:
        return []
    r = await session.execute(
        select(Subscription.provider_agreement_id).where(
            Subscription.provider_agreement_id.in_([a.id for a in remote])
        )
    )
    known = {row[0] for row in r.all()}
    orphans = [a for a in remote if a.id not in known]
    for a in orphans:
        RECONCILIATION_GAPS.labels(kind="orphaned_agreement").inc()
        logger.error(
            "Orphaned provider agreement id=%s status=%s payer=%s ref=%s has no local subscription",
            a.id,
            a.status,
            a.payer_email,
            a.external_reference,
        )
    return orphans
