"""Subscriptions: create, get-mine, cancel, and the payment provider webhook."""

import logging
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncSession

from rentdesk.api.deps import get_current_user, get_gateway
from rentdesk.core.exceptions import BillingError
from rentdesk.core.rate_limit import limiter
from rentdesk.db.session import get_db
from rentdesk.models.user import User
from rentdesk.schemas.subscription import (
    CancelSubscriptionResponse,
    CreateSubscriptionRequest,
    CreateSubscriptionResponse,
    SubscriptionOut,
    SubscriptionPaymentOut,
    SubscriptionResponse,
)
from rentdesk.services import subscription_service, webhook_reconciler
from rentdesk.services.provider_gateway import ProviderGateway

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/subscriptions", tags=["subscriptions"])


def _http_error(e: BillingError) -> HTTPException:
    return HTTPException(status_code=e.status_code, detail=e.message)


@router.post(
    "/create",
    status_code=201,
    response_model=CreateSubscriptionResponse,
    summary="Create recurring subscription",
    responses={
        401: {"description": "Not authenticated"},
        409: {"description": "Active subscription exists"},
        502: {"description": "Payment provider error"},
    },
)
async def create_subscription(
    session: Annotated[AsyncSession, Depends(get_db)],
    user: Annotated[User, Depends(get_current_user)],
    gateway: Annotated[ProviderGateway, Depends(get_gateway)],
    body: CreateSubscriptionRequest,
) -> CreateSubscriptionResponse:
    """Create a provider agreement with a free trial. Frontend redirects the user to init_point."""
    try:
        sub, init_point = await subscription_service.create_subscription(
            session,
            gateway,
            user.id,
            body.email,
            plan=body.plan,
            amount=body.amount,
            currency=body.currency,
        )
    except BillingError as e:
        raise _http_error(e)
    return CreateSubscriptionResponse(subscription=SubscriptionOut.model_validate(sub), init_point=init_point)


@router.get(
    "/me",
    response_model=SubscriptionResponse,
    summary="Get current subscription",
    responses={401: {"description": "Not authenticated"}, 404: {"description": "No subscription"}},
)
async def get_my_subscription(
    session: Annotated[AsyncSession, Depends(get_db)],
    user: Annotated[User, Depends(get_current_user)],
) -> SubscriptionResponse:
    try:
        sub, payments = await subscription_service.get_user_subscription(session, user.id)
    except BillingError as e:
        raise _http_error(e)
    return SubscriptionResponse(
        subscription=SubscriptionOut.model_validate(sub),
        payments=[SubscriptionPaymentOut.model_validate(p) for p in payments],
    )


@router.post(
    "/cancel",
    response_model=CancelSubscriptionResponse,
    summary="Cancel current subscription",
    responses={
        401: {"description": "Not authenticated"},
        404: {"description": "No active subscription"},
        502: {"description": "Payment provider error; subscription left unchanged"},
    },
)
async def cancel_my_subscription(
    session: Annotated[AsyncSession, Depends(get_db)],
    user: Annotated[User, Depends(get_current_user)],
    gateway: Annotated[ProviderGateway, Depends(get_gateway)],
) -> CancelSubscriptionResponse:
    try:
        sub = await subscription_service.cancel_subscription(session, gateway, user.id)
    except BillingError as e:
        raise _http_error(e)
    return CancelSubscriptionResponse(subscription=SubscriptionOut.model_validate(sub))


@router.api_route("/webhook", methods=["GET", "POST"], include_in_schema=False)
@limiter.exempt
async def provider_webhook(
    request: Request,
    gateway: Annotated[ProviderGateway, Depends(get_gateway)],
):
    """Provider notifications (query params and/or JSON body). Always acknowledged with 200."""
    body = None
    if request.method == "POST":
        try:
            body = await request.json()
        except Exception:
            logger.warning("Webhook body is not valid JSON; using query params only")
    try:
        notification = webhook_reconciler.parse_notification(request.query_params, body)
        payload = {"query": dict(request.query_params), "body": body}
        outcome = await webhook_reconciler.handle_webhook(gateway, notification, payload)
        logger.debug("Webhook %s %s -> %s", notification.type, notification.resource_id, outcome)
    except Exception as e:
        # Always 2xx: the provider re-sends on any other status
        logger.exception("Webhook handling failed: %s", e)
    return {"received": True}
