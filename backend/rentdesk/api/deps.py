"""FastAPI dependencies: current user from the Bearer token, payment provider gateway."""

from typing import Annotated

from fastapi import Depends, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncSession

from rentdesk.core.auth import AuthError, user_id_from_token
from rentdesk.db.session import get_db
from rentdesk.models.user import User
from rentdesk.services.mercadopago_client import MercadoPagoGateway
from rentdesk.services.provider_gateway import ProviderGateway


async def get_current_user(
    request: Request,
    session: Annotated[AsyncSession, Depends(get_db)],
) -> User:
    scheme, _, token = request.headers.get("Authorization", "").partition(" ")
    if scheme != "Bearer" or not token.strip():
        raise HTTPException(status_code=401, detail="Not authenticated")
    try:
        user_id = user_id_from_token(token.strip())
    except AuthError as e:
        raise HTTPException(status_code=401, detail=str(e))
    user = await session.get(User, user_id)
    if user is None:
        raise HTTPException(status_code=401, detail="User not found")
    return user


def get_gateway(request: Request) -> ProviderGateway:
    """Gateway stored on app.state at startup; tests replace it with a fake."""
    gateway = getattr(request.app.state, "gateway", None)
    if gateway is None:
        gateway = MercadoPagoGateway()
        request.app.state.gateway = gateway
    return gateway
