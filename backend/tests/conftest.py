"""Pytest configuration and shared fixtures: SQLite store per test, fake payment provider, API client."""

import os
from datetime import datetime, timezone

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

os.environ.setdefault("SECRET_KEY", "test-secret-key")

from rentdesk.core.auth import create_access_token
from rentdesk.core.exceptions import ProviderError
from rentdesk.db.session import close_engine, get_session_maker, init_db, init_engine
from rentdesk.main import app
from rentdesk.models.user import User
from rentdesk.services.provider_gateway import Agreement, AgreementDescriptor, ProviderPayment


class FakeGateway:
    """In-memory ProviderGateway. Set fail_<operation> to make that call raise ProviderError."""

    def __init__(self):
        self.agreements: dict[str, Agreement] = {}
        self.payments: dict[str, ProviderPayment] = {}
        self.descriptors: list[AgreementDescriptor] = []
        self.calls: list[tuple[str, str]] = []
        self.fail_create = False
        self.fail_update = False
        self.fail_get = False
        self._seq = 0

    async def create_agreement(self, descriptor: AgreementDescriptor) -> Agreement:
        self.calls.append(("create_agreement", descriptor.payer_email))
        if self.fail_create:
            raise ProviderError("Payment provider timed out (create_agreement)", operation="create_agreement")
        self._seq += 1
        agreement = Agreement(
            id=f"AGR-{self._seq}",
            status=descriptor.status,
            checkout_url=f"https://checkout.example/AGR-{self._seq}",
            payer_email=descriptor.payer_email,
            external_reference=descriptor.external_reference,
        )
        self.descriptors.append(descriptor)
        self.agreements[agreement.id] = agreement
        return agreement

    async def get_agreement(self, agreement_id: str) -> Agreement:
        self.calls.append(("get_agreement", agreement_id))
        if self.fail_get:
            raise ProviderError("Payment provider unreachable (get_agreement)", operation="get_agreement")
        return self.agreements[agreement_id]

    async def update_agreement(self, agreement_id: str, status: str) -> Agreement:
        self.calls.append(("update_agreement", agreement_id))
        if self.fail_update:
            raise ProviderError("Payment provider timed out (update_agreement)", operation="update_agreement")
        self.agreements[agreement_id].status = status
        return self.agreements[agreement_id]

    async def search_agreements(self, status: str) -> list[Agreement]:
        self.calls.append(("search_agreements", status))
        return [a for a in self.agreements.values() if a.status == status]

    async def get_payment(self, payment_id: str) -> ProviderPayment:
        self.calls.append(("get_payment", payment_id))
        if self.fail_get:
            raise ProviderError("Payment provider unreachable (get_payment)", operation="get_payment")
        return self.payments[payment_id]

    def set_agreement_status(self, agreement_id: str, status: str) -> None:
        self.agreements[agreement_id].status = status

    def add_payment(
        self,
        payment_id: str,
        agreement_id: str | None,
        status: str = "approved",
        amount: float = 289.0,
        currency: str = "USD",
    ) -> ProviderPayment:
        raw = {"id": payment_id, "status": status, "transaction_amount": amount, "currency_id": currency}
        if agreement_id:
            raw["metadata"] = {"preapproval_id": agreement_id}
        payment = ProviderPayment(
            id=payment_id,
            status=status,
            amount=amount,
            currency=currency,
            agreement_id=agreement_id,
            status_detail="accredited" if status == "approved" else None,
            payment_method_id="visa",
            payment_type="credit_card",
            paid_at=datetime.now(timezone.utc) if status == "approved" else None,
            raw=raw,
        )
        self.payments[payment_id] = payment
        return payment


@pytest_asyncio.fixture
async def db(tmp_path):
    """Fresh SQLite database file per test; the store lifecycle mirrors app startup/shutdown."""
    await close_engine()
    init_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    await init_db()
    yield get_session_maker()
    await close_engine()


@pytest_asyncio.fixture
async def session(db):
    async with db() as s:
        yield s


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest_asyncio.fixture
async def client(db, gateway):
    """AsyncClient against the app with the fake gateway installed."""
    app.state.gateway = gateway
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac
    app.state.gateway = None


@pytest_asyncio.fixture
async def test_user(db):
    """Create a user via DB (committed) and return (user_id, email, access_token)."""
    async with db() as s:
        user = User(email="owner@test.com", name="Owner")
        s.add(user)
        await s.commit()
        await s.refresh(user)
        token = create_access_token(user.id, user.email)
        return user.id, user.email, token


@pytest.fixture
def auth_headers(test_user):
    """Return dict of Authorization header for test_user."""
    _, __, token = test_user
    return {"Authorization": f"Bearer {token}"}
