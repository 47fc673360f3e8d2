"""Tests for the MercadoPago gateway over a mocked HTTP transport."""

import json

import httpx
import pytest

from rentdesk.core.exceptions import ProviderError
from rentdesk.services.mercadopago_client import MercadoPagoGateway
from rentdesk.services.provider_gateway import AgreementDescriptor


def make_gateway(handler) -> MercadoPagoGateway:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return MercadoPagoGateway(access_token="TEST-TOKEN", base_url="https://mp.test", timeout=1.0, client=client)


def descriptor() -> AgreementDescriptor:
    return AgreementDescriptor(
        reason="RentDesk - Plan professional",
        payer_email="owner@test.com",
        amount=289,
        currency="USD",
        frequency=1,
        frequency_type="months",
        trial_days=30,
        back_url="https://app.test/ok",
        external_reference="user:42",
    )


@pytest.mark.asyncio
async def test_create_agreement_sends_recurring_descriptor():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["method"] = request.method
        seen["path"] = request.url.path
        seen["auth"] = request.headers["Authorization"]
        seen["idempotency"] = request.headers.get("X-Idempotency-Key")
        seen["body"] = json.loads(request.content)
        return httpx.Response(201, json={"id": "2c93808", "status": "pending", "init_point": "https://mp.test/checkout"})

    agreement = await make_gateway(handler).create_agreement(descriptor())
    assert agreement.id == "2c93808"
    assert agreement.status == "pending"
    assert agreement.checkout_url == "https://mp.test/checkout"
    assert seen["method"] == "POST"
    assert seen["path"] == "/preapproval"
    assert seen["auth"] == "Bearer TEST-TOKEN"
    assert seen["idempotency"]
    recurring = seen["body"]["auto_recurring"]
    assert recurring["transaction_amount"] == 289
    assert recurring["currency_id"] == "USD"
    assert recurring["frequency"] == 1
    assert recurring["frequency_type"] == "months"
    assert recurring["free_trial"] == {"frequency": 30, "frequency_type": "days"}
    assert seen["body"]["payer_email"] == "owner@test.com"
    assert seen["body"]["status"] == "pending"
    assert seen["body"]["external_reference"] == "user:42"
    assert "notification_url" not in seen["body"]


@pytest.mark.asyncio
async def test_update_agreement_puts_status():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.method == "PUT"
        assert request.url.path == "/preapproval/AGR-1"
        assert json.loads(request.content) == {"status": "cancelled"}
        return httpx.Response(200, json={"id": "AGR-1", "status": "cancelled"})

    agreement = await make_gateway(handler).update_agreement("AGR-1", "cancelled")
    assert agreement.status == "cancelled"


@pytest.mark.asyncio
async def test_get_payment_reads_agreement_from_metadata():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/v1/payments/123"
        return httpx.Response(200, json={
            "id": 123,
            "status": "approved",
            "status_detail": "accredited",
            "transaction_amount": 289.0,
            "currency_id": "USD",
            "payment_method_id": "visa",
            "payment_type_id": "credit_card",
            "date_approved": "2026-03-01T10:00:00.000-04:00",
            "metadata": {"preapproval_id": "AGR-1"},
        })

    payment = await make_gateway(handler).get_payment("123")
    assert payment.id == "123"
    assert payment.is_approved
    assert payment.amount == 289.0
    assert payment.agreement_id == "AGR-1"
    assert payment.payment_type == "credit_card"
    assert payment.paid_at is not None and payment.paid_at.utcoffset().total_seconds() == -4 * 3600
    assert payment.raw["metadata"] == {"preapproval_id": "AGR-1"}


@pytest.mark.asyncio
async def test_get_payment_agreement_fallback_and_missing():
    payloads = {
        "/v1/payments/1": {
            "id": 1,
            "status": "approved",
            "transaction_amount": 10,
            "currency_id": "USD",
            "point_of_interaction": {"transaction_data": {"subscription_id": "AGR-7"}},
        },
        "/v1/payments/2": {"id": 2, "status": "rejected", "transaction_amount": 10, "currency_id": "USD"},
    }

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json=payloads[request.url.path])

    gateway = make_gateway(handler)
    assert (await gateway.get_payment("1")).agreement_id == "AGR-7"
    missing = await gateway.get_payment("2")
    assert missing.agreement_id is None
    assert missing.paid_at is None
    assert not missing.is_approved


@pytest.mark.asyncio
async def test_search_agreements_follows_pagination():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        offset = int(request.url.params["offset"])
        calls.append(offset)
        assert request.url.params["status"] == "authorized"
        results = [{"id": f"AGR-{offset + i}", "status": "authorized"} for i in range(2 if offset == 0 else 1)]
        return httpx.Response(200, json={"results": results, "paging": {"total": 3, "offset": offset, "limit": 50}})

    agreements = await make_gateway(handler).search_agreements("authorized")
    assert [a.id for a in agreements] == ["AGR-0", "AGR-1", "AGR-2"]
    assert calls == [0, 2]


@pytest.mark.asyncio
async def test_http_error_becomes_provider_error():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(400, json={"message": "invalid payer_email"})

    with pytest.raises(ProviderError) as exc_info:
        await make_gateway(handler).create_agreement(descriptor())
    assert exc_info.value.status == 400
    assert exc_info.value.operation == "create_agreement"


@pytest.mark.asyncio
async def test_timeout_becomes_provider_error():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("timed out", request=request)

    with pytest.raises(ProviderError) as exc_info:
        await make_gateway(handler).update_agreement("AGR-1", "cancelled")
    assert exc_info.value.operation == "update_agreement"
    assert "timed out" in exc_info.value.message


@pytest.mark.asyncio
async def test_agreement_without_id_is_rejected():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(201, json={"status": "pending"})

    with pytest.raises(ProviderError):
        await make_gateway(handler).create_agreement(descriptor())
