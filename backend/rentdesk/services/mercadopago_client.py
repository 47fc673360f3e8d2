"""
MercadoPago REST client implementing ProviderGateway: preapprovals (agreements) and payments.
Auth: bearer access token. Every transport or HTTP failure is raised as ProviderError.
"""
import logging
import uuid
from datetime import datetime
from typing import Any

import httpx

from rentdesk.config import settings
from rentdesk.core.exceptions import ProviderError
from rentdesk.core.metrics import PROVIDER_ERRORS
from rentdesk.services.http_client import get_http_client
from rentdesk.services.provider_gateway import Agreement, AgreementDescriptor, ProviderPayment

logger = logging.getLogger(__name__)

SEARCH_PAGE_SIZE = 50


def _parse_datetime(s: Any) -> datetime | None:
    """Parse provider timestamp (ISO 8601 with offset, e.g. 2025-03-01T10:00:00.000-04:00)."""
    if not s or not isinstance(s, str):
        return None
    try:
        return datetime.fromisoformat(s.replace("Z", "+00:00"))
    except ValueError:
        return None


def _agreement_from_json(data: dict[str, Any]) -> Agreement:
    return Agreement(
        id=str(data.get("id") or ""),
        status=(data.get("status") or "").lower(),
        checkout_url=data.get("init_point") or data.get("sandbox_init_point"),
        payer_email=data.get("payer_email"),
        external_reference=data.get("external_reference"),
    )


def _payment_agreement_id(data: dict[str, Any]) -> str | None:
    metadata = data.get("metadata") or {}
    agreement_id = metadata.get("preapproval_id")
    if not agreement_id:
        # Recurring charges also carry the preapproval under point_of_interaction
        poi = data.get("point_of_interaction") or {}
        agreement_id = (poi.get("transaction_data") or {}).get("subscription_id")
    return str(agreement_id) if agreement_id else None


def _payment_from_json(data: dict[str, Any]) -> ProviderPayment:
    return ProviderPayment(
        id=str(data.get("id") or ""),
        status=(data.get("status") or "").lower(),
        amount=float(data.get("transaction_amount") or 0),
        currency=data.get("currency_id") or "",
        agreement_id=_payment_agreement_id(data),
        status_detail=data.get("status_detail"),
        payment_method_id=data.get("payment_method_id"),
        payment_type=data.get("payment_type_id"),
        paid_at=_parse_datetime(data.get("date_approved")),
        raw=data,
    )


class MercadoPagoGateway:
    """ProviderGateway over the MercadoPago REST API."""

    def __init__(
        self,
        access_token: str | None = None,
        base_url: str | None = None,
        timeout: float | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        self.access_token = access_token if access_token is not None else settings.mp_access_token
        self.base_url = (base_url or settings.mp_api_base_url).rstrip("/")
        self.timeout = timeout if timeout is not None else settings.mp_timeout_seconds
        self._client = client

    def _headers(self, idempotent: bool = False) -> dict[str, str]:
        headers = {"Authorization": f"Bearer {self.access_token}"}
        if idempotent:
            headers["X-Idempotency-Key"] = str(uuid.uuid4())
        return headers

    async def _request(
        self,
        operation: str,
        method: str,
        path: str,
        *,
        json: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        client = self._client or get_http_client()
        url = f"{self.base_url}{path}"
        try:
            r = await client.request(
                method,
                url,
                json=json,
                params=params,
                headers=self._headers(idempotent=method == "POST"),
                timeout=self.timeout,
            )
        except httpx.TimeoutException as e:
            PROVIDER_ERRORS.labels(operation=operation).inc()
            logger.warning("MercadoPago %s %s timed out after %ss", method, path, self.timeout)
            raise ProviderError(f"Payment provider timed out ({operation})", operation=operation) from e
        except httpx.HTTPError as e:
            PROVIDER_ERRORS.labels(operation=operation).inc()
            logger.warning("MercadoPago %s %s failed: %s", method, path, e)
            raise ProviderError(f"Payment provider unreachable ({operation})", operation=operation) from e
        if r.status_code >= 400:
            PROVIDER_ERRORS.labels(operation=operation).inc()
            body = (r.text or "")[:500]
            logger.warning("MercadoPago %s %s -> %s body=%s", method, path, r.status_code, body)
            raise ProviderError(
                f"Payment provider rejected {operation} (HTTP {r.status_code})",
                operation=operation,
                status=r.status_code,
            )
        return r.json() if r.content else {}

    async def create_agreement(self, descriptor: AgreementDescriptor) -> Agreement:
        body: dict[str, Any] = {
            "reason": descriptor.reason,
            "auto_recurring": {
                "frequency": descriptor.frequency,
                "frequency_type": descriptor.frequency_type,
                "transaction_amount": descriptor.amount,
                "currency_id": descriptor.currency,
                "free_trial": {
                    "frequency": descriptor.trial_days,
                    "frequency_type": "days",
                },
            },
            "back_url": descriptor.back_url,
            "payer_email": descriptor.payer_email,
            "status": descriptor.status,
        }
        if descriptor.external_reference:
            body["external_reference"] = descriptor.external_reference
        if descriptor.notification_url:
            body["notification_url"] = descriptor.notification_url
        data = await self._request("create_agreement", "POST", "/preapproval", json=body)
        agreement = _agreement_from_json(data)
        if not agreement.id:
            raise ProviderError("Payment provider returned an agreement without id", operation="create_agreement")
        return agreement

    async def get_agreement(self, agreement_id: str) -> Agreement:
        data = await self._request("get_agreement", "GET", f"/preapproval/{agreement_id}")
        return _agreement_from_json(data)

    async def update_agreement(self, agreement_id: str, status: str) -> Agreement:
        data = await self._request(
            "update_agreement", "PUT", f"/preapproval/{agreement_id}", json={"status": status}
        )
        return _agreement_from_json(data)

    async def search_agreements(self, status: str) -> list[Agreement]:
        """All agreements with the given status, following offset pagination."""
        out: list[Agreement] = []
        offset = 0
        while True:
            data = await self._request(
                "search_agreements",
                "GET",
                "/preapproval/search",
                params={"status": status, "offset": offset, "limit": SEARCH_PAGE_SIZE},
            )
            results = data.get("results") or []
            out.extend(_agreement_from_json(item) for item in results if isinstance(item, dict))
            total = (data.get("paging") or {}).get("total", 0)
            offset += len(results)
            if not results or offset >= total:
                break
        return out

    async def get_payment(self, payment_id: str) -> ProviderPayment:
        data = await self._request("get_payment", "GET", f"/v1/payments/{payment_id}")
        return _payment_from_json(data)
