from __future__ import annotations
import logging
import uuid
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional, TypedDict

import httpx

from .errors import UpstreamError, NotFoundError
from .helpers import cents_to_str
from .infra.timings import timeit

log = logging.getLogger(__name__)

# Mollie payment statuses
P_OPEN = "open"
P_PENDING = "pending"
P_AUTHORIZED = "authorized"
P_PAID = "paid"
P_CANCELED = "canceled"
P_EXPIRED = "expired"
P_FAILED = "failed"
PAYMENT_STATUSES = (
    P_OPEN, P_PENDING, P_AUTHORIZED, P_PAID, P_CANCELED, P_EXPIRED, P_FAILED
)


# ----------------------------
# Payment Adapter Interface
# ----------------------------
class CreatePaymentResult(TypedDict):
    payment_id: str
    checkout_url: str


class PaymentInfo(TypedDict):
    payment_id: str
    status: str


class PaymentAdapter(ABC):
    @abstractmethod
    async def create_payment(
        self,
        amount_cents: int,
        currency: str,
        description: str,
        redirect_url: str,
        webhook_url: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> CreatePaymentResult: ...

    # authoritative status, queried by id; callback bodies are never trusted
    @abstractmethod
    async def get_payment(self, payment_id: str) -> PaymentInfo: ...

    async def aclose(self) -> None:
        return None


# ----------------------------
# Mollie implementation
# ----------------------------
class MollieGateway(PaymentAdapter):
    def __init__(
        self,
        api_key: str,
        api_url: str = "https://api.mollie.com/v2",
        http: Optional[httpx.AsyncClient] = None,
        timeout: float = 10.0,
    ) -> None:
        self.api_url = api_url.rstrip("/")
        self._own_http = http is None
        self.http = http or httpx.AsyncClient(timeout=timeout)
        self.headers = {"Authorization": f"Bearer {api_key}"}

    async def _call(self, method: str, path: str, **kw) -> Dict[str, Any]:
        url = f"{self.api_url}{path}"
        try:
            r = await self.http.request(method, url, headers=self.headers,
                                        **kw)
        except httpx.HTTPError as e:
            log.warning("mollie %s %s failed: %s", method, path, e)
            raise UpstreamError(f"payment gateway unreachable: {e}") from e
        if r.status_code == 404:
            raise NotFoundError(f"payment gateway: {path} not found",
                                reason="payment-not-found")
        if r.status_code >= 400:
            log.warning("mollie %s %s -> %d: %s",
                        method, path, r.status_code, r.text[:500])
            raise UpstreamError(
                f"payment gateway answered {r.status_code}"
            )
        try:
            return r.json()
        except ValueError as e:
            raise UpstreamError("payment gateway sent invalid JSON") from e

    async def create_payment(
        self,
        amount_cents: int,
        currency: str,
        description: str,
        redirect_url: str,
        webhook_url: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> CreatePaymentResult:
        body = {
            "amount": {"currency": currency,
                       "value": cents_to_str(amount_cents)},
            "description": description,
            "redirectUrl": redirect_url,
            "webhookUrl": webhook_url,
        }
        if metadata:
            body["metadata"] = metadata
        async with timeit("gateway.create_payment"):
            data = await self._call("POST", "/payments", json=body)
        try:
            return {
                "payment_id": data["id"],
                "checkout_url": data["_links"]["checkout"]["href"],
            }
        except (KeyError, TypeError) as e:
            raise UpstreamError(
                "payment gateway response lacks id/checkout link"
            ) from e

    async def get_payment(self, payment_id: str) -> PaymentInfo:
        async with timeit("gateway.get_payment"):
            data = await self._call("GET", f"/payments/{payment_id}")
        status = data.get("status") if isinstance(data, dict) else None
        if not isinstance(status, str):
            raise UpstreamError("payment gateway response lacks status")
        return {"payment_id": payment_id, "status": status}

    async def aclose(self) -> None:
        if self._own_http:
            await self.http.aclose()


# ----------------------------
# MockPay implementation
# ----------------------------
class MockPay(PaymentAdapter):
    """
    In-memory gateway for local runs and tests. Payments start `open`;
    flip them with set_status().
    """

    def __init__(self, checkout_base: str = "/mockpay") -> None:
        self.checkout_base = checkout_base.rstrip("/")
        self.payments: Dict[str, Dict[str, Any]] = {}
        self.created = 0
        self.queried = 0

    async def create_payment(
        self,
        amount_cents: int,
        currency: str,
        description: str,
        redirect_url: str,
        webhook_url: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> CreatePaymentResult:
        payment_id = f"tr_mock_{uuid.uuid4().hex[:12]}"
        self.payments[payment_id] = {
            "status": P_OPEN,
            "amount": amount_cents,
            "currency": currency,
            "description": description,
            "redirect_url": redirect_url,
            "webhook_url": webhook_url,
            "metadata": metadata or {},
        }
        self.created += 1
        return {
            "payment_id": payment_id,
            "checkout_url": f"{self.checkout_base}/{payment_id}",
        }

    async def get_payment(self, payment_id: str) -> PaymentInfo:
        self.queried += 1
        p = self.payments.get(payment_id)
        if p is None:
            raise NotFoundError(f"payment {payment_id} not found",
                                reason="payment-not-found")
        return {"payment_id": payment_id, "status": p["status"]}

    def set_status(self, payment_id: str, status: str) -> None:
        if status not in PAYMENT_STATUSES:
            raise ValueError(f"unknown payment status {status!r}")
        if payment_id not in self.payments:
            raise NotFoundError(f"payment {payment_id} not found",
                                reason="payment-not-found")
        self.payments[payment_id]["status"] = status
