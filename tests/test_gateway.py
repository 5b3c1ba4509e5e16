"""
Tests for `flotix/gateway.py`: the Mollie adapter against a mocked HTTP
transport, and the in-memory MockPay.
"""

from __future__ import annotations

import json

import httpx
import pytest

from flotix.errors import NotFoundError, UpstreamError
from flotix.gateway import MockPay, MollieGateway


def _mollie(handler) -> MollieGateway:
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return MollieGateway("test_key", "https://mollie.test/v2", http=http)


@pytest.mark.asyncio
async def test_create_payment_sends_amount_as_string():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["auth"] = request.headers["authorization"]
        seen["body"] = json.loads(request.content)
        return httpx.Response(201, json={
            "id": "tr_123",
            "status": "open",
            "_links": {"checkout": {"href": "https://pay.test/tr_123"}},
        })

    gw = _mollie(handler)
    res = await gw.create_payment(
        1635, "EUR", "Tickets for MIXO: Reloaded",
        "https://shop.test/thanks", "https://api.test/payments/webhook",
        metadata={"email": "fan@example.com", "eventId": "ev1"},
    )
    await gw.http.aclose()

    assert res == {"payment_id": "tr_123",
                   "checkout_url": "https://pay.test/tr_123"}
    assert seen["url"] == "https://mollie.test/v2/payments"
    assert seen["auth"] == "Bearer test_key"
    assert seen["body"]["amount"] == {"currency": "EUR", "value": "16.35"}
    assert seen["body"]["webhookUrl"] == "https://api.test/payments/webhook"
    assert seen["body"]["metadata"]["eventId"] == "ev1"


@pytest.mark.asyncio
async def test_get_payment_reads_status():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/v2/payments/tr_123"
        return httpx.Response(200, json={"id": "tr_123", "status": "paid"})

    gw = _mollie(handler)
    res = await gw.get_payment("tr_123")
    await gw.http.aclose()

    assert res == {"payment_id": "tr_123", "status": "paid"}


@pytest.mark.asyncio
@pytest.mark.parametrize("response", [
    httpx.Response(500, text="boom"),
    httpx.Response(200, json={"id": "tr_123"}),
    httpx.Response(200, text="not json"),
])
async def test_bad_answers_are_upstream_errors(response):
    gw = _mollie(lambda request: response)
    with pytest.raises(UpstreamError):
        await gw.get_payment("tr_123")
    await gw.http.aclose()


@pytest.mark.asyncio
async def test_unreachable_gateway_is_upstream_error():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    gw = _mollie(handler)
    with pytest.raises(UpstreamError):
        await gw.create_payment(100, "EUR", "x", "r", "w")
    await gw.http.aclose()


@pytest.mark.asyncio
async def test_unknown_payment_is_not_found():
    gw = _mollie(lambda request: httpx.Response(404, json={}))
    with pytest.raises(NotFoundError):
        await gw.get_payment("tr_missing")
    await gw.http.aclose()


@pytest.mark.asyncio
async def test_mockpay_lifecycle():
    mock = MockPay(checkout_base="https://tickets.test/mockpay/")

    res = await mock.create_payment(1635, "EUR", "Tickets", "r", "w")
    pid = res["payment_id"]

    assert res["checkout_url"] == f"https://tickets.test/mockpay/{pid}"
    assert (await mock.get_payment(pid))["status"] == "open"
    mock.set_status(pid, "paid")
    assert (await mock.get_payment(pid))["status"] == "paid"
    assert mock.created == 1
    assert mock.queried == 2

    with pytest.raises(ValueError):
        mock.set_status(pid, "refunded")
    with pytest.raises(NotFoundError):
        await mock.get_payment("tr_nope")
