"""
Tests for the PayOS payment link client.
"""
import asyncio
import json

import httpx
import pytest

from keystock.core.exceptions import PaymentGatewayError
from keystock.services.payment_gateway import PayOSClient, DEFAULT_CANCEL_REASON

API_BASE = "https://payos.test/v2/payment-requests"


def make_client(handler, client_id="client-1", api_key="key-1"):
    return PayOSClient(
        api_base=API_BASE,
        client_id=client_id,
        api_key=api_key,
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
    )


class TestPayOSClient:

    @pytest.mark.asyncio
    async def test_cancel_success(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["method"] = request.method
            seen["url"] = str(request.url)
            seen["headers"] = request.headers
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"code": "00", "desc": "success"})

        client = make_client(handler)
        assert await client.cancel_link("link-7", "Payment timed out") is True
        await client.close()

        assert seen["method"] == "POST"
        assert seen["url"] == f"{API_BASE}/link-7/cancel"
        assert seen["headers"]["x-client-id"] == "client-1"
        assert seen["headers"]["x-api-key"] == "key-1"
        assert seen["body"] == {"cancellationReason": "Payment timed out"}

    @pytest.mark.asyncio
    async def test_default_reason(self):
        bodies = []

        def handler(request):
            bodies.append(json.loads(request.content))
            return httpx.Response(200, json={"code": "00"})

        client = make_client(handler)
        await client.cancel_link("link-8")

        assert bodies == [{"cancellationReason": DEFAULT_CANCEL_REASON}]

    @pytest.mark.asyncio
    async def test_refused_cancel_returns_false(self):
        client = make_client(lambda request: httpx.Response(400, json={"code": "101", "desc": "already paid"}))

        assert await client.cancel_link("link-9") is False

    @pytest.mark.asyncio
    async def test_transport_error_raises(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        client = make_client(handler)

        with pytest.raises(PaymentGatewayError):
            await client.cancel_link("link-10")

    @pytest.mark.asyncio
    async def test_non_json_response_raises(self):
        client = make_client(lambda request: httpx.Response(502, text="<html>bad gateway</html>"))

        with pytest.raises(PaymentGatewayError) as exc_info:
            await client.cancel_link("link-11")

        assert exc_info.value.status_code == 502
        assert exc_info.value.details == {"link_id": "link-11", "status_code": 502}

    @pytest.mark.asyncio
    async def test_unconfigured_client_skips_call(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(200, json={"code": "00"})

        client = make_client(handler, client_id="", api_key="")

        assert client.is_configured is False
        assert await client.cancel_link("link-12") is False
        assert calls == []

    def test_client_reused_across_event_loops(self):
        client = make_client(lambda request: httpx.Response(200, json={"code": "00"}))

        async def cancel_two():
            return await asyncio.gather(client.cancel_link("link-20"), client.cancel_link("link-21"))

        assert asyncio.run(cancel_two()) == [True, True]
        assert asyncio.run(cancel_two()) == [True, True]
