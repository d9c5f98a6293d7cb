"""Tests for client.py against a mock transport."""

import sys, os
sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

import json
import httpx
import pytest

from client import HTTPTransport, MarketAPIError, MarketClient, Transport
from crypto import HEADER_PUBKEY, HEADER_SIGNATURE, HEADER_TIMESTAMP, generate_keypair, verify_request


class MockTransport(Transport):
    def __init__(self):
        self.calls = []

    async def post(self, path, data):
        self.calls.append(("POST", path, data))
        if path == "/accounts":
            return {"accountId": "acct123", "trustScore": 100}
        if path == "/protocols":
            return {"protocol": {"id": "proto1", **data}}
        if path.startswith("/invoke/"):
            return {"invocationId": "inv1", "status": "SUCCESS", "output": {"ok": True}}
        if path.endswith("/report"):
            return {"reported": True, "refunded": True, "flagged": False}
        return {}

    async def get(self, path, params=None):
        self.calls.append(("GET", path, params))
        if path == "/balance/transactions":
            return {"transactions": [{"type": "DEPOSIT", "amountCents": 500}]}
        if path == "/balance":
            return {"balance": {"cents": 500, "dollars": "5.00"}}
        return {"id": path.rsplit("/", 1)[-1]}


@pytest.fixture
def mock_transport():
    return MockTransport()


@pytest.fixture
def market_client(mock_transport):
    return MarketClient(transport=mock_transport)


# --- Transport ABC ---

def test_transport_is_abstract():
    with pytest.raises(TypeError):
        Transport()


def test_default_transport_is_http():
    c = MarketClient(base_url="http://market.example/")
    assert isinstance(c.transport, HTTPTransport)
    assert c.transport.base_url == "http://market.example"


# --- MarketClient ---

@pytest.mark.asyncio
async def test_register(market_client, mock_transport):
    assert await market_client.register() == "acct123"
    assert mock_transport.calls == [("POST", "/accounts", {})]


@pytest.mark.asyncio
async def test_balance_and_transactions(market_client, mock_transport):
    assert (await market_client.balance())["balance"]["cents"] == 500
    txs = await market_client.transactions(limit=10)
    assert txs[0]["type"] == "DEPOSIT"
    assert mock_transport.calls[-1] == ("GET", "/balance/transactions", {"limit": 10, "offset": 0})


@pytest.mark.asyncio
async def test_deposit_and_withdraw(market_client, mock_transport):
    await market_client.deposit(1500)
    await market_client.withdraw()
    assert mock_transport.calls == [
        ("POST", "/balance/deposit", {"amountCents": 1500}),
        ("POST", "/balance/withdraw", {"amountCents": None}),
    ]


@pytest.mark.asyncio
async def test_publish_sends_wire_names(market_client, mock_transport):
    protocol = await market_client.publish("summarise", "1.0.0", "seven words", "https://h.example", 100)
    assert protocol["id"] == "proto1"
    _, path, data = mock_transport.calls[0]
    assert path == "/protocols"
    assert data["handlerUrl"] == "https://h.example"
    assert data["pricePerInvocationCents"] == 100
    assert data["longDescription"] is None


@pytest.mark.asyncio
async def test_invoke(market_client, mock_transport):
    result = await market_client.invoke("proto1", {"text": "hi"}, debug_sharing=True)
    assert result["output"] == {"ok": True}
    assert mock_transport.calls[0] == ("POST", "/invoke/proto1", {"input": {"text": "hi"}, "debugSharing": True})


@pytest.mark.asyncio
async def test_report_and_lookup(market_client, mock_transport):
    assert (await market_client.report_unusable("inv1"))["refunded"] is True
    assert mock_transport.calls[0] == ("POST", "/invocations/inv1/report", {"reason": None})
    assert (await market_client.get_invocation("inv1"))["id"] == "inv1"


@pytest.mark.asyncio
async def test_deprecate(market_client, mock_transport):
    await market_client.deprecate("proto1", "replaced by v2")
    assert mock_transport.calls[0] == ("POST", "/protocols/proto1/deprecate", {"reason": "replaced by v2"})


# --- HTTPTransport ---

def test_signed_headers_verify():
    priv, pub = generate_keypair()
    transport = HTTPTransport(privkey_bytes=priv)
    body = json.dumps({"input": 1})
    h = transport._headers("POST", "/invoke/p1", body)
    assert h[HEADER_PUBKEY] == pub.hex()
    ok, _ = verify_request("POST", "/invoke/p1", body, h[HEADER_TIMESTAMP], h[HEADER_SIGNATURE], h[HEADER_PUBKEY])
    assert ok


def test_unsigned_headers():
    h = HTTPTransport()._headers("GET", "/protocols/p1")
    assert h == {"Content-Type": "application/json"}


def test_parse_success():
    assert HTTPTransport._parse(httpx.Response(200, json={"a": 1})) == {"a": 1}


def test_parse_failed_invocation_is_a_result():
    body = {"invocationId": "inv1", "status": "FAILURE", "error": "HTTP 500"}
    assert HTTPTransport._parse(httpx.Response(502, json=body)) == body


def test_parse_error_raises():
    with pytest.raises(MarketAPIError) as exc:
        HTTPTransport._parse(httpx.Response(402, json={"error": "Insufficient balance", "required": 100}))
    assert exc.value.status_code == 402
    assert exc.value.body["required"] == 100
    assert "Insufficient balance" in str(exc.value)


def test_parse_plain_502_raises():
    with pytest.raises(MarketAPIError):
        HTTPTransport._parse(httpx.Response(502, text="Bad Gateway"))


@pytest.mark.asyncio
async def test_http_transport_round_trip(monkeypatch):
    """HTTPTransport signs what it sends, against a mocked server."""
    priv, pub = generate_keypair()
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["path"] = request.url.path
        seen["headers"] = request.headers
        seen["body"] = request.content.decode()
        return httpx.Response(200, json={"accountId": "acct9", "trustScore": 100})

    real_client = httpx.AsyncClient

    def mocked_client(*args, **kwargs):
        return real_client(transport=httpx.MockTransport(handler))

    monkeypatch.setattr(httpx, "AsyncClient", mocked_client)
    client = MarketClient(base_url="http://market.example", privkey_bytes=priv)
    assert await client.register() == "acct9"
    assert seen["path"] == "/accounts"
    ok, _ = verify_request(
        "POST", "/accounts", seen["body"],
        seen["headers"][HEADER_TIMESTAMP], seen["headers"][HEADER_SIGNATURE], seen["headers"][HEADER_PUBKEY],
    )
    assert ok
