# SPDX-License-Identifier: AGPL-3.0-or-later
# Copyright (c) 2026 Karan Sharma
"""API client for the protocol marketplace.

Thin HTTP client with a pluggable transport interface.
Default transport: HTTP with Ed25519-signed requests.
"""

import json
from abc import ABC, abstractmethod

import httpx

from crypto import sign_request


class MarketAPIError(Exception):
    """Non-success response from the marketplace API."""

    def __init__(self, status_code: int, body: dict):
        super().__init__(f"HTTP {status_code}: {body.get('error') or body.get('detail') or body}")
        self.status_code = status_code
        self.body = body


class Transport(ABC):
    """Override this to talk to the marketplace some other way."""

    @abstractmethod
    async def post(self, path: str, data: dict) -> dict:
        ...

    @abstractmethod
    async def get(self, path: str, params: dict | None = None) -> dict:
        ...


class HTTPTransport(Transport):
    """Default. Talks to the marketplace over HTTP with Ed25519 auth."""

    def __init__(self, base_url: str = "http://localhost:8000", privkey_bytes: bytes | None = None,
                 timeout: float = 60.0):
        self.base_url = base_url.rstrip("/")
        self.privkey_bytes = privkey_bytes
        # Must outlast the server's handler deadline
        self.timeout = timeout

    def _headers(self, method: str, path: str, body: str = "") -> dict:
        h = {"Content-Type": "application/json"}
        if self.privkey_bytes:
            h.update(sign_request(self.privkey_bytes, method, path, body))
        return h

    @staticmethod
    def _parse(resp: httpx.Response) -> dict:
        try:
            body = resp.json()
        except ValueError:
            body = {"error": resp.text}
        # A failed invocation is still a settled result (502 + refund)
        if resp.status_code == 502 and isinstance(body, dict) and "invocationId" in body:
            return body
        if resp.is_error:
            raise MarketAPIError(resp.status_code, body if isinstance(body, dict) else {"error": body})
        return body

    async def post(self, path: str, data: dict) -> dict:
        body = json.dumps(data)
        async with httpx.AsyncClient() as client:
            resp = await client.post(
                f"{self.base_url}{path}",
                content=body,
                headers=self._headers("POST", path, body),
                timeout=self.timeout,
            )
        return self._parse(resp)

    async def get(self, path: str, params: dict | None = None) -> dict:
        async with httpx.AsyncClient() as client:
            resp = await client.get(
                f"{self.base_url}{path}",
                params=params,
                headers=self._headers("GET", path),
                timeout=self.timeout,
            )
        return self._parse(resp)


class MarketClient:
    """High-level client for callers and publishers."""

    def __init__(self, transport: Transport | None = None, base_url: str = "http://localhost:8000",
                 privkey_bytes: bytes | None = None):
        self.transport = transport or HTTPTransport(base_url, privkey_bytes=privkey_bytes)

    async def register(self) -> str:
        """Register the signing key. Returns the account id."""
        resp = await self.transport.post("/accounts", {})
        return resp["accountId"]

    async def balance(self) -> dict:
        return await self.transport.get("/balance")

    async def transactions(self, limit: int = 50, offset: int = 0) -> list[dict]:
        resp = await self.transport.get("/balance/transactions", {"limit": limit, "offset": offset})
        return resp["transactions"]

    async def deposit(self, amount_cents: int) -> dict:
        return await self.transport.post("/balance/deposit", {"amountCents": amount_cents})

    async def withdraw(self, amount_cents: int | None = None) -> dict:
        return await self.transport.post("/balance/withdraw", {"amountCents": amount_cents})

    async def publish(self, name: str, version: str, description: str, handler_url: str,
                      price_cents: int, long_description: str | None = None) -> dict:
        resp = await self.transport.post("/protocols", {
            "name": name,
            "version": version,
            "description": description,
            "handlerUrl": handler_url,
            "pricePerInvocationCents": price_cents,
            "longDescription": long_description,
        })
        return resp["protocol"]

    async def deprecate(self, protocol_id: str, reason: str = "") -> dict:
        return await self.transport.post(f"/protocols/{protocol_id}/deprecate", {"reason": reason or None})

    async def invoke(self, protocol_id: str, input_value, debug_sharing: bool = False) -> dict:
        """Pay for and run one invocation. Returns the settled result."""
        return await self.transport.post(f"/invoke/{protocol_id}", {
            "input": input_value,
            "debugSharing": debug_sharing,
        })

    async def get_invocation(self, invocation_id: str) -> dict:
        return await self.transport.get(f"/invocations/{invocation_id}")

    async def report_unusable(self, invocation_id: str, reason: str = "") -> dict:
        return await self.transport.post(f"/invocations/{invocation_id}/report", {"reason": reason or None})
