import sys
import os
import json
import asyncio

# Ensure project root is on the path for all tests
sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

import httpx

from crypto import generate_keypair, sign_request


HANDLER_URL = "https://handler.example/run"
SEVEN_WORDS = "Summarise any English text into three bullets"


class HandlerStub:
    """Scriptable protocol handler served through httpx.MockTransport.

    Records every request body it receives. Configure the reply with
    status/body, raw bytes (non-JSON), an exception to raise, or a delay.
    """

    def __init__(self, status: int = 200, body=None, raw: bytes | None = None,
                 exc: Exception | None = None, delay: float = 0.0):
        self.status = status
        self.body = {"ok": True} if body is None else body
        self.raw = raw
        self.exc = exc
        self.delay = delay
        self.requests = []

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(json.loads(request.content))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.exc is not None:
            raise self.exc
        if self.raw is not None:
            return httpx.Response(self.status, content=self.raw)
        return httpx.Response(self.status, json=self.body)

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self)


def seed_market(store, balance: int = 500, price: int = 100, trust: int | None = None):
    """Create a funded caller, a publisher and one ACTIVE protocol.

    Returns (caller, publisher, protocol) dicts.
    """
    caller = store.create_account(generate_keypair()[1].hex())
    publisher = store.create_account(generate_keypair()[1].hex())
    if balance:
        store.deposit(caller["id"], balance)
    if trust is not None:
        set_trust(store, caller["id"], trust)
    protocol = store.create_protocol(
        publisher["id"], "summarise", "1.0.0", SEVEN_WORDS, HANDLER_URL, price,
    )
    return store.get_account(caller["id"]), store.get_account(publisher["id"]), protocol


def set_trust(store, account_id: str, trust: int):
    """Force a trust score (bypasses settlement)."""
    store.db.execute("UPDATE accounts SET trust_score = ? WHERE id = ?", (trust, account_id))
    store.db.commit()


# Monotonic counter so identical requests still get distinct signatures
_nonce_counter = 0


def signed_post(client, path, data, privkey_bytes):
    """Make an Ed25519-signed POST request for tests.

    Embeds a nonce in the body so repeated calls are not rejected as replays.
    """
    global _nonce_counter
    _nonce_counter += 1
    body = json.dumps({**data, "_nonce": _nonce_counter})
    headers = sign_request(privkey_bytes, "POST", path, body)
    return client.post(path, content=body, headers={
        "Content-Type": "application/json",
        **headers,
    })


def signed_get(client, path, privkey_bytes, params=None):
    headers = sign_request(privkey_bytes, "GET", path)
    return client.get(path, params=params, headers=headers)
