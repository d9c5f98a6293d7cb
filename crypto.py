# SPDX-License-Identifier: AGPL-3.0-or-later
# Copyright (c) 2026 Karan Sharma
"""Caller identity for the protocol marketplace.

Provides:
- Ed25519 keypairs (raw 32-byte keys, hex on the wire)
- Signed API requests: METHOD\\nPATH\\nTIMESTAMP\\nBODY
- Replay protection for accepted signatures

Dependencies: cryptography
"""

import time as _time

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import (
    Ed25519PrivateKey,
    Ed25519PublicKey,
)

REQUEST_MAX_AGE = 300  # seconds a signed request stays valid
CLOCK_SKEW = 30  # seconds a timestamp may run ahead of ours

HEADER_TIMESTAMP = "X-Market-Timestamp"
HEADER_SIGNATURE = "X-Market-Signature"
HEADER_PUBKEY = "X-Market-Pubkey"


def generate_keypair() -> tuple[bytes, bytes]:
    """Returns (privkey_bytes, pubkey_bytes), both 32 bytes raw."""
    privkey = Ed25519PrivateKey.generate()
    priv_bytes = privkey.private_bytes(
        serialization.Encoding.Raw,
        serialization.PrivateFormat.Raw,
        serialization.NoEncryption(),
    )
    return priv_bytes, pubkey_from_privkey(priv_bytes)


def pubkey_from_privkey(privkey_bytes: bytes) -> bytes:
    privkey = Ed25519PrivateKey.from_private_bytes(privkey_bytes)
    return privkey.public_key().public_bytes(
        serialization.Encoding.Raw,
        serialization.PublicFormat.Raw,
    )


def sign(privkey_bytes: bytes, data: bytes) -> str:
    """Ed25519 signature as 128-char hex."""
    return Ed25519PrivateKey.from_private_bytes(privkey_bytes).sign(data).hex()


def verify(pubkey_bytes: bytes, data: bytes, sig_hex: str) -> bool:
    try:
        Ed25519PublicKey.from_public_bytes(pubkey_bytes).verify(bytes.fromhex(sig_hex), data)
        return True
    except (InvalidSignature, ValueError):
        return False


def _request_payload(method: str, path: str, timestamp: str, body: str) -> bytes:
    return f"{method}\n{path}\n{timestamp}\n{body}".encode("utf-8")


def sign_request(privkey_bytes: bytes, method: str, path: str, body: str = "",
                 timestamp: float | None = None) -> dict:
    """Sign an API request. Returns the auth headers to send with it."""
    ts = str(int(_time.time() if timestamp is None else timestamp))
    return {
        HEADER_TIMESTAMP: ts,
        HEADER_SIGNATURE: sign(privkey_bytes, _request_payload(method, path, ts, body)),
        HEADER_PUBKEY: pubkey_from_privkey(privkey_bytes).hex(),
    }


def verify_request(method: str, path: str, body: str, timestamp: str,
                   signature: str, pubkey_hex: str) -> tuple[bool, str]:
    """Verify a signed API request. Returns (ok, error_message)."""
    try:
        ts = int(timestamp)
    except (ValueError, TypeError):
        return False, "invalid timestamp"

    age = _time.time() - ts
    if age < -CLOCK_SKEW:
        return False, f"request timestamp is in the future (skew={int(-age)}s)"
    if age > REQUEST_MAX_AGE:
        return False, f"request expired (age={int(age)}s, max={REQUEST_MAX_AGE}s)"

    try:
        pubkey_bytes = bytes.fromhex(pubkey_hex)
    except ValueError:
        return False, "invalid pubkey hex"
    if len(pubkey_bytes) != 32:
        return False, "invalid pubkey length"

    if not verify(pubkey_bytes, _request_payload(method, path, timestamp, body), signature):
        return False, "invalid signature"
    return True, ""


class ReplayGuard:
    """Remember accepted signatures until they would have expired anyway."""

    def __init__(self, ttl: int = REQUEST_MAX_AGE):
        self._seen: dict[str, float] = {}  # sig_hex -> expiry
        self._ttl = ttl
        self._check_count = 0

    def check_and_record(self, sig_hex: str) -> bool:
        """False if the signature was already used, True if new (and record it)."""
        self._check_count += 1
        if self._check_count % 100 == 0:
            self._prune()

        now = _time.time()
        if sig_hex in self._seen and now < self._seen[sig_hex]:
            return False
        self._seen[sig_hex] = now + self._ttl
        return True

    def _prune(self):
        now = _time.time()
        self._seen = {k: v for k, v in self._seen.items() if v > now}
