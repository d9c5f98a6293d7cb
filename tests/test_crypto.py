"""Tests for crypto.py -- Ed25519 keys, signed requests, replay guard."""

import sys
import os
import time

sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

import pytest

import crypto
from crypto import (
    HEADER_PUBKEY,
    HEADER_SIGNATURE,
    HEADER_TIMESTAMP,
    ReplayGuard,
    generate_keypair,
    pubkey_from_privkey,
    sign,
    sign_request,
    verify,
    verify_request,
)


class TestKeys:
    def test_keypair_sizes(self):
        priv, pub = generate_keypair()
        assert len(priv) == 32
        assert len(pub) == 32

    def test_pubkey_derivation(self):
        priv, pub = generate_keypair()
        assert pubkey_from_privkey(priv) == pub

    def test_distinct_keypairs(self):
        assert generate_keypair()[1] != generate_keypair()[1]


class TestSignVerify:
    def test_roundtrip(self):
        priv, pub = generate_keypair()
        sig = sign(priv, b"invoke")
        assert len(sig) == 128
        assert verify(pub, b"invoke", sig)

    def test_tampered_data(self):
        priv, pub = generate_keypair()
        assert not verify(pub, b"invokE", sign(priv, b"invoke"))

    def test_wrong_key(self):
        priv, _ = generate_keypair()
        _, other_pub = generate_keypair()
        assert not verify(other_pub, b"x", sign(priv, b"x"))

    def test_garbage_signature(self):
        _, pub = generate_keypair()
        assert not verify(pub, b"x", "not-hex")
        assert not verify(pub, b"x", "ab" * 10)


class TestSignedRequests:
    def _verify(self, headers, method="POST", path="/invoke/p1", body='{"input": 1}'):
        return verify_request(
            method, path, body,
            headers[HEADER_TIMESTAMP], headers[HEADER_SIGNATURE], headers[HEADER_PUBKEY],
        )

    def test_headers_carry_pubkey(self):
        priv, pub = generate_keypair()
        headers = sign_request(priv, "POST", "/invoke/p1", '{"input": 1}')
        assert headers[HEADER_PUBKEY] == pub.hex()

    def test_valid_request(self):
        priv, _ = generate_keypair()
        headers = sign_request(priv, "POST", "/invoke/p1", '{"input": 1}')
        assert self._verify(headers) == (True, "")

    def test_body_is_covered(self):
        priv, _ = generate_keypair()
        headers = sign_request(priv, "POST", "/invoke/p1", '{"input": 1}')
        ok, err = self._verify(headers, body='{"input": 2}')
        assert not ok
        assert err == "invalid signature"

    def test_path_and_method_are_covered(self):
        priv, _ = generate_keypair()
        headers = sign_request(priv, "POST", "/invoke/p1", '{"input": 1}')
        assert not self._verify(headers, path="/invoke/p2")[0]
        assert not self._verify(headers, method="GET")[0]

    def test_expired(self):
        priv, _ = generate_keypair()
        headers = sign_request(priv, "GET", "/balance", timestamp=time.time() - crypto.REQUEST_MAX_AGE - 10)
        ok, err = self._verify(headers, method="GET", path="/balance", body="")
        assert not ok
        assert "expired" in err

    def test_future_timestamp(self):
        priv, _ = generate_keypair()
        headers = sign_request(priv, "GET", "/balance", timestamp=time.time() + crypto.CLOCK_SKEW + 60)
        ok, err = self._verify(headers, method="GET", path="/balance", body="")
        assert not ok
        assert "future" in err

    def test_small_skew_tolerated(self):
        priv, _ = generate_keypair()
        headers = sign_request(priv, "GET", "/balance", timestamp=time.time() + 5)
        assert self._verify(headers, method="GET", path="/balance", body="")[0]

    @pytest.mark.parametrize("timestamp", ["", "abc", None])
    def test_bad_timestamp(self, timestamp):
        ok, err = verify_request("GET", "/balance", "", timestamp, "00", "00" * 32)
        assert not ok
        assert err == "invalid timestamp"

    def test_bad_pubkey(self):
        ts = str(int(time.time()))
        assert verify_request("GET", "/", "", ts, "00", "zz")[1] == "invalid pubkey hex"
        assert verify_request("GET", "/", "", ts, "00", "ab" * 16)[1] == "invalid pubkey length"


class TestReplayGuard:
    def test_first_use_accepted(self):
        guard = ReplayGuard()
        assert guard.check_and_record("sig-a")
        assert guard.check_and_record("sig-b")

    def test_replay_rejected(self):
        guard = ReplayGuard()
        guard.check_and_record("sig-a")
        assert not guard.check_and_record("sig-a")

    def test_expired_entries_forgotten(self):
        guard = ReplayGuard(ttl=0)
        guard.check_and_record("sig-a")
        # ttl=0 means the entry is already past its expiry
        assert guard.check_and_record("sig-a")

    def test_prune_drops_expired(self):
        guard = ReplayGuard(ttl=0)
        for i in range(100):
            guard.check_and_record(f"sig-{i}")
        # The 100th check prunes everything before recording itself
        assert len(guard._seen) <= 1
