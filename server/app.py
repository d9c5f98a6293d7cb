# SPDX-License-Identifier: AGPL-3.0-or-later
# Copyright (c) 2026 Karan Sharma
"""HTTP API for the protocol marketplace (FastAPI).

Endpoints: account registration, balances and ledger history, protocol
publishing and deprecation, paid invocation, and unusable-output reports.

Ed25519 authentication: every request except public catalog reads must be
signed by the caller's key. The key's account is the caller identity.
"""

import logging
from typing import Any, Optional

import httpx
from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from crypto import HEADER_PUBKEY, HEADER_SIGNATURE, HEADER_TIMESTAMP, ReplayGuard, verify_request
from protocol import (
    DESCRIPTION_WORDS, MAX_NAME_LENGTH, MAX_VERSION_LENGTH, MAX_PAGE_SIZE,
    MIN_DEPOSIT_CENTS, MIN_WITHDRAWAL_CENTS, InvocationStatus,
)
from server.disputes import DisputeAdjudicator
from server.errors import AccountNotFound, InvocationNotFound, MarketError, NotAuthorized, ProtocolUnavailable
from server.reputation import ProtocolStats
from server.settlement import SettlementConfig, SettlementEngine
from server.store import LedgerStore

logger = logging.getLogger(__name__)


# --- Request models ---

class InvokeRequest(BaseModel):
    input: Any = None
    debugSharing: bool = False

class ReportRequest(BaseModel):
    reason: Optional[str] = None

class AmountRequest(BaseModel):
    amountCents: Optional[int] = None

class PublishRequest(BaseModel):
    name: str
    version: str
    description: str
    handlerUrl: str
    pricePerInvocationCents: int
    longDescription: Optional[str] = None

class DeprecateRequest(BaseModel):
    reason: Optional[str] = None


def _money(cents: int) -> dict:
    return {"cents": cents, "dollars": f"{cents / 100:.2f}"}


def _validate_protocol(req: PublishRequest):
    """Validate publish fields. Raises HTTPException(400) on bad values."""
    if not req.name.strip() or len(req.name) > MAX_NAME_LENGTH:
        raise HTTPException(400, f"name must be 1-{MAX_NAME_LENGTH} characters")
    if not req.version.strip() or len(req.version) > MAX_VERSION_LENGTH:
        raise HTTPException(400, f"version must be 1-{MAX_VERSION_LENGTH} characters")
    # Hyphenated compounds count as one word
    if len(req.description.split()) != DESCRIPTION_WORDS:
        raise HTTPException(400, f"Description must be exactly {DESCRIPTION_WORDS} words")
    # Must parse the same way the settlement engine will dispatch it
    try:
        url = httpx.URL(req.handlerUrl)
    except httpx.InvalidURL:
        raise HTTPException(400, "handlerUrl must be an http(s) URL")
    if url.scheme not in ("http", "https") or not url.host:
        raise HTTPException(400, "handlerUrl must be an http(s) URL")
    if req.pricePerInvocationCents < 1:
        raise HTTPException(400, "pricePerInvocationCents must be at least 1")


def _protocol_view(protocol: dict, include_handler: bool = True) -> dict:
    view = {
        "id": protocol["id"],
        "publisherId": protocol["publisher_id"],
        "name": protocol["name"],
        "version": protocol["version"],
        "description": protocol["description"],
        "longDescription": protocol["long_description"],
        "pricePerInvocationCents": protocol["price_cents"],
        "status": protocol["status"],
        "deprecationReason": protocol["deprecation_reason"],
        "sunsetAt": protocol["sunset_at"],
        "createdAt": protocol["created_at"],
        **ProtocolStats.from_protocol(protocol).to_dict(),
    }
    if include_handler:
        view["handlerUrl"] = protocol["handler_url"]
    return view


def _invocation_view(inv: dict) -> dict:
    return {
        "id": inv["id"],
        "callerId": inv["caller_id"],
        "protocolId": inv["protocol_id"],
        "amountCents": inv["amount_cents"],
        "publisherAmountCents": inv["publisher_amount_cents"],
        "platformFeeCents": inv["platform_fee_cents"],
        "status": inv["status"],
        "errorClass": inv["error_class"],
        "refusalCode": inv["refusal_code"],
        "inputMetadata": inv["input_metadata"],
        "createdAt": inv["created_at"],
    }


def create_app(
    store: LedgerStore | None = None,
    engine: SettlementEngine | None = None,
    adjudicator: DisputeAdjudicator | None = None,
    config: SettlementConfig | None = None,
) -> FastAPI:
    """Create FastAPI app with injected dependencies (in-memory defaults)."""

    app = FastAPI(title="Protocol Marketplace", version="1.0")

    _store = store or LedgerStore()
    _engine = engine or SettlementEngine(_store, config=config)
    _adjudicator = adjudicator or DisputeAdjudicator(_store)
    _replay_guard = ReplayGuard()

    # Expose for testing
    app.state.store = _store
    app.state.engine = _engine
    app.state.adjudicator = _adjudicator
    app.state.replay_guard = _replay_guard

    @app.exception_handler(MarketError)
    async def market_error_handler(request: Request, exc: MarketError):
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    # --- Auth helpers ---

    async def _authenticate(request: Request) -> str:
        """Verify the request signature. Returns the caller's pubkey hex."""
        timestamp = request.headers.get(HEADER_TIMESTAMP, "")
        signature = request.headers.get(HEADER_SIGNATURE, "")
        pubkey_hex = request.headers.get(HEADER_PUBKEY, "")
        if not timestamp or not signature or not pubkey_hex:
            raise HTTPException(401, f"Signed request required ({HEADER_TIMESTAMP} + {HEADER_SIGNATURE} + {HEADER_PUBKEY} headers)")

        body = (await request.body()).decode("utf-8", errors="replace")
        ok, err = verify_request(request.method, request.url.path, body, timestamp, signature, pubkey_hex)
        if not ok:
            raise HTTPException(401, f"Authentication failed: {err}")

        # Reads are idempotent; only mutations are replay-checked
        if request.method != "GET" and not _replay_guard.check_and_record(signature):
            raise HTTPException(401, "Replay detected")
        return pubkey_hex

    async def _caller(request: Request) -> dict:
        pubkey_hex = await _authenticate(request)
        account = _store.get_account_by_pubkey(pubkey_hex)
        if not account:
            raise AccountNotFound(pubkey_hex)
        return account

    # --- Accounts and balances ---

    @app.post("/accounts", status_code=201)
    async def register(request: Request):
        """Register the signing key as a new account."""
        pubkey_hex = await _authenticate(request)
        try:
            account = _store.create_account(pubkey_hex)
        except ValueError as e:
            raise HTTPException(409, str(e))
        logger.info("registered account %s", account["id"])
        return {"accountId": account["id"], "trustScore": account["trust_score"]}

    @app.get("/balance")
    async def get_balance(request: Request):
        account = await _caller(request)
        return {
            "accountId": account["id"],
            "balance": _money(account["balance_cents"]),
            "publisherBalance": _money(account["publisher_balance_cents"]),
            "trustScore": account["trust_score"],
        }

    @app.get("/balance/transactions")
    async def get_transactions(request: Request, limit: int = 50, offset: int = 0):
        account = await _caller(request)
        limit = max(1, min(limit, MAX_PAGE_SIZE))
        offset = max(0, offset)
        transactions = _store.list_transactions(account["id"], limit, offset)
        return {
            "transactions": [
                {
                    "id": t["id"],
                    "amountCents": t["amount_cents"],
                    "amountDollars": f"{t['amount_cents'] / 100:.2f}",
                    "type": t["type"],
                    "referenceId": t["reference_id"],
                    "createdAt": t["created_at"],
                }
                for t in transactions
            ],
        }

    @app.post("/balance/deposit")
    async def deposit(req: AmountRequest, request: Request):
        account = await _caller(request)
        amount = req.amountCents
        if not amount or amount < MIN_DEPOSIT_CENTS:
            raise HTTPException(400, f"Minimum deposit is ${MIN_DEPOSIT_CENTS / 100:.2f} ({MIN_DEPOSIT_CENTS} cents)")
        _store.deposit(account["id"], amount)
        updated = _store.get_account(account["id"])
        return {"deposited": amount, "balance": _money(updated["balance_cents"])}

    @app.post("/balance/withdraw")
    async def withdraw(req: AmountRequest, request: Request):
        """Withdraw publisher earnings. Defaults to the full publisher balance."""
        account = await _caller(request)
        available = account["publisher_balance_cents"]
        amount = req.amountCents or available
        if amount < MIN_WITHDRAWAL_CENTS:
            raise HTTPException(400, f"Minimum withdrawal is ${MIN_WITHDRAWAL_CENTS / 100:.2f} ({MIN_WITHDRAWAL_CENTS} cents)")
        if not _store.withdraw(account["id"], amount):
            raise HTTPException(400, {
                "error": "Insufficient publisher balance",
                "requested": amount,
                "available": _store.get_account(account["id"])["publisher_balance_cents"],
            })
        updated = _store.get_account(account["id"])
        return {"withdrawn": amount, "publisherBalance": _money(updated["publisher_balance_cents"])}

    # --- Protocol catalog ---

    @app.post("/protocols", status_code=201)
    async def publish(req: PublishRequest, request: Request):
        account = await _caller(request)
        _validate_protocol(req)
        try:
            protocol = _store.create_protocol(
                account["id"], req.name, req.version, req.description,
                req.handlerUrl, req.pricePerInvocationCents, req.longDescription,
            )
        except ValueError as e:
            raise HTTPException(409, str(e))
        logger.info("account %s published protocol %s (%s@%s)",
                    account["id"], protocol["id"], req.name, req.version)
        return {"protocol": _protocol_view(protocol)}

    @app.get("/protocols/{protocol_id}")
    async def get_protocol(protocol_id: str):
        protocol = _store.get_protocol(protocol_id)
        if not protocol:
            raise ProtocolUnavailable.not_found(protocol_id)
        return _protocol_view(protocol, include_handler=False)

    @app.post("/protocols/{protocol_id}/deprecate")
    async def deprecate(protocol_id: str, req: DeprecateRequest, request: Request):
        """Publisher retires a protocol. ACTIVE -> DEPRECATED, sunset in 30 days."""
        account = await _caller(request)
        protocol = _store.get_protocol(protocol_id)
        if not protocol:
            raise ProtocolUnavailable.not_found(protocol_id)
        if protocol["publisher_id"] != account["id"]:
            raise NotAuthorized("Not authorized to modify this protocol")
        updated = _store.deprecate_protocol(protocol_id, req.reason)
        if not updated:
            raise HTTPException(409, f"Protocol is {protocol['status'].lower()}")
        return {"success": True, "status": updated["status"], "sunsetAt": updated["sunset_at"]}

    # --- Invocation and disputes ---

    @app.post("/invoke/{protocol_id}")
    async def invoke(protocol_id: str, req: InvokeRequest, request: Request):
        account = await _caller(request)
        result = await _engine.settle(account["id"], protocol_id, req.input, req.debugSharing)
        status_code = 502 if result.status == InvocationStatus.FAILURE else 200
        return JSONResponse(status_code=status_code, content=result.to_dict())

    @app.get("/invocations/{invocation_id}")
    async def get_invocation(invocation_id: str, request: Request):
        """Caller or publisher of the protocol may look up an invocation."""
        account = await _caller(request)
        inv = _store.get_invocation(invocation_id)
        if not inv:
            raise InvocationNotFound(invocation_id)
        if inv["caller_id"] != account["id"]:
            protocol = _store.get_protocol(inv["protocol_id"])
            if not protocol or protocol["publisher_id"] != account["id"]:
                raise NotAuthorized("Not authorized to view this invocation")
        return _invocation_view(inv)

    @app.post("/invocations/{invocation_id}/report")
    async def report_unusable(invocation_id: str, request: Request, req: Optional[ReportRequest] = None):
        account = await _caller(request)
        reason = req.reason if req else None
        result = _adjudicator.report(account["id"], invocation_id, reason)
        return result.to_dict()

    return app
