# SPDX-License-Identifier: AGPL-3.0-or-later
# Copyright (c) 2026 Karan Sharma
"""Invocation settlement engine.

One settle() call carries an invocation end to end:

1. Check protocol (exists, ACTIVE), caller account, and balance.
2. Reserve: create a PENDING invocation and debit the caller as one unit.
3. Dispatch: POST {input, invocationId} to the handler under a deadline.
4. Resolve the outcome:
   - 2xx + JSON body  -> SUCCESS, publisher paid, caller trust +1
   - 422              -> REFUSED, full refund, counters untouched
   - anything else    -> FAILURE, full refund, invocation/failure counters +1

Every dispatched invocation reaches a terminal state before settle()
returns. Handler problems never raise; they come back as results.
"""

import asyncio
import logging
import os
import time
from dataclasses import dataclass, field

import httpx

from protocol import (
    PLATFORM_FEE_PERCENT, HANDLER_TIMEOUT_SECONDS, REFUSAL_STATUS_CODE,
    DEFAULT_REFUSAL_CODE, DEFAULT_REFUSAL_MESSAGE, TIMEOUT_ERROR_CLASS,
    ABANDONED_ERROR_CLASS, ABANDONED_GRACE_SECONDS,
    InvocationStatus, ProtocolStatus,
)
from redactor import redact
from server.errors import AccountNotFound, InsufficientBalance, InvalidState, ProtocolUnavailable
from server.fees import split_price
from server.store import LedgerStore

logger = logging.getLogger(__name__)


@dataclass
class SettlementConfig:
    """Fee and deadline settings handed to the engine at construction."""
    fee_percent: int = PLATFORM_FEE_PERCENT
    handler_timeout: float = HANDLER_TIMEOUT_SECONDS

    @classmethod
    def from_env(cls) -> "SettlementConfig":
        return cls(
            fee_percent=int(os.environ.get("MARKET_FEE_PERCENT", PLATFORM_FEE_PERCENT)),
            handler_timeout=float(os.environ.get("MARKET_HANDLER_TIMEOUT", HANDLER_TIMEOUT_SECONDS)),
        )


@dataclass
class HandlerOutcome:
    """Classified result of one handler call."""
    status: InvocationStatus
    output: object = None
    error_class: str | None = None
    refusal_code: str | None = None
    refusal_message: str | None = None


@dataclass
class SettlementResult:
    invocation_id: str
    status: InvocationStatus
    output: object = None
    error_class: str | None = None
    refusal_code: str | None = None
    refusal_message: str | None = None
    amounts: dict = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.status == InvocationStatus.SUCCESS

    def to_dict(self) -> dict:
        d = {"invocationId": self.invocation_id, "status": self.status.value}
        if self.status == InvocationStatus.SUCCESS:
            d["output"] = self.output
        elif self.status == InvocationStatus.REFUSED:
            d["refusalCode"] = self.refusal_code
            d["refusalMessage"] = self.refusal_message
        else:
            d["error"] = self.error_class
        return d


def classify_response(response: httpx.Response) -> HandlerOutcome:
    """Map a handler HTTP response onto an invocation outcome."""
    if response.status_code == REFUSAL_STATUS_CODE:
        try:
            body = response.json()
        except ValueError:
            body = {}
        if not isinstance(body, dict):
            body = {}
        return HandlerOutcome(
            status=InvocationStatus.REFUSED,
            error_class=DEFAULT_REFUSAL_CODE,
            refusal_code=str(body.get("code") or DEFAULT_REFUSAL_CODE),
            refusal_message=str(body.get("message") or DEFAULT_REFUSAL_MESSAGE),
        )

    if not response.is_success:
        return HandlerOutcome(status=InvocationStatus.FAILURE, error_class=f"HTTP {response.status_code}")

    try:
        output = response.json()
    except ValueError:
        return HandlerOutcome(status=InvocationStatus.FAILURE, error_class="Invalid JSON response")
    return HandlerOutcome(status=InvocationStatus.SUCCESS, output=output)


class SettlementEngine:
    """Reserve, dispatch, and settle paid protocol invocations.

    transport: optional httpx async transport (tests pass httpx.MockTransport).
    """

    def __init__(self, store: LedgerStore, config: SettlementConfig | None = None,
                 transport: httpx.AsyncBaseTransport | None = None):
        self.store = store
        self.config = config or SettlementConfig()
        self.transport = transport

    async def settle(self, caller_id: str, protocol_id: str, input_value,
                     debug_sharing: bool = False) -> SettlementResult:
        protocol = self.store.get_protocol(protocol_id)
        if not protocol:
            raise ProtocolUnavailable.not_found(protocol_id)
        if protocol["status"] != ProtocolStatus.ACTIVE.value:
            raise ProtocolUnavailable.rejected(protocol_id, protocol["status"])

        caller = self.store.get_account(caller_id)
        if not caller:
            raise AccountNotFound(caller_id)

        price = protocol["price_cents"]
        if caller["balance_cents"] < price:
            raise InsufficientBalance(price, caller["balance_cents"])

        platform_fee, publisher_amount = split_price(price, self.config.fee_percent)
        metadata = redact(input_value)

        invocation = self.store.reserve_invocation(
            caller_id, protocol, platform_fee, publisher_amount, metadata, debug_sharing,
        )
        if invocation is None:
            # Balance was spent by a concurrent invocation after the check above
            current = self.store.get_account(caller_id)
            raise InsufficientBalance(price, current["balance_cents"] if current else 0)

        invocation_id = invocation["id"]
        logger.info("reserved invocation %s: caller=%s protocol=%s amount=%d input=%s",
                    invocation_id, caller_id, protocol_id, price, metadata)

        outcome = await self.dispatch(protocol["handler_url"], input_value, invocation_id)
        amounts = {
            "amount": price,
            "platformFee": platform_fee,
            "publisherAmount": publisher_amount,
        }
        return self._resolve(invocation_id, outcome, amounts)

    async def dispatch(self, handler_url: str, input_value, invocation_id: str) -> HandlerOutcome:
        """Call the handler once, bounded by the configured deadline."""
        timeout = self.config.handler_timeout
        payload = {"input": input_value, "invocationId": invocation_id}
        try:
            async with httpx.AsyncClient(transport=self.transport, timeout=timeout) as client:
                response = await asyncio.wait_for(
                    client.post(handler_url, json=payload), timeout=timeout,
                )
        except (asyncio.TimeoutError, httpx.TimeoutException):
            logger.warning("invocation %s: handler timed out after %.1fs", invocation_id, timeout)
            return HandlerOutcome(status=InvocationStatus.FAILURE, error_class=TIMEOUT_ERROR_CLASS)
        except httpx.HTTPError as e:
            logger.warning("invocation %s: handler transport error: %s", invocation_id, e)
            return HandlerOutcome(status=InvocationStatus.FAILURE, error_class=str(e) or type(e).__name__)
        except Exception as e:
            # Funds are already reserved; anything else still settles as a refunded failure
            logger.exception("invocation %s: handler call raised", invocation_id)
            return HandlerOutcome(status=InvocationStatus.FAILURE, error_class=str(e) or type(e).__name__)
        return classify_response(response)

    def _resolve(self, invocation_id: str, outcome: HandlerOutcome, amounts: dict) -> SettlementResult:
        if outcome.status == InvocationStatus.SUCCESS:
            self.store.complete_invocation(invocation_id)
            logger.info("invocation %s settled: SUCCESS", invocation_id)
        elif outcome.status == InvocationStatus.REFUSED:
            # Refusals are refunded but not counted as attempts
            self.store.refund_invocation(
                invocation_id, InvocationStatus.REFUSED,
                error_class=outcome.error_class,
                refusal_code=outcome.refusal_code,
                refusal_message=outcome.refusal_message,
            )
            logger.info("invocation %s refused (%s), caller refunded", invocation_id, outcome.refusal_code)
        else:
            self.store.refund_invocation(
                invocation_id, InvocationStatus.FAILURE,
                error_class=outcome.error_class, count_failure=True,
            )
            logger.info("invocation %s failed (%s), caller refunded", invocation_id, outcome.error_class)

        return SettlementResult(
            invocation_id=invocation_id,
            status=outcome.status,
            output=outcome.output,
            error_class=outcome.error_class,
            refusal_code=outcome.refusal_code,
            refusal_message=outcome.refusal_message,
            amounts=amounts,
        )

    def sweep_abandoned(self, older_than: float | None = None, now: float | None = None) -> list[str]:
        """Force PENDING invocations left by a crash to FAILURE with a refund.

        older_than: age in seconds; defaults to the handler deadline plus a grace margin.
        Returns the ids that were resolved.
        """
        if older_than is None:
            older_than = self.config.handler_timeout + ABANDONED_GRACE_SECONDS
        cutoff = (now if now is not None else time.time()) - older_than
        resolved = []
        for inv in self.store.list_stale_pending(cutoff):
            try:
                self.store.refund_invocation(
                    inv["id"], InvocationStatus.FAILURE,
                    error_class=ABANDONED_ERROR_CLASS, count_failure=True,
                )
            except InvalidState:
                continue  # settled concurrently
            logger.warning("invocation %s abandoned in PENDING, caller %s refunded",
                           inv["id"], inv["caller_id"])
            resolved.append(inv["id"])
        return resolved
