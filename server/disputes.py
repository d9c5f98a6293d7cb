# SPDX-License-Identifier: AGPL-3.0-or-later
# Copyright (c) 2026 Karan Sharma
"""Unusable-output disputes.

A caller may report a SUCCESS invocation once. Trusted callers
(trust >= threshold) are refunded automatically and pay a trust penalty;
everyone else is flagged for manual review with no money moving.
"""

import logging
from dataclasses import dataclass

from protocol import AUTO_REFUND_TRUST_THRESHOLD, TRUST_REFUND_PENALTY, InvocationStatus
from server.errors import (
    AccountNotFound, AlreadyReported, InvalidState, InvocationNotFound, NotAuthorized,
)
from server.reputation import can_auto_refund
from server.store import LedgerStore

logger = logging.getLogger(__name__)


@dataclass
class ReportResult:
    report_id: str
    invocation_id: str
    refunded: bool
    flagged: bool

    def to_dict(self) -> dict:
        return {
            "reported": True,
            "reportId": self.report_id,
            "refunded": self.refunded,
            "flagged": self.flagged,
            "message": (
                "Report accepted, refund processed" if self.refunded
                else "Report flagged for manual review"
            ),
        }


class DisputeAdjudicator:
    """Decides and applies the outcome of unusable-output reports."""

    def __init__(self, store: LedgerStore, threshold: int = AUTO_REFUND_TRUST_THRESHOLD,
                 trust_penalty: int = TRUST_REFUND_PENALTY):
        self.store = store
        self.threshold = threshold
        self.trust_penalty = trust_penalty

    def report(self, caller_id: str, invocation_id: str, reason: str | None = None) -> ReportResult:
        invocation = self.store.get_invocation(invocation_id)
        if not invocation:
            raise InvocationNotFound(invocation_id)
        if invocation["caller_id"] != caller_id:
            raise NotAuthorized("Not authorized to report this invocation")
        # A prior report wins over the status check, so a refunded call still
        # answers AlreadyReported
        if self.store.get_report_for_invocation(invocation_id):
            raise AlreadyReported(invocation_id)
        if invocation["status"] != InvocationStatus.SUCCESS.value:
            raise InvalidState("Can only report successful invocations",
                               {"status": invocation["status"]})

        caller = self.store.get_account(caller_id)
        if not caller:
            raise AccountNotFound(caller_id)

        refund = can_auto_refund(caller["trust_score"], self.threshold)
        flagged = not refund

        report = self.store.file_report(
            invocation, caller_id, reason, flagged=flagged, refund=refund,
            trust_penalty=self.trust_penalty,
        )
        if refund:
            logger.info("report on invocation %s: refunded %d to caller %s (trust %d)",
                        invocation_id, invocation["amount_cents"], caller_id, caller["trust_score"])
        else:
            logger.warning("report on invocation %s flagged for review: caller %s trust %d",
                           invocation_id, caller_id, caller["trust_score"])

        return ReportResult(
            report_id=report["id"],
            invocation_id=invocation_id,
            refunded=refund,
            flagged=flagged,
        )
