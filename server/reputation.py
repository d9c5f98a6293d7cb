# SPDX-License-Identifier: AGPL-3.0-or-later
# Copyright (c) 2026 Karan Sharma
"""Reputation for the protocol marketplace.

Caller trust gates dispute auto-refunds. Protocol reputation is derived
from the counters the settlement engine maintains.
"""

from dataclasses import dataclass

from protocol import AUTO_REFUND_TRUST_THRESHOLD


def can_auto_refund(trust_score: int, threshold: int = AUTO_REFUND_TRUST_THRESHOLD) -> bool:
    return trust_score >= threshold


@dataclass
class ProtocolStats:
    """Reputation data for a protocol, built from its counters."""
    invocation_count: int = 0
    success_count: int = 0
    failure_count: int = 0
    refund_count: int = 0

    @classmethod
    def from_protocol(cls, protocol: dict) -> "ProtocolStats":
        return cls(
            invocation_count=protocol.get("invocation_count", 0),
            success_count=protocol.get("success_count", 0),
            failure_count=protocol.get("failure_count", 0),
            refund_count=protocol.get("refund_count", 0),
        )

    def completed(self) -> int:
        return self.success_count + self.failure_count

    def success_rate(self) -> float | None:
        if self.completed() == 0:
            return None
        return self.success_count / self.completed()

    def refund_rate(self) -> float | None:
        if self.success_count == 0:
            return None
        return self.refund_count / self.success_count

    def to_dict(self) -> dict:
        rate = self.success_rate()
        refunds = self.refund_rate()
        return {
            "invocationCount": self.invocation_count,
            "successCount": self.success_count,
            "failureCount": self.failure_count,
            "refundCount": self.refund_count,
            "successRate": f"{rate * 100:.1f}%" if rate is not None else "N/A",
            "refundRate": f"{refunds * 100:.1f}%" if refunds is not None else "N/A",
        }
