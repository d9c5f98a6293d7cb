# SPDX-License-Identifier: AGPL-3.0-or-later
# Copyright (c) 2026 Karan Sharma
"""Error taxonomy for settlement and disputes.

Every error here is raised before any ledger mutation (or inside a unit of
work that is rolled back). Handler failures are not errors: the engine
refunds and returns a FAILURE/REFUSED result instead.
"""


class MarketError(Exception):
    """Base error. Carries an HTTP status for the API layer."""

    status_code = 400

    def __init__(self, message: str, details: dict | None = None, status_code: int | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}
        if status_code is not None:
            self.status_code = status_code

    def __str__(self):
        if self.details:
            details_str = ", ".join(f"{k}={v}" for k, v in self.details.items())
            return f"{self.message} ({details_str})"
        return self.message

    def to_dict(self) -> dict:
        return {"error": self.message, **self.details}


class ProtocolUnavailable(MarketError):
    """Protocol missing (404) or not ACTIVE (400)."""

    @classmethod
    def not_found(cls, protocol_id: str) -> "ProtocolUnavailable":
        return cls("Protocol not found", {"protocol_id": protocol_id}, status_code=404)

    @classmethod
    def rejected(cls, protocol_id: str, status: str) -> "ProtocolUnavailable":
        return cls(f"Protocol is {status.lower()}", {"protocol_id": protocol_id}, status_code=400)


class AccountNotFound(MarketError):
    status_code = 404

    def __init__(self, account_id: str):
        super().__init__("Account not found", {"account_id": account_id})


class InsufficientBalance(MarketError):
    status_code = 402

    def __init__(self, required: int, available: int):
        super().__init__("Insufficient balance", {"required": required, "available": available})
        self.required = required
        self.available = available


class InvocationNotFound(MarketError):
    status_code = 404

    def __init__(self, invocation_id: str):
        super().__init__("Invocation not found", {"invocation_id": invocation_id})


class NotAuthorized(MarketError):
    status_code = 403


class InvalidState(MarketError):
    status_code = 400


class AlreadyReported(MarketError):
    status_code = 409

    def __init__(self, invocation_id: str):
        super().__init__("Already reported", {"invocation_id": invocation_id})
