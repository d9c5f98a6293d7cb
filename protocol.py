# SPDX-License-Identifier: AGPL-3.0-or-later
# Copyright (c) 2026 Karan Sharma
"""Shared constants and state machines for the protocol marketplace.

All modules import from here to avoid circular dependencies.
Money is always an integer number of cents.
"""

from enum import Enum

# --- Settlement Constants ---

PLATFORM_FEE_PERCENT = 15  # platform keeps floor(price * 15 / 100)
HANDLER_TIMEOUT_SECONDS = 30.0  # deadline for the outbound handler call

# Handler response contract
REFUSAL_STATUS_CODE = 422
DEFAULT_REFUSAL_CODE = "REFUSED"
DEFAULT_REFUSAL_MESSAGE = "Protocol refused this input"
TIMEOUT_ERROR_CLASS = "TIMEOUT"
ABANDONED_ERROR_CLASS = "ABANDONED"

# Seconds past the handler deadline before a PENDING invocation counts as abandoned
ABANDONED_GRACE_SECONDS = 60

# --- Trust ---

DEFAULT_TRUST_SCORE = 100
MIN_TRUST_SCORE = 0
MAX_TRUST_SCORE = 200
TRUST_SUCCESS_BONUS = 1
TRUST_REFUND_PENALTY = 10
# Below this a dispute is flagged for manual review; at or above it auto-refunds
AUTO_REFUND_TRUST_THRESHOLD = 50

# --- Catalog ---

DEPRECATION_SUNSET_DAYS = 30
DEFAULT_DEPRECATION_REASON = "Deprecated by publisher"
DESCRIPTION_WORDS = 7
MAX_NAME_LENGTH = 100
MAX_VERSION_LENGTH = 20

# --- Balance ---

MIN_DEPOSIT_CENTS = 500
MIN_WITHDRAWAL_CENTS = 1000
MAX_PAGE_SIZE = 200


# --- State Machines ---

class ProtocolStatus(Enum):
    ACTIVE = "ACTIVE"
    DEPRECATED = "DEPRECATED"
    SUSPENDED = "SUSPENDED"


class InvocationStatus(Enum):
    PENDING = "PENDING"
    SUCCESS = "SUCCESS"
    FAILURE = "FAILURE"
    REFUSED = "REFUSED"
    REFUNDED = "REFUNDED"  # disputed after SUCCESS


# Valid invocation transitions: current_state -> set of valid next states
INVOCATION_TRANSITIONS = {
    InvocationStatus.PENDING: {
        InvocationStatus.SUCCESS,
        InvocationStatus.FAILURE,
        InvocationStatus.REFUSED,
    },
    InvocationStatus.SUCCESS: {InvocationStatus.REFUNDED},
    InvocationStatus.FAILURE: set(),
    InvocationStatus.REFUSED: set(),
    InvocationStatus.REFUNDED: set(),
}


# --- Ledger ---

class TransactionType(Enum):
    DEPOSIT = "DEPOSIT"
    INVOCATION = "INVOCATION"
    REFUND = "REFUND"
    EARNING = "EARNING"
    CHARGEBACK = "CHARGEBACK"  # publisher share clawed back on a refunded dispute
    WITHDRAWAL = "WITHDRAWAL"


# Which balance each transaction type moves
CALLER_TRANSACTION_TYPES = {
    TransactionType.DEPOSIT,
    TransactionType.INVOCATION,
    TransactionType.REFUND,
}
PUBLISHER_TRANSACTION_TYPES = {
    TransactionType.EARNING,
    TransactionType.CHARGEBACK,
    TransactionType.WITHDRAWAL,
}
