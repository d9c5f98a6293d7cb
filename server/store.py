# SPDX-License-Identifier: AGPL-3.0-or-later
# Copyright (c) 2026 Karan Sharma
"""Ledger storage for the protocol marketplace.

SQLite-backed accounts, protocol catalog, invocations, the append-only
balance journal, and unusable-output reports.

Every balance change is a relative update (balance = balance + delta)
and every multi-row change runs as one unit of work: it commits as a whole
or rolls back as a whole. The caller debit is conditional on sufficient
funds, so concurrent reservations can never overdraw an account.
"""

import json
import sqlite3
import threading
import time
import uuid
from contextlib import contextmanager

from protocol import (
    DEFAULT_TRUST_SCORE, MIN_TRUST_SCORE, MAX_TRUST_SCORE,
    TRUST_SUCCESS_BONUS, TRUST_REFUND_PENALTY,
    DEPRECATION_SUNSET_DAYS, DEFAULT_DEPRECATION_REASON,
    InvocationStatus, ProtocolStatus, TransactionType, INVOCATION_TRANSITIONS,
    CALLER_TRANSACTION_TYPES, PUBLISHER_TRANSACTION_TYPES,
)
from server.errors import AlreadyReported, InvalidState


def _new_id() -> str:
    return uuid.uuid4().hex[:16]


class LedgerStore:
    """SQLite-backed ledger with atomic units of work."""

    def __init__(self, db_path: str = ":memory:"):
        self.db = sqlite3.connect(db_path, check_same_thread=False)
        self.db.row_factory = sqlite3.Row
        # Reentrant so reads can run inside a unit of work
        self._lock = threading.RLock()
        self._init_db()

    def _init_db(self):
        self.db.execute("PRAGMA journal_mode=WAL")
        self.db.execute("PRAGMA foreign_keys=ON")
        self.db.executescript(f"""
            CREATE TABLE IF NOT EXISTS accounts (
                id TEXT PRIMARY KEY,
                pubkey TEXT NOT NULL UNIQUE,
                trust_score INTEGER NOT NULL DEFAULT {DEFAULT_TRUST_SCORE},
                balance_cents INTEGER NOT NULL DEFAULT 0,
                publisher_balance_cents INTEGER NOT NULL DEFAULT 0,
                created_at REAL NOT NULL
            );
            CREATE TABLE IF NOT EXISTS protocols (
                id TEXT PRIMARY KEY,
                publisher_id TEXT NOT NULL REFERENCES accounts(id),
                name TEXT NOT NULL,
                version TEXT NOT NULL,
                description TEXT NOT NULL,
                long_description TEXT,
                handler_url TEXT NOT NULL,
                price_cents INTEGER NOT NULL CHECK (price_cents > 0),
                status TEXT NOT NULL DEFAULT 'ACTIVE',
                deprecated_at REAL,
                deprecation_reason TEXT,
                sunset_at REAL,
                invocation_count INTEGER NOT NULL DEFAULT 0,
                success_count INTEGER NOT NULL DEFAULT 0,
                failure_count INTEGER NOT NULL DEFAULT 0,
                refund_count INTEGER NOT NULL DEFAULT 0,
                created_at REAL NOT NULL,
                updated_at REAL NOT NULL,
                UNIQUE (publisher_id, name, version)
            );
            CREATE TABLE IF NOT EXISTS invocations (
                id TEXT PRIMARY KEY,
                caller_id TEXT NOT NULL REFERENCES accounts(id),
                protocol_id TEXT NOT NULL REFERENCES protocols(id),
                amount_cents INTEGER NOT NULL,
                publisher_amount_cents INTEGER NOT NULL,
                platform_fee_cents INTEGER NOT NULL,
                status TEXT NOT NULL,
                debug_sharing INTEGER NOT NULL DEFAULT 0,
                error_class TEXT,
                refusal_code TEXT,
                refusal_message TEXT,
                input_metadata TEXT NOT NULL DEFAULT '{{}}',
                created_at REAL NOT NULL,
                updated_at REAL NOT NULL
            );
            CREATE TABLE IF NOT EXISTS balance_transactions (
                id TEXT PRIMARY KEY,
                account_id TEXT NOT NULL REFERENCES accounts(id),
                amount_cents INTEGER NOT NULL,
                type TEXT NOT NULL,
                reference_id TEXT,
                created_at REAL NOT NULL
            );
            CREATE TABLE IF NOT EXISTS unusable_reports (
                id TEXT PRIMARY KEY,
                invocation_id TEXT NOT NULL UNIQUE REFERENCES invocations(id),
                caller_id TEXT NOT NULL REFERENCES accounts(id),
                protocol_id TEXT NOT NULL REFERENCES protocols(id),
                reason TEXT,
                flagged INTEGER NOT NULL DEFAULT 0,
                reviewed INTEGER NOT NULL DEFAULT 0,
                created_at REAL NOT NULL
            );
            CREATE INDEX IF NOT EXISTS idx_invocation_status ON invocations(status, created_at);
            CREATE INDEX IF NOT EXISTS idx_tx_account ON balance_transactions(account_id, created_at);
        """)
        self.db.commit()

    @contextmanager
    def transaction(self):
        """Run a unit of work: commit on success, roll back on any exception."""
        with self._lock:
            with self.db:
                yield self.db

    def _fetchone(self, sql: str, params: tuple = ()):
        with self._lock:
            return self.db.execute(sql, params).fetchone()

    def _fetchall(self, sql: str, params: tuple = ()):
        with self._lock:
            return self.db.execute(sql, params).fetchall()

    # --- Accounts ---

    def create_account(self, pubkey: str) -> dict:
        """Register an account bound to a public key. Raises ValueError if taken."""
        account_id = _new_id()
        try:
            with self.transaction() as db:
                db.execute(
                    "INSERT INTO accounts (id, pubkey, created_at) VALUES (?, ?, ?)",
                    (account_id, pubkey, time.time()),
                )
        except sqlite3.IntegrityError:
            raise ValueError("Account already registered for this pubkey")
        return self.get_account(account_id)

    def get_account(self, account_id: str) -> dict | None:
        row = self._fetchone("SELECT * FROM accounts WHERE id = ?", (account_id,))
        return dict(row) if row else None

    def get_account_by_pubkey(self, pubkey: str) -> dict | None:
        row = self._fetchone("SELECT * FROM accounts WHERE pubkey = ?", (pubkey,))
        return dict(row) if row else None

    def deposit(self, account_id: str, amount_cents: int) -> bool:
        """Credit spendable balance with a DEPOSIT journal entry."""
        with self.transaction() as db:
            cursor = db.execute(
                "UPDATE accounts SET balance_cents = balance_cents + ? WHERE id = ?",
                (amount_cents, account_id),
            )
            if cursor.rowcount == 0:
                return False
            self._journal(db, account_id, amount_cents, TransactionType.DEPOSIT)
        return True

    def withdraw(self, account_id: str, amount_cents: int) -> bool:
        """Debit publisher balance if it covers the amount. False otherwise."""
        with self.transaction() as db:
            cursor = db.execute(
                "UPDATE accounts SET publisher_balance_cents = publisher_balance_cents - ? "
                "WHERE id = ? AND publisher_balance_cents >= ?",
                (amount_cents, account_id, amount_cents),
            )
            if cursor.rowcount == 0:
                return False
            self._journal(db, account_id, -amount_cents, TransactionType.WITHDRAWAL)
        return True

    def list_transactions(self, account_id: str, limit: int = 50, offset: int = 0) -> list[dict]:
        rows = self._fetchall(
            "SELECT * FROM balance_transactions WHERE account_id = ? "
            "ORDER BY created_at DESC, rowid DESC LIMIT ? OFFSET ?",
            (account_id, limit, offset),
        )
        return [dict(r) for r in rows]

    def reconcile(self, account_id: str) -> dict | None:
        """Recompute both balances from the journal and compare to the account row."""
        with self._lock:
            account = self.get_account(account_id)
            if not account:
                return None
            totals = {
                r["type"]: r["total"]
                for r in self.db.execute(
                    "SELECT type, SUM(amount_cents) AS total FROM balance_transactions "
                    "WHERE account_id = ? GROUP BY type",
                    (account_id,),
                )
            }
        ledger_balance = sum(totals.get(t.value, 0) for t in CALLER_TRANSACTION_TYPES)
        ledger_publisher = sum(totals.get(t.value, 0) for t in PUBLISHER_TRANSACTION_TYPES)
        return {
            "account_id": account_id,
            "balance_cents": account["balance_cents"],
            "ledger_balance_cents": ledger_balance,
            "publisher_balance_cents": account["publisher_balance_cents"],
            "ledger_publisher_balance_cents": ledger_publisher,
            "consistent": (
                account["balance_cents"] == ledger_balance
                and account["publisher_balance_cents"] == ledger_publisher
            ),
        }

    def _journal(self, db, account_id: str, amount_cents: int,
                 tx_type: TransactionType, reference_id: str | None = None):
        db.execute(
            "INSERT INTO balance_transactions (id, account_id, amount_cents, type, reference_id, created_at) "
            "VALUES (?, ?, ?, ?, ?, ?)",
            (_new_id(), account_id, amount_cents, tx_type.value, reference_id, time.time()),
        )

    # --- Protocol catalog ---

    def create_protocol(self, publisher_id: str, name: str, version: str, description: str,
                        handler_url: str, price_cents: int, long_description: str | None = None) -> dict:
        """Publish a protocol. Raises ValueError on duplicate (publisher, name, version)."""
        protocol_id = _new_id()
        now = time.time()
        try:
            with self.transaction() as db:
                db.execute(
                    "INSERT INTO protocols (id, publisher_id, name, version, description, long_description, "
                    "handler_url, price_cents, created_at, updated_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                    (protocol_id, publisher_id, name, version, description, long_description,
                     handler_url, price_cents, now, now),
                )
        except sqlite3.IntegrityError as e:
            if "UNIQUE" in str(e):
                raise ValueError("Protocol with this name and version already exists")
            raise ValueError(f"Invalid protocol: {e}")
        return self.get_protocol(protocol_id)

    def get_protocol(self, protocol_id: str) -> dict | None:
        row = self._fetchone("SELECT * FROM protocols WHERE id = ?", (protocol_id,))
        return dict(row) if row else None

    def deprecate_protocol(self, protocol_id: str, reason: str | None = None) -> dict | None:
        """ACTIVE -> DEPRECATED with a sunset date. None if the protocol is not ACTIVE."""
        now = time.time()
        sunset = now + DEPRECATION_SUNSET_DAYS * 86400
        with self.transaction() as db:
            cursor = db.execute(
                "UPDATE protocols SET status = ?, deprecated_at = ?, deprecation_reason = ?, "
                "sunset_at = ?, updated_at = ? WHERE id = ? AND status = ?",
                (ProtocolStatus.DEPRECATED.value, now, reason or DEFAULT_DEPRECATION_REASON,
                 sunset, now, protocol_id, ProtocolStatus.ACTIVE.value),
            )
            if cursor.rowcount == 0:
                return None
        return self.get_protocol(protocol_id)

    def suspend_protocol(self, protocol_id: str) -> bool:
        """Administrative suspension. Suspended protocols reject invocations."""
        with self.transaction() as db:
            cursor = db.execute(
                "UPDATE protocols SET status = ?, updated_at = ? WHERE id = ?",
                (ProtocolStatus.SUSPENDED.value, time.time(), protocol_id),
            )
        return cursor.rowcount > 0

    # --- Invocations ---

    def reserve_invocation(self, caller_id: str, protocol: dict, platform_fee_cents: int,
                           publisher_amount_cents: int, input_metadata: dict,
                           debug_sharing: bool = False) -> dict | None:
        """Create a PENDING invocation and debit the caller, as one unit.

        The debit only applies if the balance covers the price. Returns None
        (and writes nothing) when it does not.
        """
        invocation_id = _new_id()
        amount = protocol["price_cents"]
        now = time.time()
        with self.transaction() as db:
            cursor = db.execute(
                "UPDATE accounts SET balance_cents = balance_cents - ? WHERE id = ? AND balance_cents >= ?",
                (amount, caller_id, amount),
            )
            if cursor.rowcount == 0:
                return None
            db.execute(
                "INSERT INTO invocations (id, caller_id, protocol_id, amount_cents, publisher_amount_cents, "
                "platform_fee_cents, status, debug_sharing, input_metadata, created_at, updated_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (invocation_id, caller_id, protocol["id"], amount, publisher_amount_cents,
                 platform_fee_cents, InvocationStatus.PENDING.value, int(debug_sharing),
                 json.dumps(input_metadata), now, now),
            )
            self._journal(db, caller_id, -amount, TransactionType.INVOCATION, invocation_id)
        return self.get_invocation(invocation_id)

    def get_invocation(self, invocation_id: str) -> dict | None:
        row = self._fetchone("SELECT * FROM invocations WHERE id = ?", (invocation_id,))
        if not row:
            return None
        return self._invocation_to_dict(row)

    def list_stale_pending(self, created_before: float, limit: int = 100) -> list[dict]:
        rows = self._fetchall(
            "SELECT * FROM invocations WHERE status = ? AND created_at < ? ORDER BY created_at LIMIT ?",
            (InvocationStatus.PENDING.value, created_before, limit),
        )
        return [self._invocation_to_dict(r) for r in rows]

    def _transition(self, db, invocation_id: str, current: InvocationStatus,
                    new: InvocationStatus, **fields) -> None:
        """Conditionally move an invocation between states. Raises InvalidState."""
        if new not in INVOCATION_TRANSITIONS[current]:
            raise InvalidState(f"Invalid state transition: {current.value} -> {new.value}")
        assignments = ["status = ?", "updated_at = ?"]
        params: list = [new.value, time.time()]
        for column, value in fields.items():
            assignments.append(f"{column} = ?")
            params.append(value)
        params.extend([invocation_id, current.value])
        cursor = db.execute(
            f"UPDATE invocations SET {', '.join(assignments)} WHERE id = ? AND status = ?",
            params,
        )
        if cursor.rowcount == 0:
            raise InvalidState(
                f"Invocation is not {current.value.lower()}", {"invocation_id": invocation_id}
            )

    def refund_invocation(self, invocation_id: str, status: InvocationStatus,
                          error_class: str | None = None, refusal_code: str | None = None,
                          refusal_message: str | None = None, count_failure: bool = False) -> dict:
        """Resolve a PENDING invocation to FAILURE/REFUSED and return the caller's funds."""
        with self.transaction() as db:
            inv = db.execute(
                "SELECT caller_id, protocol_id, amount_cents FROM invocations WHERE id = ?",
                (invocation_id,),
            ).fetchone()
            if not inv:
                raise InvalidState("Invocation not found", {"invocation_id": invocation_id})
            self._transition(
                db, invocation_id, InvocationStatus.PENDING, status,
                error_class=error_class, refusal_code=refusal_code, refusal_message=refusal_message,
            )
            db.execute(
                "UPDATE accounts SET balance_cents = balance_cents + ? WHERE id = ?",
                (inv["amount_cents"], inv["caller_id"]),
            )
            self._journal(db, inv["caller_id"], inv["amount_cents"], TransactionType.REFUND, invocation_id)
            if count_failure:
                db.execute(
                    "UPDATE protocols SET invocation_count = invocation_count + 1, "
                    "failure_count = failure_count + 1 WHERE id = ?",
                    (inv["protocol_id"],),
                )
        return self.get_invocation(invocation_id)

    def complete_invocation(self, invocation_id: str, trust_bonus: int = TRUST_SUCCESS_BONUS) -> dict:
        """PENDING -> SUCCESS: pay the publisher, bump counters, reward caller trust."""
        with self.transaction() as db:
            inv = db.execute(
                "SELECT i.caller_id, i.protocol_id, i.publisher_amount_cents, p.publisher_id "
                "FROM invocations i JOIN protocols p ON p.id = i.protocol_id WHERE i.id = ?",
                (invocation_id,),
            ).fetchone()
            if not inv:
                raise InvalidState("Invocation not found", {"invocation_id": invocation_id})
            self._transition(db, invocation_id, InvocationStatus.PENDING, InvocationStatus.SUCCESS)
            db.execute(
                "UPDATE accounts SET publisher_balance_cents = publisher_balance_cents + ? WHERE id = ?",
                (inv["publisher_amount_cents"], inv["publisher_id"]),
            )
            self._journal(db, inv["publisher_id"], inv["publisher_amount_cents"],
                          TransactionType.EARNING, invocation_id)
            db.execute(
                "UPDATE protocols SET invocation_count = invocation_count + 1, "
                "success_count = success_count + 1 WHERE id = ?",
                (inv["protocol_id"],),
            )
            db.execute(
                "UPDATE accounts SET trust_score = MIN(trust_score + ?, ?) WHERE id = ?",
                (trust_bonus, MAX_TRUST_SCORE, inv["caller_id"]),
            )
        return self.get_invocation(invocation_id)

    def _invocation_to_dict(self, row) -> dict:
        d = dict(row)
        d["debug_sharing"] = bool(d["debug_sharing"])
        d["input_metadata"] = json.loads(d["input_metadata"] or "{}")
        return d

    # --- Unusable reports ---

    def get_report_for_invocation(self, invocation_id: str) -> dict | None:
        row = self._fetchone("SELECT * FROM unusable_reports WHERE invocation_id = ?", (invocation_id,))
        return self._report_to_dict(row) if row else None

    def file_report(self, invocation: dict, caller_id: str, reason: str | None,
                    flagged: bool, refund: bool, trust_penalty: int = TRUST_REFUND_PENALTY) -> dict:
        """Record a report and, if refunding, reverse the settlement in the same unit.

        Refund reverses SUCCESS: caller credited the full amount, publisher
        charged back its share, invocation -> REFUNDED, refund counter bumped,
        caller trust lowered. Any failure rolls back the report row too.
        """
        report_id = _new_id()
        invocation_id = invocation["id"]
        try:
            with self.transaction() as db:
                db.execute(
                    "INSERT INTO unusable_reports (id, invocation_id, caller_id, protocol_id, reason, "
                    "flagged, created_at) VALUES (?, ?, ?, ?, ?, ?, ?)",
                    (report_id, invocation_id, caller_id, invocation["protocol_id"], reason,
                     int(flagged), time.time()),
                )
                if refund:
                    publisher = db.execute(
                        "SELECT publisher_id FROM protocols WHERE id = ?", (invocation["protocol_id"],)
                    ).fetchone()
                    self._transition(db, invocation_id, InvocationStatus.SUCCESS, InvocationStatus.REFUNDED)
                    db.execute(
                        "UPDATE accounts SET balance_cents = balance_cents + ? WHERE id = ?",
                        (invocation["amount_cents"], caller_id),
                    )
                    self._journal(db, caller_id, invocation["amount_cents"],
                                  TransactionType.REFUND, invocation_id)
                    db.execute(
                        "UPDATE accounts SET publisher_balance_cents = publisher_balance_cents - ? WHERE id = ?",
                        (invocation["publisher_amount_cents"], publisher["publisher_id"]),
                    )
                    self._journal(db, publisher["publisher_id"], -invocation["publisher_amount_cents"],
                                  TransactionType.CHARGEBACK, invocation_id)
                    db.execute(
                        "UPDATE protocols SET refund_count = refund_count + 1 WHERE id = ?",
                        (invocation["protocol_id"],),
                    )
                    db.execute(
                        "UPDATE accounts SET trust_score = MAX(trust_score - ?, ?) WHERE id = ?",
                        (trust_penalty, MIN_TRUST_SCORE, caller_id),
                    )
        except sqlite3.IntegrityError as e:
            if "unusable_reports.invocation_id" in str(e):
                raise AlreadyReported(invocation_id)
            raise
        return self.get_report_for_invocation(invocation_id)

    def list_flagged_reports(self, include_reviewed: bool = False, limit: int = 50) -> list[dict]:
        sql = "SELECT * FROM unusable_reports WHERE flagged = 1"
        if not include_reviewed:
            sql += " AND reviewed = 0"
        rows = self._fetchall(sql + " ORDER BY created_at LIMIT ?", (limit,))
        return [self._report_to_dict(r) for r in rows]

    def mark_report_reviewed(self, report_id: str) -> bool:
        with self.transaction() as db:
            cursor = db.execute(
                "UPDATE unusable_reports SET reviewed = 1 WHERE id = ? AND reviewed = 0",
                (report_id,),
            )
        return cursor.rowcount > 0

    def _report_to_dict(self, row) -> dict:
        d = dict(row)
        d["flagged"] = bool(d["flagged"])
        d["reviewed"] = bool(d["reviewed"])
        return d

    def close(self):
        self.db.close()
