"""
Spend-limit policy and the local spend ledger.

Uses a SQLite entry log so reserve/finalize operations are atomic across
threads and processes. The daily window is a rolling 24 hours, not a
calendar day.
"""

from __future__ import annotations

import sqlite3
import time
import uuid
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from pathlib import Path
from typing import Callable, Optional

from .money import (
    amount_usd_to_micros,
    format_usd_from_micros,
    limit_usd_to_micros,
    micros_to_usd_float,
)
from .storage import ensure_private_dir, exclusive_lock


DEFAULT_LEDGER_DIR = Path.home() / ".tapwallet" / "ledger"
DAILY_WINDOW_SECONDS = 24 * 60 * 60


class EntryStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    FAILED = "failed"


_TERMINAL = {EntryStatus.APPROVED, EntryStatus.REJECTED, EntryStatus.FAILED}


@dataclass
class SpendLimits:
    """Operator spend policy in USD. None means no ceiling for that check."""

    max_transaction_amount: Optional[float] = 10.0
    daily_limit: Optional[float] = 50.0
    auto_approve_under: Optional[float] = 1.0

    def to_dict(self) -> dict:
        return {
            "max_transaction_amount": self.max_transaction_amount,
            "daily_limit": self.daily_limit,
            "auto_approve_under": self.auto_approve_under,
        }

    @classmethod
    def from_dict(cls, d: dict) -> SpendLimits:
        defaults = cls()
        return cls(
            max_transaction_amount=_optional_amount(d, "max_transaction_amount", defaults.max_transaction_amount),
            daily_limit=_optional_amount(d, "daily_limit", defaults.daily_limit),
            auto_approve_under=_optional_amount(d, "auto_approve_under", defaults.auto_approve_under),
        )


def _optional_amount(d: dict, key: str, default: Optional[float]) -> Optional[float]:
    # An explicit null disables the ceiling; an absent key keeps the default.
    if key not in d:
        return default
    value = d[key]
    if value is None:
        return None
    amount = float(value)
    if amount < 0:
        raise ValueError(f"{key} must not be negative")
    return amount


@dataclass
class ValidationResult:
    valid: bool
    errors: list[str] = field(default_factory=list)
    auto_approve: bool = False


@dataclass
class LedgerEntry:
    """A single spend-ledger record."""

    entry_id: str
    timestamp: float
    amount_micros: int
    status: EntryStatus
    merchant: str
    description: str
    tx_hash: Optional[str] = None

    @property
    def amount_usd(self) -> float:
        return micros_to_usd_float(self.amount_micros)

    def to_dict(self) -> dict:
        return {
            "entry_id": self.entry_id,
            "timestamp": self.timestamp,
            "amount_usd": self.amount_usd,
            "status": self.status.value,
            "merchant": self.merchant,
            "description": self.description,
            "tx_hash": self.tx_hash,
        }


@dataclass
class Reservation:
    """Result of a reserve attempt."""

    result: ValidationResult
    entry: Optional[LedgerEntry] = None

    @property
    def allowed(self) -> bool:
        return self.result.valid and self.entry is not None


class SpendLimitValidator:
    """
    Applies SpendLimits against the rolling daily spend.

    State is persisted in SQLite with BEGIN IMMEDIATE transactions, plus an
    fcntl profile lock, so check-then-append is atomic under concurrency.
    """

    def __init__(
        self,
        limits: Optional[SpendLimits] = None,
        ledger_dir: Optional[Path] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.limits = limits or SpendLimits()
        self.ledger_dir = ledger_dir or DEFAULT_LEDGER_DIR
        ensure_private_dir(self.ledger_dir)
        self.db_path = self.ledger_dir / "spend.sqlite3"
        self._lock_path = self.ledger_dir / ".spend.lock"
        self._clock = clock
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, timeout=30.0, isolation_level=None)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_db(self) -> None:
        with exclusive_lock(self._lock_path), self._connect() as conn:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA synchronous=FULL")
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS spend_ledger (
                    entry_id TEXT PRIMARY KEY,
                    timestamp REAL NOT NULL,
                    amount_micros INTEGER NOT NULL,
                    status TEXT NOT NULL,
                    merchant TEXT NOT NULL,
                    description TEXT NOT NULL,
                    tx_hash TEXT
                )
                """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_spend_ledger_timestamp ON spend_ledger (timestamp)"
            )

    def _row_to_entry(self, row: sqlite3.Row) -> LedgerEntry:
        return LedgerEntry(
            entry_id=row["entry_id"],
            timestamp=row["timestamp"],
            amount_micros=row["amount_micros"],
            status=EntryStatus(row["status"]),
            merchant=row["merchant"],
            description=row["description"],
            tx_hash=row["tx_hash"],
        )

    def _window_total(self, conn: sqlite3.Connection, include_pending: bool) -> int:
        statuses = [EntryStatus.APPROVED.value]
        if include_pending:
            statuses.append(EntryStatus.PENDING.value)
        placeholders = ", ".join("?" for _ in statuses)
        row = conn.execute(
            f"""
            SELECT COALESCE(SUM(amount_micros), 0) AS total
            FROM spend_ledger
            WHERE status IN ({placeholders}) AND timestamp > ?
            """,
            (*statuses, self._clock() - DAILY_WINDOW_SECONDS),
        ).fetchone()
        return int(row["total"])

    def _check_limits(self, amount_micros: int, daily_micros: int) -> ValidationResult:
        if amount_micros <= 0:
            return ValidationResult(valid=False, errors=["amount must be positive"])

        errors = []
        if self.limits.max_transaction_amount is not None:
            max_tx_micros = limit_usd_to_micros(self.limits.max_transaction_amount)
            if amount_micros > max_tx_micros:
                errors.append(
                    f"Amount {format_usd_from_micros(amount_micros)} exceeds per-transaction "
                    f"limit {format_usd_from_micros(max_tx_micros)}"
                )

        if self.limits.daily_limit is not None:
            daily_limit_micros = limit_usd_to_micros(self.limits.daily_limit)
            if daily_micros + amount_micros > daily_limit_micros:
                errors.append(
                    f"Amount {format_usd_from_micros(amount_micros)} would exceed daily limit "
                    f"{format_usd_from_micros(daily_limit_micros)} "
                    f"(spent {format_usd_from_micros(daily_micros)} in the last 24h)"
                )

        if errors:
            return ValidationResult(valid=False, errors=errors)

        auto_approve = (
            self.limits.auto_approve_under is None
            or amount_micros <= limit_usd_to_micros(self.limits.auto_approve_under)
        )
        return ValidationResult(valid=True, auto_approve=auto_approve)

    def validate_transaction(self, amount: Decimal | float | int | str) -> ValidationResult:
        """Check a proposed spend against the limits without reserving it."""
        amount_micros = amount_usd_to_micros(amount)
        with exclusive_lock(self._lock_path), self._connect() as conn:
            daily = self._window_total(conn, include_pending=False)
        return self._check_limits(amount_micros, daily)

    def daily_total_micros(self) -> int:
        with exclusive_lock(self._lock_path), self._connect() as conn:
            return self._window_total(conn, include_pending=False)

    def daily_total(self) -> float:
        """Approved spend in the last 24 hours, in USD."""
        return micros_to_usd_float(self.daily_total_micros())

    def reserve(
        self,
        amount: Decimal | float | int | str,
        merchant: str,
        description: str = "",
    ) -> Reservation:
        """
        Atomically validate and hold budget for a payment attempt.

        Admission counts in-flight pending holds as well as approved spend,
        so two concurrent attempts cannot both squeeze under the daily limit.
        """
        amount_micros = amount_usd_to_micros(amount)
        with exclusive_lock(self._lock_path), self._connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            committed = self._window_total(conn, include_pending=True)
            result = self._check_limits(amount_micros, committed)
            if not result.valid:
                conn.execute("COMMIT")
                return Reservation(result=result)

            entry = LedgerEntry(
                entry_id=_new_entry_id(),
                timestamp=self._clock(),
                amount_micros=amount_micros,
                status=EntryStatus.PENDING,
                merchant=merchant,
                description=description,
            )
            self._insert(conn, entry)
            conn.execute("COMMIT")
        return Reservation(result=result, entry=entry)

    def record(
        self,
        amount: Decimal | float | int | str,
        merchant: str,
        description: str = "",
        status: EntryStatus | str = EntryStatus.APPROVED,
        tx_hash: Optional[str] = None,
    ) -> LedgerEntry:
        """Append an entry that is already in a terminal status."""
        status = EntryStatus(status)
        if status not in _TERMINAL:
            raise ValueError("record() only accepts terminal statuses; use reserve() for holds")
        entry = LedgerEntry(
            entry_id=_new_entry_id(),
            timestamp=self._clock(),
            amount_micros=max(0, amount_usd_to_micros(amount)),
            status=status,
            merchant=merchant,
            description=description,
            tx_hash=tx_hash,
        )
        with exclusive_lock(self._lock_path), self._connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            self._insert(conn, entry)
            conn.execute("COMMIT")
        return entry

    def finalize(
        self,
        entry_id: str,
        status: EntryStatus | str,
        tx_hash: Optional[str] = None,
    ) -> LedgerEntry:
        """Move a pending entry to its terminal status. Allowed exactly once."""
        status = EntryStatus(status)
        if status not in _TERMINAL:
            raise ValueError(f"Cannot finalize to status {status.value}")

        with exclusive_lock(self._lock_path), self._connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            row = conn.execute(
                "SELECT * FROM spend_ledger WHERE entry_id = ?",
                (entry_id,),
            ).fetchone()
            if row is None:
                conn.execute("ROLLBACK")
                raise ValueError(f"Ledger entry not found: {entry_id}")

            entry = self._row_to_entry(row)
            if entry.status != EntryStatus.PENDING:
                conn.execute("ROLLBACK")
                raise ValueError(
                    f"Ledger entry {entry_id} already finalized as {entry.status.value}"
                )

            conn.execute(
                """
                UPDATE spend_ledger
                SET status = ?, tx_hash = COALESCE(?, tx_hash)
                WHERE entry_id = ?
                """,
                (status.value, tx_hash, entry_id),
            )
            conn.execute("COMMIT")

        entry.status = status
        entry.tx_hash = tx_hash or entry.tx_hash
        return entry

    def recent_entries(self, limit: int = 10) -> list[LedgerEntry]:
        """Most recent entries first."""
        with exclusive_lock(self._lock_path), self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM spend_ledger ORDER BY timestamp DESC, rowid DESC LIMIT ?",
                (max(0, int(limit)),),
            ).fetchall()
        return [self._row_to_entry(r) for r in rows]

    def get_summary(self) -> dict:
        """Human-readable limits and rolling daily spend."""
        spent = self.daily_total_micros()

        def fmt(value: Optional[float]) -> str:
            return "unlimited" if value is None else format_usd_from_micros(limit_usd_to_micros(value))

        remaining = "unlimited"
        if self.limits.daily_limit is not None:
            remaining = format_usd_from_micros(
                max(0, limit_usd_to_micros(self.limits.daily_limit) - spent)
            )
        return {
            "max_transaction_amount": fmt(self.limits.max_transaction_amount),
            "daily_limit": fmt(self.limits.daily_limit),
            "auto_approve_under": fmt(self.limits.auto_approve_under),
            "daily_spent": format_usd_from_micros(spent),
            "daily_remaining": remaining,
        }

    def _insert(self, conn: sqlite3.Connection, entry: LedgerEntry) -> None:
        conn.execute(
            """
            INSERT INTO spend_ledger (
                entry_id, timestamp, amount_micros, status, merchant, description, tx_hash
            ) VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                entry.entry_id,
                entry.timestamp,
                entry.amount_micros,
                entry.status.value,
                entry.merchant,
                entry.description,
                entry.tx_hash,
            ),
        )


def _new_entry_id() -> str:
    return f"spend_{uuid.uuid4().hex[:16]}"
