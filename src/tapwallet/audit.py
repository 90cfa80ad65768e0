"""
Audit trail for payment and identity events.

Each line of the JSONL log carries the HMAC of its payload chained to the
previous line's hash, so edits, deletions and reordering are detected on
read. Appends take a lock file and reuse the cached chain tail unless the
file changed underneath, so several agent processes can share one log.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
import os
import secrets
import time
from dataclasses import asdict, dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Iterator, Optional

from .storage import ensure_private_dir, ensure_private_file, exclusive_lock

logger = logging.getLogger(__name__)

DEFAULT_AUDIT_PATH = Path.home() / ".tapwallet" / "audit.jsonl"
DEFAULT_AUDIT_KEY_PATH = Path.home() / ".tapwallet-secrets" / "audit_hmac.key"

_CHAIN_FIELDS = ("prev_hash", "event_hash")


class EventType(str, Enum):
    WALLET_CREATED = "wallet_created"
    TAP_REGISTERED = "tap_registered"
    TAP_VERIFIED = "tap_verified"
    TAP_VERIFICATION_FAILED = "tap_verification_failed"
    SPENDING_DENIED = "spending_denied"
    PAYMENT_NOT_REQUIRED = "payment_not_required"
    PAYMENT_INITIATED = "payment_initiated"
    PAYMENT_COMPLETED = "payment_completed"
    PAYMENT_FAILED = "payment_failed"


@dataclass
class AuditEvent:
    """One line of the audit log."""

    event_type: str
    timestamp: float
    agent_id: Optional[str] = None
    amount_usd: Optional[float] = None
    merchant: Optional[str] = None
    success: bool = True
    reason: Optional[str] = None
    details: Optional[dict[str, Any]] = None
    prev_hash: Optional[str] = None
    event_hash: Optional[str] = None

    def payload(self) -> dict[str, Any]:
        """Hashed fields, with unset values omitted."""
        return {
            k: v for k, v in asdict(self).items()
            if v is not None and k not in _CHAIN_FIELDS
        }

    def to_json(self) -> str:
        d = {k: v for k, v in asdict(self).items() if v is not None}
        return json.dumps(d, separators=(",", ":"))

    @classmethod
    def from_record(cls, raw: dict[str, Any]) -> AuditEvent:
        return cls(**{k: v for k, v in raw.items() if k in cls.__dataclass_fields__})


class AuditTrail:
    """Tamper-evident append-only audit log."""

    def __init__(
        self,
        path: Optional[Path] = None,
        key_path: Optional[Path] = None,
        hmac_key: Optional[bytes] = None,
    ):
        self.path = path or DEFAULT_AUDIT_PATH
        self.key_path = key_path or DEFAULT_AUDIT_KEY_PATH
        self._lock_path = self.path.with_name(self.path.name + ".lock")
        # (inode, size, mtime_ns) of the log when its tail hash was last seen
        self._tail: Optional[tuple[tuple[int, int, int], str]] = None

        ensure_private_dir(self.path.parent)
        ensure_private_file(self.path)
        self._key = hmac_key or self._load_or_create_key()

    def _load_or_create_key(self) -> bytes:
        ensure_private_dir(self.key_path.parent)
        if self.key_path.exists() and self.key_path.stat().st_size > 0:
            return self.key_path.read_bytes().strip()
        key = secrets.token_hex(32).encode()
        fd = os.open(self.key_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "wb") as f:
            f.write(key)
        ensure_private_file(self.key_path)
        return key

    def _digest(self, payload: dict[str, Any], prev_hash: str) -> str:
        canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"))
        return hmac.new(self._key, f"{prev_hash}|{canonical}".encode(), hashlib.sha256).hexdigest()

    def _records(self) -> Iterator[dict[str, Any]]:
        with open(self.path, "r") as f:
            for line in f:
                if line.strip():
                    yield json.loads(line)

    def _verified(self) -> Iterator[AuditEvent]:
        """Yield events in order, raising as soon as the chain does not hold."""
        expected_prev = ""
        for raw in self._records():
            event = AuditEvent.from_record(raw)
            prev_hash = event.prev_hash or ""
            if prev_hash != expected_prev:
                raise RuntimeError("Audit chain broken: previous hash mismatch")
            payload = {k: v for k, v in raw.items() if k not in _CHAIN_FIELDS}
            if not hmac.compare_digest(self._digest(payload, prev_hash), event.event_hash or ""):
                raise RuntimeError("Audit chain broken: event hash mismatch")
            expected_prev = event.event_hash
            yield event

    def log(
        self,
        event_type: EventType,
        agent_id: Optional[str] = None,
        amount_usd: Optional[float] = None,
        merchant: Optional[str] = None,
        success: bool = True,
        reason: Optional[str] = None,
        details: Optional[dict] = None,
    ) -> AuditEvent:
        event = AuditEvent(
            event_type=EventType(event_type).value,
            timestamp=time.time(),
            agent_id=agent_id,
            amount_usd=amount_usd,
            merchant=merchant,
            success=success,
            reason=reason,
            details=details,
        )
        payload = event.payload()

        with exclusive_lock(self._lock_path):
            tail = self._tail_hash()
            event.prev_hash = tail or None
            event.event_hash = self._digest(payload, tail)
            with open(self.path, "a") as f:
                f.write(event.to_json() + "\n")
                f.flush()
                os.fsync(f.fileno())
            self._tail = (self._file_state(), event.event_hash)
        return event

    def _file_state(self) -> tuple[int, int, int]:
        st = os.stat(self.path)
        return st.st_ino, st.st_size, st.st_mtime_ns

    def _tail_hash(self) -> str:
        """Hash of the last event; rescans only if another writer touched the file."""
        state = self._file_state()
        if self._tail is not None and self._tail[0] == state:
            return self._tail[1]
        tail = ""
        for raw in self._records():
            tail = raw.get("event_hash", "")
        self._tail = (state, tail)
        return tail

    def log_action(self, kind: EventType | str, metadata: Optional[dict] = None) -> Optional[AuditEvent]:
        """Append without raising; a failed write is logged and dropped."""
        fields = dict(metadata or {})
        try:
            return self.log(
                EventType(kind),
                agent_id=fields.pop("agent_id", None),
                amount_usd=fields.pop("amount_usd", None),
                merchant=fields.pop("merchant", None),
                success=bool(fields.pop("success", True)),
                reason=fields.pop("reason", None),
                details=fields or None,
            )
        except (OSError, ValueError, TypeError) as e:
            logger.warning("Audit write for %s failed: %s", kind, e)
            return None

    def verify(self) -> int:
        """Check the whole chain and return the number of events."""
        return sum(1 for _ in self._verified())

    def read_events(
        self,
        event_type: Optional[EventType] = None,
        limit: int = 100,
    ) -> list[AuditEvent]:
        wanted = EventType(event_type).value if event_type else None
        events = [e for e in self._verified() if wanted is None or e.event_type == wanted]
        return events[-limit:]

    def summary(self) -> dict:
        by_type: dict[str, int] = {}
        failures = 0
        last: Optional[AuditEvent] = None
        for event in self._verified():
            by_type[event.event_type] = by_type.get(event.event_type, 0) + 1
            failures += 0 if event.success else 1
            last = event
        return {
            "total_events": sum(by_type.values()),
            "by_type": by_type,
            "failures": failures,
            "last_event": last.to_json() if last else None,
        }
