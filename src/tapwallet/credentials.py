"""
TAP credential persistence.

Two small JSON records per profile: the registered agent identity and the
current attestation. Writes are atomic and serialized with a profile lock.
Verification status is derived on every read, never cached, because it
depends on the wall clock.
"""

from __future__ import annotations

import base64
import logging
import math
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Callable, Optional

from .errors import MalformedAttestationError
from .keys import TAP_KEY_SLOT
from .storage import atomic_write_json, ensure_private_dir, exclusive_lock, read_json

logger = logging.getLogger(__name__)

DEFAULT_CREDENTIALS_DIR = Path.home() / ".tapwallet" / "tap"
RENEWAL_WARNING_DAYS = 30


class IdentityLevel(str, Enum):
    NONE = "none"
    EMAIL = "email"
    KYC = "kyc"
    KYB = "kyb"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: str | int | float | datetime) -> datetime:
    """Parse an ISO-8601 string or epoch seconds into an aware UTC datetime."""
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, (int, float)):
        dt = datetime.fromtimestamp(value, tz=timezone.utc)
    else:
        text = str(value).strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        dt = datetime.fromisoformat(text)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def format_timestamp(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


@dataclass(frozen=True)
class AgentIdentity:
    """Registry-side identity of this agent. Holds no private material."""

    agent_id: str
    key_id: str
    public_key: bytes
    registered_at: datetime
    wallet_address: str = ""
    name: str = ""
    registry_url: str = ""
    key_handle: str = TAP_KEY_SLOT

    def to_dict(self) -> dict:
        return {
            "agent_id": self.agent_id,
            "key_id": self.key_id,
            "key_handle": self.key_handle,
            "public_key": base64.b64encode(self.public_key).decode("ascii"),
            "registered_at": format_timestamp(self.registered_at),
            "wallet_address": self.wallet_address,
            "name": self.name,
            "registry_url": self.registry_url,
        }

    @classmethod
    def from_dict(cls, d: dict) -> AgentIdentity:
        return cls(
            agent_id=str(d["agent_id"]),
            key_id=str(d["key_id"]),
            public_key=base64.b64decode(d["public_key"]),
            registered_at=parse_timestamp(d["registered_at"]),
            wallet_address=str(d.get("wallet_address", "")),
            name=str(d.get("name", "")),
            registry_url=str(d.get("registry_url", "")),
            key_handle=str(d.get("key_handle") or TAP_KEY_SLOT),
        )


@dataclass(frozen=True)
class Attestation:
    """Time-bounded identity-level credential issued to one registered agent."""

    identity_level: IdentityLevel
    token: str
    issued_at: datetime
    expires_at: datetime
    issuer: str
    agent_id: str = ""
    key_id: str = ""

    def __post_init__(self):
        if self.expires_at <= self.issued_at:
            raise MalformedAttestationError(
                f"Attestation from {self.issuer} expires before it is issued"
            )

    def __repr__(self) -> str:
        return (
            f"Attestation(agent_id={self.agent_id!r}, identity_level={self.identity_level.value!r}, "
            f"issued_at={self.issued_at.isoformat()!r}, "
            f"expires_at={self.expires_at.isoformat()!r}, issuer={self.issuer!r})"
        )

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) > self.expires_at

    def belongs_to(self, agent: AgentIdentity) -> bool:
        return self.agent_id == agent.agent_id and self.key_id in ("", agent.key_id)

    def to_dict(self) -> dict:
        return {
            "identity_level": self.identity_level.value,
            "token": self.token,
            "issued_at": format_timestamp(self.issued_at),
            "expires_at": format_timestamp(self.expires_at),
            "issuer": self.issuer,
            "agent_id": self.agent_id,
            "key_id": self.key_id,
        }

    @classmethod
    def from_dict(cls, d: dict) -> Attestation:
        return cls(
            identity_level=IdentityLevel(d["identity_level"]),
            token=str(d["token"]),
            issued_at=parse_timestamp(d["issued_at"]),
            expires_at=parse_timestamp(d["expires_at"]),
            issuer=str(d.get("issuer", "")),
            agent_id=str(d.get("agent_id", "")),
            key_id=str(d.get("key_id", "")),
        )


@dataclass(frozen=True)
class TapStatus:
    verified: bool
    agent_id: Optional[str] = None
    identity_level: Optional[IdentityLevel] = None
    expires_at: Optional[datetime] = None
    registry_url: Optional[str] = None
    days_until_expiry: Optional[int] = None

    @property
    def renewal_due(self) -> bool:
        return self.days_until_expiry is not None and self.days_until_expiry <= RENEWAL_WARNING_DAYS

    def to_dict(self) -> dict:
        return {
            "verified": self.verified,
            "agent_id": self.agent_id,
            "identity_level": self.identity_level.value if self.identity_level else None,
            "attestation_expires": format_timestamp(self.expires_at) if self.expires_at else None,
            "registry_url": self.registry_url,
            "days_until_expiry": self.days_until_expiry,
        }


class CredentialStore:
    """File-backed agent identity and attestation store for one profile."""

    def __init__(
        self,
        base_dir: Optional[Path] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.base_dir = base_dir or DEFAULT_CREDENTIALS_DIR
        ensure_private_dir(self.base_dir)
        self._agent_path = self.base_dir / "agent.json"
        self._attestation_path = self.base_dir / "attestation.json"
        self._lock_path = self.base_dir / ".lock"
        self._clock = clock

    def save_agent(self, identity: AgentIdentity) -> None:
        with exclusive_lock(self._lock_path):
            previous = self._read_agent()
            atomic_write_json(self._agent_path, identity.to_dict())
            if previous is not None and previous.agent_id != identity.agent_id:
                self._attestation_path.unlink(missing_ok=True)

    def load_agent(self) -> Optional[AgentIdentity]:
        with exclusive_lock(self._lock_path):
            return self._read_agent()

    def save_attestation(self, attestation: Attestation) -> None:
        with exclusive_lock(self._lock_path):
            atomic_write_json(self._attestation_path, attestation.to_dict())

    def load_attestation(self) -> Optional[Attestation]:
        """Return the stored attestation, or None if it has no matching identity."""
        with exclusive_lock(self._lock_path):
            agent = self._read_agent()
            return self._read_attestation(agent) if agent is not None else None

    def clear(self) -> None:
        with exclusive_lock(self._lock_path):
            self._agent_path.unlink(missing_ok=True)
            self._attestation_path.unlink(missing_ok=True)

    def is_configured(self) -> bool:
        return self.load_agent() is not None

    def is_verified(self) -> bool:
        return self.get_status().verified

    def get_status(self) -> TapStatus:
        with exclusive_lock(self._lock_path):
            agent = self._read_agent()
            attestation = self._read_attestation(agent) if agent is not None else None

        if agent is None:
            return TapStatus(verified=False)
        if attestation is None:
            return TapStatus(verified=False, agent_id=agent.agent_id, registry_url=agent.registry_url)

        now = self._clock()
        remaining = (attestation.expires_at - now).total_seconds()
        return TapStatus(
            verified=not attestation.is_expired(now),
            agent_id=agent.agent_id,
            identity_level=attestation.identity_level,
            expires_at=attestation.expires_at,
            registry_url=attestation.issuer or agent.registry_url,
            days_until_expiry=math.ceil(remaining / 86400),
        )

    def _read_agent(self) -> Optional[AgentIdentity]:
        raw = read_json(self._agent_path)
        if raw is None:
            return None
        try:
            return AgentIdentity.from_dict(raw)
        except (KeyError, ValueError, TypeError):
            logger.warning("Ignoring unreadable agent identity record at %s", self._agent_path)
            return None

    def _read_attestation(self, agent: AgentIdentity) -> Optional[Attestation]:
        raw = read_json(self._attestation_path)
        if raw is None:
            return None
        try:
            attestation = Attestation.from_dict(raw)
        except (KeyError, ValueError, TypeError, MalformedAttestationError):
            logger.warning("Ignoring unreadable attestation record at %s", self._attestation_path)
            return None
        if not attestation.belongs_to(agent):
            logger.info("Ignoring attestation issued to a previous agent identity")
            return None
        return attestation
