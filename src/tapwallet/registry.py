"""
TAP registry protocol client.

Flow per registration attempt:
1. Generate a fresh TAP signing keypair
2. Fetch a single-use challenge bound to the wallet's CAIP-10 address
3. Sign the challenge with the wallet key (proves address ownership)
4. Submit the TAP public key and wallet proof, persist the agent identity
5. Complete identity verification and persist the issued attestation

Registration is not idempotent: every call mints a new keypair and a new
registry-side agent, so nothing here retries automatically.
"""

from __future__ import annotations

import base64
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Optional

import httpx
import jwt

from .credentials import (
    AgentIdentity,
    Attestation,
    CredentialStore,
    IdentityLevel,
    parse_timestamp,
    utcnow,
)
from .errors import (
    MalformedAttestationError,
    RegistrationError,
    RegistryError,
    TransportError,
    VerificationError,
)
from .keys import SigningKeyManager, new_key_handle
from .wallet import BASE_CHAIN_ID, WalletSigner, caip10_address

logger = logging.getLogger(__name__)

DEFAULT_REGISTRY_URL = "https://tap-registry.visa.com"
SIGNING_ALGORITHM = "ed25519"
NEW_AGENT_REPUTATION = 50.0


class RegistrationState(str, Enum):
    UNREGISTERED = "unregistered"
    CHALLENGE_ISSUED = "challenge_issued"
    WALLET_SIGNED = "wallet_signed"
    REGISTERED = "registered"
    VERIFICATION_PENDING = "verification_pending"
    VERIFIED = "verified"
    FAILED = "failed"


_TERMINAL_STATES = {RegistrationState.VERIFIED, RegistrationState.FAILED}


@dataclass
class RegistrationAttempt:
    """Progress of one registration/verification attempt."""

    wallet_address: str
    state: RegistrationState = RegistrationState.UNREGISTERED
    agent_id: Optional[str] = None
    key_id: Optional[str] = None
    verification_url: Optional[str] = None
    error: Optional[str] = None
    history: list[RegistrationState] = field(default_factory=list)

    def advance(self, state: RegistrationState) -> None:
        if self.state in _TERMINAL_STATES:
            raise RuntimeError(f"Registration attempt already {self.state.value}")
        self.history.append(self.state)
        self.state = state

    def fail(self, error: str) -> None:
        if self.state not in _TERMINAL_STATES:
            self.history.append(self.state)
        self.state = RegistrationState.FAILED
        self.error = error


@dataclass
class Challenge:
    message: str
    challenge: dict[str, Any] = field(default_factory=dict)


@dataclass
class Registration:
    agent_id: str
    key_id: str
    public_key: bytes
    verification_url: str
    attempt: RegistrationAttempt

    def to_dict(self) -> dict:
        return {
            "agent_id": self.agent_id,
            "key_id": self.key_id,
            "verification_url": self.verification_url,
            "state": self.attempt.state.value,
        }


@dataclass
class VerificationResult:
    agent_id: str
    identity_level: IdentityLevel
    expires_at: datetime
    reputation_score: float = NEW_AGENT_REPUTATION

    def to_dict(self) -> dict:
        return {
            "status": "verified",
            "agent_id": self.agent_id,
            "identity_level": self.identity_level.value,
            "expires_at": self.expires_at.isoformat(),
            "reputation_score": self.reputation_score,
        }


@dataclass
class AgentVerification:
    """Relying-party view of an agent; advisory only."""

    valid: bool
    identity_level: Optional[IdentityLevel] = None
    reputation_score: Optional[float] = None
    error: Optional[str] = None


@dataclass
class Reputation:
    total_transactions: int
    unique_merchants: int
    dispute_rate: float
    reputation_score: float


class RegistryClient:
    """Agent-side client of the TAP registry authority."""

    def __init__(
        self,
        keys: SigningKeyManager,
        credentials: CredentialStore,
        registry_url: str = DEFAULT_REGISTRY_URL,
        http: Optional[httpx.Client] = None,
        timeout_seconds: float = 30.0,
        chain_id: int = BASE_CHAIN_ID,
        poll_interval_seconds: float = 5.0,
        poll_timeout_seconds: float = 600.0,
        sleep: Callable[[float], None] = time.sleep,
        monotonic: Callable[[], float] = time.monotonic,
    ):
        self.registry_url = registry_url.rstrip("/")
        self.keys = keys
        self.credentials = credentials
        self.chain_id = chain_id
        self.poll_interval_seconds = poll_interval_seconds
        self.poll_timeout_seconds = poll_timeout_seconds
        self._http = http or httpx.Client(timeout=timeout_seconds)
        self._sleep = sleep
        self._monotonic = monotonic

    # ── Transport ────────────────────────────────────────────────

    def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        try:
            return self._http.request(method, f"{self.registry_url}{path}", **kwargs)
        except httpx.HTTPError as e:
            raise TransportError(f"Registry request {method} {path} failed: {type(e).__name__}: {e}") from e

    @staticmethod
    def _error_detail(response: httpx.Response, fallback: str) -> str:
        try:
            body = response.json()
        except ValueError:
            body = None
        if isinstance(body, dict) and body.get("detail"):
            return str(body["detail"])
        return f"{fallback}: {response.status_code} {response.reason_phrase}".strip()

    @staticmethod
    def _json(response: httpx.Response, what: str) -> dict[str, Any]:
        try:
            body = response.json()
        except ValueError as e:
            raise RegistryError(f"Registry returned invalid JSON for {what}", response.status_code) from e
        if not isinstance(body, dict):
            raise RegistryError(f"Registry returned unexpected payload for {what}", response.status_code)
        return body

    # ── Protocol steps ───────────────────────────────────────────

    def get_challenge(self, wallet_address: str) -> Challenge:
        """Request a single-use challenge bound to the wallet's CAIP-10 address."""
        response = self._request(
            "POST",
            "/v1/challenge",
            json={
                "wallet_address": caip10_address(wallet_address, self.chain_id),
                "chain_id": self.chain_id,
            },
        )
        if not response.is_success:
            raise RegistryError(
                self._error_detail(response, "Failed to get challenge"),
                response.status_code,
            )
        body = self._json(response, "challenge")
        message = body.get("message")
        if not isinstance(message, str) or not message:
            raise RegistryError("Registry challenge carried no message to sign", response.status_code)
        return Challenge(message=message, challenge=dict(body.get("challenge") or {}))

    def register_agent(
        self,
        wallet_address: str,
        wallet_signer: WalletSigner,
        name: str,
        attempt: Optional[RegistrationAttempt] = None,
    ) -> Registration:
        """Register a new TAP key for this wallet and persist the identity."""
        attempt = attempt or RegistrationAttempt(wallet_address=wallet_address)
        caip10 = caip10_address(wallet_address, self.chain_id)
        previous = self.credentials.load_agent()

        # The stored identity keeps signing with its own key until replaced
        handle = new_key_handle()
        try:
            _, public_key = self.keys.generate_keypair(handle)
            challenge = self.get_challenge(wallet_address)
            attempt.advance(RegistrationState.CHALLENGE_ISSUED)

            wallet_signature = wallet_signer.sign_message(challenge.message)
            attempt.advance(RegistrationState.WALLET_SIGNED)

            response = self._request(
                "POST",
                "/v1/agents/register-wallet",
                json={
                    "wallet_address": caip10,
                    "name": name,
                    "public_key": _b64(public_key),
                    "algorithm": SIGNING_ALGORITHM,
                    "wallet_signature": wallet_signature,
                    "wallet_message": challenge.message,
                },
            )
            if not response.is_success:
                raise RegistrationError(
                    self._error_detail(response, "Registration failed"),
                    response.status_code,
                )

            body = self._json(response, "registration")
            try:
                agent = body["agent"]
                agent_id = str(agent["id"])
                key_id = str(agent["keys"][0]["key_id"])
            except (KeyError, IndexError, TypeError) as e:
                raise RegistrationError("Registry response missing agent id or key id", response.status_code) from e
            verification_url = str(body.get("verification_url", ""))
        except Exception as e:
            self.keys.delete_key(handle)
            attempt.fail(str(e))
            raise

        self.credentials.save_agent(
            AgentIdentity(
                agent_id=agent_id,
                key_id=key_id,
                public_key=public_key,
                registered_at=utcnow(),
                wallet_address=caip10,
                name=name,
                registry_url=self.registry_url,
                key_handle=handle,
            )
        )
        if previous is not None and previous.key_handle != handle:
            self.keys.delete_key(previous.key_handle)
        attempt.agent_id = agent_id
        attempt.key_id = key_id
        attempt.verification_url = verification_url
        attempt.advance(RegistrationState.REGISTERED)
        logger.info("Registered TAP agent %s (key %s, handle %s)", agent_id, key_id, handle)

        return Registration(
            agent_id=agent_id,
            key_id=key_id,
            public_key=public_key,
            verification_url=verification_url,
            attempt=attempt,
        )

    def complete_verification(
        self,
        agent_id: str,
        level: IdentityLevel | str,
        interactive: bool = False,
        attempt: Optional[RegistrationAttempt] = None,
    ) -> VerificationResult:
        """
        Obtain and persist the attestation for agent_id.

        Non-interactive mode submits the completion signal directly. Interactive
        mode waits for the out-of-band identity check by polling the agent record
        until the registry reports a terminal identity state.
        """
        level = IdentityLevel(level)
        agent = self.credentials.load_agent()
        if agent is None or agent.agent_id != agent_id:
            raise VerificationError(f"No registered identity for agent {agent_id}")

        if attempt is None:
            attempt = RegistrationAttempt(
                wallet_address=agent.wallet_address,
                state=RegistrationState.REGISTERED,
                agent_id=agent_id,
                key_id=agent.key_id,
            )
        attempt.advance(RegistrationState.VERIFICATION_PENDING)

        try:
            if interactive:
                identity = self._poll_identity(agent_id)
            else:
                identity = self._submit_demo_completion(agent_id, level)
            attestation = self._attestation_from_identity(identity, agent)
        except Exception as e:
            attempt.fail(str(e))
            raise

        self.credentials.save_attestation(attestation)
        attempt.advance(RegistrationState.VERIFIED)
        logger.info(
            "TAP agent %s verified at %s level (expires %s)",
            agent_id,
            attestation.identity_level.value,
            attestation.expires_at.isoformat(),
        )
        return VerificationResult(
            agent_id=agent_id,
            identity_level=attestation.identity_level,
            expires_at=attestation.expires_at,
        )

    def _submit_demo_completion(self, agent_id: str, level: IdentityLevel) -> dict[str, Any]:
        response = self._request(
            "POST",
            f"/v1/agents/{agent_id}/verify-demo",
            params={"level": level.value},
        )
        if not response.is_success:
            raise VerificationError(
                self._error_detail(response, "Verification failed"),
                response.status_code,
            )
        return self._identity_from(self._json(response, "verification"))

    def _poll_identity(self, agent_id: str) -> dict[str, Any]:
        deadline = self._monotonic() + self.poll_timeout_seconds
        while True:
            response = self._request("GET", f"/v1/agents/{agent_id}")
            if not response.is_success:
                raise VerificationError(
                    self._error_detail(response, "Verification lookup failed"),
                    response.status_code,
                )
            identity = self._identity_from(self._json(response, "agent"))
            status = str(identity.get("status", "")).lower()
            if status in {"failed", "rejected"}:
                raise VerificationError(str(identity.get("error") or f"identity check {status}"))
            if identity.get("attestation_jwt") and status not in {"pending", "in_progress"}:
                return identity

            if self._monotonic() >= deadline:
                raise VerificationError(
                    f"identity check not completed within {self.poll_timeout_seconds:.0f}s"
                )
            self._sleep(self.poll_interval_seconds)

    @staticmethod
    def _identity_from(body: dict[str, Any]) -> dict[str, Any]:
        agent = body.get("agent")
        identity = agent.get("identity") if isinstance(agent, dict) else None
        if not isinstance(identity, dict):
            raise MalformedAttestationError("Registry response carried no identity record")
        return identity

    def _attestation_from_identity(self, identity: dict[str, Any], agent: AgentIdentity) -> Attestation:
        token = identity.get("attestation_jwt")
        if not isinstance(token, str) or not token:
            raise MalformedAttestationError("Registry response carried no attestation token")

        claims = _unverified_claims(token)
        issued_raw = identity.get("issued_at") or claims.get("iat")
        expires_raw = identity.get("expires_at") or claims.get("exp")
        if issued_raw is None or expires_raw is None:
            raise MalformedAttestationError("Attestation is missing issue or expiry time")

        try:
            level = IdentityLevel(identity.get("level"))
            issued_at = parse_timestamp(issued_raw)
            expires_at = parse_timestamp(expires_raw)
        except (ValueError, TypeError) as e:
            raise MalformedAttestationError(f"Attestation fields malformed: {type(e).__name__}") from e

        return Attestation(
            identity_level=level,
            token=token,
            issued_at=issued_at,
            expires_at=expires_at,
            issuer=self.registry_url,
            agent_id=agent.agent_id,
            key_id=agent.key_id,
        )

    # ── Relying-party lookups ────────────────────────────────────

    def verify_agent(self, wallet_address: str, attestation_token: str) -> AgentVerification:
        """Ask the registry whether an attestation is valid. Never raises."""
        try:
            response = self._request(
                "POST",
                "/v1/verify",
                json={"wallet_address": wallet_address, "attestation": attestation_token},
            )
        except TransportError as e:
            logger.warning("Registry verify lookup failed: %s", e)
            return AgentVerification(valid=False, error=str(e))

        if not response.is_success:
            return AgentVerification(
                valid=False,
                error=f"Verification failed: {response.status_code} {response.reason_phrase}",
            )
        try:
            body = response.json()
        except ValueError:
            return AgentVerification(valid=False, error="Verification response was not JSON")
        if not isinstance(body, dict) or not body.get("valid"):
            error = body.get("error") if isinstance(body, dict) else None
            return AgentVerification(valid=False, error=error)

        level: Optional[IdentityLevel] = None
        try:
            if body.get("identity_level"):
                level = IdentityLevel(body["identity_level"])
        except ValueError:
            level = None
        reputation = body.get("reputation") or {}
        score = reputation.get("reputation_score") if isinstance(reputation, dict) else None
        try:
            score = float(score) if score is not None else None
        except (TypeError, ValueError):
            logger.warning("Registry returned a non-numeric reputation score")
            score = None
        return AgentVerification(valid=True, identity_level=level, reputation_score=score)

    def get_reputation(self) -> Optional[Reputation]:
        """Reputation for the stored agent, or None when unknown."""
        agent = self.credentials.load_agent()
        attestation = self.credentials.load_attestation()
        if agent is None or attestation is None:
            return None

        result = self.verify_agent(agent.wallet_address, attestation.token)
        if not result.valid:
            return None
        return Reputation(
            total_transactions=0,
            unique_merchants=0,
            dispute_rate=0.0,
            reputation_score=result.reputation_score or 0.0,
        )

    def close(self):
        self._http.close()

    def __enter__(self):
        return self

    def __exit__(self, *args):
        self.close()


def _b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def _unverified_claims(token: str) -> dict[str, Any]:
    """Read JWT claims without verifying; the registry is the verifier."""
    try:
        claims = jwt.decode(token, options={"verify_signature": False})
    except jwt.PyJWTError:
        return {}
    return claims if isinstance(claims, dict) else {}
