"""
Pay-per-request execution over x402.

Flow, one explicit step per state:
1. Validate the caller's declared maximum (no network I/O on denial)
2. Send the request without payment
3. On 402, pick a requirement and atomically re-validate + reserve its amount
4. Build the settlement proof, plus TAP headers when the identity is verified
5. Retry exactly once with the proofs attached
6. Finalize the ledger entry and audit, whatever happened
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Optional
from urllib.parse import urlparse

import httpx

from .audit import AuditTrail, EventType
from .challenge import PaymentChallenge, ResponseKind, classify_response
from .credentials import CredentialStore
from .errors import (
    AttestationUnavailableError,
    ChallengeError,
    LimitExceededError,
    PaymentDeclinedError,
    PaymentRejectedError,
    TransportError,
)
from .ledger import Ledger
from .limits import EntryStatus, SpendLimitValidator
from .money import amount_usd_to_micros, format_usd_from_micros
from .signer import RequestSigner

logger = logging.getLogger(__name__)


class PaymentState(str, Enum):
    INIT = "init"
    LIMIT_CHECKED = "limit_checked"
    REQUEST_SENT = "request_sent"
    CHALLENGE_RECEIVED = "challenge_received"
    PROOF_BUILT = "proof_built"
    RETRIED = "retried"
    SUCCESS = "success"
    REJECTED = "rejected"
    FAILED = "failed"


_TRANSITIONS = {
    PaymentState.INIT: {PaymentState.LIMIT_CHECKED, PaymentState.REJECTED},
    PaymentState.LIMIT_CHECKED: {PaymentState.REQUEST_SENT, PaymentState.FAILED},
    PaymentState.REQUEST_SENT: {
        PaymentState.SUCCESS,
        PaymentState.CHALLENGE_RECEIVED,
        PaymentState.FAILED,
    },
    PaymentState.CHALLENGE_RECEIVED: {
        PaymentState.PROOF_BUILT,
        PaymentState.REJECTED,
        PaymentState.FAILED,
    },
    PaymentState.PROOF_BUILT: {PaymentState.RETRIED, PaymentState.FAILED},
    PaymentState.RETRIED: {PaymentState.SUCCESS, PaymentState.FAILED},
}

ConfirmCallback = Callable[[PaymentChallenge, "PaymentIntent"], bool]


@dataclass
class PaymentIntent:
    """A request the agent wants to make, possibly behind a paywall."""

    url: str
    method: str = "GET"
    body: Optional[bytes | str] = None
    headers: dict[str, str] = field(default_factory=dict)
    description: str = ""
    max_amount: Optional[float] = None

    @property
    def merchant(self) -> str:
        return urlparse(self.url).netloc or self.url

    def body_bytes(self) -> bytes:
        if self.body is None:
            return b""
        if isinstance(self.body, str):
            return self.body.encode("utf-8")
        return bytes(self.body)


@dataclass
class PaymentAttempt:
    """Mutable progress of one orchestration call."""

    intent: PaymentIntent
    state: PaymentState = PaymentState.INIT
    history: list[PaymentState] = field(default_factory=list)
    challenge: Optional[PaymentChallenge] = None
    entry_id: Optional[str] = None
    tap_signed: bool = False

    def advance(self, state: PaymentState) -> None:
        if state not in _TRANSITIONS.get(self.state, set()):
            raise RuntimeError(
                f"Illegal payment transition {self.state.value} -> {state.value}"
            )
        self.history.append(self.state)
        self.state = state

    def require(self, state: PaymentState) -> None:
        if self.state != state:
            raise RuntimeError(f"Payment step requires {state.value}, attempt is {self.state.value}")


@dataclass
class PaymentOutcome:
    """Result of a completed payment call."""

    state: PaymentState
    response: httpx.Response = field(repr=False)
    paid: bool = False
    amount_usd: float = 0.0
    pay_to: Optional[str] = None
    network: Optional[str] = None
    entry_id: Optional[str] = None
    tx_hash: Optional[str] = None
    tap_signed: bool = False

    @property
    def status_code(self) -> int:
        return self.response.status_code

    def to_dict(self) -> dict:
        return {
            "success": self.state == PaymentState.SUCCESS,
            "paid": self.paid,
            "status_code": self.status_code,
            "amount_usd": self.amount_usd,
            "pay_to": self.pay_to,
            "network": self.network,
            "entry_id": self.entry_id,
            "tx_hash": self.tx_hash,
            "tap_signed": self.tap_signed,
        }


class PaymentOrchestrator:
    """Drives request -> 402 -> proof -> single retry."""

    def __init__(
        self,
        ledger: Ledger,
        validator: SpendLimitValidator,
        audit: AuditTrail,
        signer: Optional[RequestSigner] = None,
        credentials: Optional[CredentialStore] = None,
        http: Optional[httpx.Client] = None,
        timeout_seconds: float = 30.0,
        allowed_networks: Optional[list[str]] = None,
        confirm: Optional[ConfirmCallback] = None,
    ):
        self.ledger = ledger
        self.validator = validator
        self.audit = audit
        self.signer = signer
        self.credentials = credentials
        self.allowed_networks = allowed_networks
        self.confirm = confirm
        self._http = http or httpx.Client(timeout=timeout_seconds)

    def execute(self, intent: PaymentIntent) -> PaymentOutcome:
        attempt = PaymentAttempt(intent=intent)

        self._check_declared_limit(attempt)
        response = self._send_unpaid(attempt)
        if classify_response(response.status_code) != ResponseKind.CHALLENGE:
            attempt.advance(PaymentState.SUCCESS)
            self.audit.log_action(
                EventType.PAYMENT_NOT_REQUIRED,
                {"merchant": intent.merchant, "status_code": response.status_code, "url": intent.url},
            )
            return PaymentOutcome(state=attempt.state, response=response)

        attempt.advance(PaymentState.CHALLENGE_RECEIVED)
        challenge = self._select_challenge(attempt, response)
        self._authorize(attempt, challenge)

        try:
            headers = self._build_proof(attempt)
            paid_response = self._retry_with_proof(attempt, headers)
        except PaymentRejectedError as e:
            self._finalize_failure(attempt, EntryStatus.REJECTED, str(e))
            raise
        except Exception as e:
            self._finalize_failure(attempt, EntryStatus.FAILED, f"{type(e).__name__}: {e}")
            raise

        return self._finalize_success(attempt, paid_response)

    # ── Steps ────────────────────────────────────────────────────

    def _check_declared_limit(self, attempt: PaymentAttempt) -> None:
        attempt.require(PaymentState.INIT)
        max_amount = attempt.intent.max_amount
        if max_amount is not None:
            result = self.validator.validate_transaction(max_amount)
            if not result.valid:
                attempt.advance(PaymentState.REJECTED)
                self._deny(attempt, max_amount, result.errors)
        attempt.advance(PaymentState.LIMIT_CHECKED)

    def _send_unpaid(self, attempt: PaymentAttempt) -> httpx.Response:
        attempt.require(PaymentState.LIMIT_CHECKED)
        try:
            response = self._send(attempt.intent, {})
        except TransportError:
            attempt.advance(PaymentState.FAILED)
            raise
        attempt.advance(PaymentState.REQUEST_SENT)
        return response

    def _select_challenge(self, attempt: PaymentAttempt, response: httpx.Response) -> PaymentChallenge:
        attempt.require(PaymentState.CHALLENGE_RECEIVED)
        try:
            challenges = self.ledger.parse_challenge(dict(response.headers), response.content)
        except ChallengeError as e:
            self._fail_before_reserve(attempt, str(e))
            raise

        allowed = set(self.allowed_networks or [getattr(self.ledger, "network", "")])
        for challenge in challenges:
            if not allowed or challenge.network in allowed:
                attempt.challenge = challenge
                return challenge

        if not challenges:
            reason = "No payment requirements in 402 response"
        else:
            networks = ", ".join(sorted({c.network for c in challenges}))
            reason = f"402 requirement networks not allowed: {networks}"
        self._fail_before_reserve(attempt, reason)
        raise ChallengeError(reason)

    def _authorize(self, attempt: PaymentAttempt, challenge: PaymentChallenge) -> None:
        intent = attempt.intent
        amount = challenge.amount_usd

        if intent.max_amount is not None:
            max_micros = amount_usd_to_micros(intent.max_amount)
            if challenge.amount_micros > max_micros:
                attempt.advance(PaymentState.REJECTED)
                self._deny(
                    attempt,
                    amount,
                    [
                        f"Required amount {format_usd_from_micros(challenge.amount_micros)} "
                        f"exceeds declared maximum {format_usd_from_micros(max_micros)}"
                    ],
                )

        reservation = self.validator.reserve(amount, merchant=intent.merchant, description=intent.description)
        if not reservation.allowed or reservation.entry is None:
            attempt.advance(PaymentState.REJECTED)
            self._deny(attempt, amount, reservation.result.errors)
        attempt.entry_id = reservation.entry.entry_id

        self.audit.log_action(
            EventType.PAYMENT_INITIATED,
            {
                "amount_usd": amount,
                "merchant": intent.merchant,
                "entry_id": attempt.entry_id,
                "pay_to": challenge.pay_to,
                "network": challenge.network,
                "auto_approve": reservation.result.auto_approve,
            },
        )

        if not reservation.result.auto_approve and self.confirm is not None:
            if not self.confirm(challenge, intent):
                attempt.advance(PaymentState.REJECTED)
                self.validator.finalize(attempt.entry_id, EntryStatus.REJECTED)
                self.audit.log_action(
                    EventType.PAYMENT_FAILED,
                    {
                        "amount_usd": amount,
                        "merchant": intent.merchant,
                        "success": False,
                        "reason": "declined by operator",
                        "entry_id": attempt.entry_id,
                    },
                )
                raise PaymentDeclinedError(
                    f"Payment of {format_usd_from_micros(challenge.amount_micros)} to {intent.merchant} declined"
                )

    def _build_proof(self, attempt: PaymentAttempt) -> dict[str, str]:
        attempt.require(PaymentState.CHALLENGE_RECEIVED)
        challenge = attempt.challenge
        assert challenge is not None

        headers = dict(self.ledger.build_payment_proof(challenge))
        if self._identity_verified():
            intent = attempt.intent
            try:
                headers.update(
                    self.signer.sign_with_stored_identity(intent.method, intent.url, intent.body_bytes())
                )
                attempt.tap_signed = True
            except AttestationUnavailableError as e:
                # Expired between the status check and signing
                logger.warning("Paying %s without TAP headers: %s", intent.merchant, e)
        attempt.advance(PaymentState.PROOF_BUILT)
        return headers

    def _retry_with_proof(self, attempt: PaymentAttempt, proof_headers: dict[str, str]) -> httpx.Response:
        attempt.advance(PaymentState.RETRIED)
        response = self._send(attempt.intent, proof_headers)
        if classify_response(response.status_code) != ResponseKind.SUCCESS:
            raise PaymentRejectedError(response.status_code, response.text[:200])
        return response

    def _finalize_success(self, attempt: PaymentAttempt, response: httpx.Response) -> PaymentOutcome:
        challenge = attempt.challenge
        assert challenge is not None and attempt.entry_id is not None

        tx_hash = self.ledger.settlement_reference(dict(response.headers))
        attempt.advance(PaymentState.SUCCESS)
        self.validator.finalize(attempt.entry_id, EntryStatus.APPROVED, tx_hash=tx_hash)
        self.audit.log_action(
            EventType.PAYMENT_COMPLETED,
            {
                "amount_usd": challenge.amount_usd,
                "merchant": attempt.intent.merchant,
                "entry_id": attempt.entry_id,
                "tx_hash": tx_hash,
                "tap_signed": attempt.tap_signed,
            },
        )
        logger.info(
            "Paid %s to %s for %s",
            format_usd_from_micros(challenge.amount_micros),
            challenge.pay_to,
            attempt.intent.url,
        )
        return PaymentOutcome(
            state=attempt.state,
            response=response,
            paid=True,
            amount_usd=challenge.amount_usd,
            pay_to=challenge.pay_to,
            network=challenge.network,
            entry_id=attempt.entry_id,
            tx_hash=tx_hash,
            tap_signed=attempt.tap_signed,
        )

    # ── Helpers ──────────────────────────────────────────────────

    def _send(self, intent: PaymentIntent, extra_headers: dict[str, str]) -> httpx.Response:
        headers = {**intent.headers, **extra_headers}
        try:
            return self._http.request(
                intent.method.upper(),
                intent.url,
                headers=headers,
                content=intent.body_bytes() or None,
            )
        except httpx.HTTPError as e:
            raise TransportError(f"Request to {intent.merchant} failed: {type(e).__name__}: {e}") from e

    def _identity_verified(self) -> bool:
        if self.signer is None or self.credentials is None:
            return False
        return self.credentials.get_status().verified

    def _deny(self, attempt: PaymentAttempt, amount: float, errors: list[str]) -> None:
        """Record a policy rejection and raise."""
        self.validator.record(
            max(amount, 0),
            merchant=attempt.intent.merchant,
            description=attempt.intent.description,
            status=EntryStatus.REJECTED,
        )
        self.audit.log_action(
            EventType.SPENDING_DENIED,
            {
                "amount_usd": amount,
                "merchant": attempt.intent.merchant,
                "success": False,
                "reason": "; ".join(errors),
            },
        )
        raise LimitExceededError(errors)

    def _fail_before_reserve(self, attempt: PaymentAttempt, reason: str) -> None:
        attempt.advance(PaymentState.FAILED)
        self.audit.log_action(
            EventType.PAYMENT_FAILED,
            {"merchant": attempt.intent.merchant, "success": False, "reason": reason},
        )

    def _finalize_failure(self, attempt: PaymentAttempt, status: EntryStatus, reason: str) -> None:
        if attempt.state not in (PaymentState.FAILED, PaymentState.REJECTED):
            attempt.advance(PaymentState.FAILED)
        if attempt.entry_id is not None:
            self.validator.finalize(attempt.entry_id, status)
        challenge = attempt.challenge
        self.audit.log_action(
            EventType.PAYMENT_FAILED,
            {
                "amount_usd": challenge.amount_usd if challenge else None,
                "merchant": attempt.intent.merchant,
                "success": False,
                "reason": reason,
                "entry_id": attempt.entry_id,
            },
        )
        logger.warning("Payment to %s failed: %s", attempt.intent.merchant, reason)

    def close(self):
        self._http.close()

    def __enter__(self):
        return self

    def __exit__(self, *args):
        self.close()
