"""
Agent-facing wallet facade.

Composes the key store, credentials, registry, spend limits, ledger and
audit trail from one TapWalletConfig. The tool methods return plain dicts
with a `success` flag so an agent host can hand them straight to a model.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Callable, Optional

import httpx

from .audit import AuditTrail, EventType
from .config import TapWalletConfig
from .credentials import CredentialStore, IdentityLevel
from .errors import LimitExceededError, TapWalletError
from .keys import SigningKeyManager
from .keystore import FileKeyStore, KeyStore
from .ledger import Ledger, X402Ledger
from .limits import SpendLimitValidator
from .payment import ConfirmCallback, PaymentIntent, PaymentOrchestrator
from .registry import Registration, RegistryClient
from .signer import RequestSigner
from .wallet import Wallet

logger = logging.getLogger(__name__)

FUNDING_INSTRUCTIONS = "Send USDC on Base network to this address"


def _error(e: BaseException) -> dict:
    result: dict[str, Any] = {"success": False, "error": str(e)}
    if isinstance(e, TapWalletError):
        result["kind"] = e.kind
    if isinstance(e, LimitExceededError):
        result["errors"] = e.errors
    return result


class AgentWallet:
    """Everything an agent needs to pay for requests under a verified identity."""

    def __init__(
        self,
        config: Optional[TapWalletConfig] = None,
        key_store: Optional[KeyStore] = None,
        http: Optional[httpx.Client] = None,
        ledger: Optional[Ledger] = None,
        confirm: Optional[ConfirmCallback] = None,
    ):
        self.config = config or TapWalletConfig.load()
        self.key_store = key_store or FileKeyStore(self.config.keys_dir)
        self.keys = SigningKeyManager(self.key_store)
        self.credentials = CredentialStore(self.config.credentials_dir)
        self.validator = SpendLimitValidator(self.config.limits, self.config.ledger_dir)
        audit_key = self.config.audit_hmac_key
        self.audit = AuditTrail(
            self.config.audit_path,
            self.config.audit_key_path,
            hmac_key=audit_key.encode() if audit_key else None,
        )
        self.confirm = confirm
        self._http = http or httpx.Client(timeout=self.config.timeout_seconds)
        self._ledger = ledger
        self._wallet: Optional[Wallet] = None

    # ── Components ───────────────────────────────────────────────

    @property
    def wallet(self) -> Wallet:
        if self._wallet is None:
            self._wallet = Wallet.load(self.key_store)
        return self._wallet

    def has_wallet(self) -> bool:
        return Wallet.exists(self.key_store)

    def create_wallet(self) -> Wallet:
        """Generate and store a fresh settlement key, replacing any existing one."""
        self._wallet = Wallet.create(self.key_store)
        if isinstance(self._ledger, X402Ledger):
            # Bound to the previous key
            self._ledger = None
        self.audit.log_action(EventType.WALLET_CREATED, {"address": self._wallet.address})
        return self._wallet

    @property
    def ledger(self) -> Ledger:
        if self._ledger is None:
            self._ledger = X402Ledger(
                signer=self.wallet.x402_signer(),
                rpc_url=self.config.rpc_url,
                usdc_contract=self.config.usdc_contract,
                network=self.config.network,
                http=self._http,
            )
        return self._ledger

    def registry(self, registry_url: Optional[str] = None) -> RegistryClient:
        return RegistryClient(
            keys=self.keys,
            credentials=self.credentials,
            registry_url=registry_url or self.config.registry_url,
            http=self._http,
            poll_interval_seconds=self.config.verification_poll_interval_seconds,
            poll_timeout_seconds=self.config.verification_timeout_seconds,
        )

    def orchestrator(self) -> PaymentOrchestrator:
        return PaymentOrchestrator(
            ledger=self.ledger,
            validator=self.validator,
            audit=self.audit,
            signer=RequestSigner(self.keys, self.credentials),
            credentials=self.credentials,
            http=self._http,
            allowed_networks=[self.config.network],
            confirm=self.confirm,
        )

    # ── Agent tools ──────────────────────────────────────────────

    def payment_request(
        self,
        url: str,
        method: str = "GET",
        description: str = "",
        max_amount: Optional[float] = None,
        body: Any = None,
        headers: Optional[dict[str, str]] = None,
    ) -> dict:
        request_headers = dict(headers or {})
        if body is not None and not isinstance(body, (str, bytes)):
            body = json.dumps(body)
            request_headers.setdefault("Content-Type", "application/json")
        intent = PaymentIntent(
            url=url,
            method=method,
            body=body,
            headers=request_headers,
            description=description,
            max_amount=max_amount,
        )
        try:
            outcome = self.orchestrator().execute(intent)
        except TapWalletError as e:
            return _error(e)
        except Exception as e:
            logger.exception("Payment request to %s failed", url)
            return _error(e)

        result = outcome.to_dict()
        response = outcome.response
        try:
            result["data"] = response.json()
        except ValueError:
            result["data"] = response.text
        return result

    def check_balance(self) -> dict:
        try:
            balance = self.ledger.get_balance(self.wallet.address)
        except TapWalletError as e:
            return _error(e)
        except Exception as e:
            logger.exception("Balance lookup failed")
            return _error(e)
        return {"success": True, "balance": balance.to_dict()}

    def get_address(self) -> dict:
        try:
            address = self.wallet.address
        except TapWalletError as e:
            return _error(e)
        return {
            "success": True,
            "address": address,
            "network": self.config.network,
            "funding_instructions": FUNDING_INSTRUCTIONS,
        }

    def transaction_history(self, limit: int = 10) -> dict:
        entries = self.validator.recent_entries(limit)
        return {
            "success": True,
            "transactions": [e.to_dict() for e in entries],
            "count": len(entries),
        }

    def verify_identity(
        self,
        level: IdentityLevel | str = IdentityLevel.KYC,
        name: Optional[str] = None,
        interactive: bool = False,
        force: bool = False,
        on_registered: Optional[Callable[[Registration], None]] = None,
    ) -> dict:
        """Register a TAP agent for this wallet and obtain an attestation."""
        try:
            level = IdentityLevel(level)
        except ValueError:
            return {"success": False, "error": f"Unknown identity level: {level}"}

        try:
            if not force and self.credentials.is_verified():
                status = self.credentials.get_status()
                return {
                    "success": True,
                    "status": "already_verified",
                    "agent_id": status.agent_id,
                    "identity_level": status.identity_level.value if status.identity_level else None,
                    "message": f"Already verified at {status.identity_level.value.upper()} level",
                }

            wallet = self.wallet
            name = name or f"Agent ({wallet.address[:8]})"
            registry = self.registry()
            registration = registry.register_agent(wallet.address, wallet, name)
            self.audit.log_action(
                EventType.TAP_REGISTERED,
                {"agent_id": registration.agent_id, "key_id": registration.key_id},
            )
            if on_registered is not None:
                on_registered(registration)
            result = registry.complete_verification(
                registration.agent_id,
                level,
                interactive=interactive,
                attempt=registration.attempt,
            )
        except TapWalletError as e:
            self.audit.log_action(
                EventType.TAP_VERIFICATION_FAILED,
                {"success": False, "reason": str(e), "level": level.value},
            )
            return _error(e)

        self.audit.log_action(
            EventType.TAP_VERIFIED,
            {
                "agent_id": result.agent_id,
                "level": result.identity_level.value,
                "mode": "interactive" if interactive else "demo",
            },
        )
        return {
            "success": True,
            "status": "verified",
            "agent_id": result.agent_id,
            "identity_level": result.identity_level.value,
            "reputation_score": result.reputation_score,
            "expires_at": result.expires_at.isoformat(),
            "message": (
                f"Identity verified at {result.identity_level.value.upper()} level. "
                "Premium merchants will now accept your payments."
            ),
        }

    def get_tap_status(self) -> dict:
        status = self.credentials.get_status()
        if not status.verified and not status.agent_id:
            return {
                "success": True,
                "verified": False,
                "message": "Not verified. Use verify_identity to verify for premium merchant access.",
            }

        reputation_score = None
        if status.verified:
            reputation = self.registry(status.registry_url).get_reputation()
            reputation_score = reputation.reputation_score if reputation else None

        result = {"success": True, **status.to_dict(), "reputation_score": reputation_score}
        result["renewal_due"] = status.renewal_due
        return result

    def close(self):
        self._http.close()

    def __enter__(self):
        return self

    def __exit__(self, *args):
        self.close()
