"""
tapwallet: pay-per-request x402 payments under a verified agent identity.

Operator sets spend limits → agent pays 402 challenges within them →
TAP-signed requests prove who is paying → full audit trail.
"""

__version__ = "0.1.0"

from .credentials import AgentIdentity, Attestation, CredentialStore, IdentityLevel, TapStatus
from .keys import SigningKeyManager
from .keystore import FileKeyStore, KeyStore
from .registry import RegistrationState, RegistryClient, VerificationResult
from .signer import RequestSigner, content_digest, verify_request
from .limits import SpendLimits, SpendLimitValidator, ValidationResult
from .ledger import Ledger, X402Ledger
from .payment import PaymentIntent, PaymentOrchestrator, PaymentOutcome, PaymentState
from .audit import AuditTrail, EventType
from .config import TapWalletConfig
from .agent import AgentWallet

__all__ = [
    "AgentIdentity", "Attestation", "CredentialStore", "IdentityLevel", "TapStatus",
    "SigningKeyManager", "FileKeyStore", "KeyStore",
    "RegistrationState", "RegistryClient", "VerificationResult",
    "RequestSigner", "content_digest", "verify_request",
    "SpendLimits", "SpendLimitValidator", "ValidationResult",
    "Ledger", "X402Ledger",
    "PaymentIntent", "PaymentOrchestrator", "PaymentOutcome", "PaymentState",
    "AuditTrail", "EventType",
    "TapWalletConfig", "AgentWallet",
]
