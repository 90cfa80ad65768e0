"""
tapwallet error types.

Specific exceptions for different failure modes, enabling callers
to handle each case appropriately (retry, abort, alert, etc.).
Messages never carry private key material or raw attestation tokens.
"""

from __future__ import annotations


class TapWalletError(Exception):
    """Base error for all tapwallet operations."""

    kind = "error"


# Transport errors
class TransportError(TapWalletError):
    """Network-level failures (DNS, connection refused, timeout)."""

    kind = "transport"


# Registry errors
class RegistryError(TapWalletError):
    """The identity registry rejected a request."""

    kind = "registry"

    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)


class RegistrationError(RegistryError):
    """Agent registration was refused by the registry."""

    kind = "registration"


class VerificationError(RegistryError):
    """Identity verification was rejected or never reached a terminal state."""

    kind = "verification"

    def __init__(self, reason: str, status_code: int | None = None):
        self.reason = reason
        super().__init__(f"Verification failed: {reason}", status_code=status_code)


class MalformedAttestationError(RegistryError):
    """Registry issued an attestation that cannot be trusted as-is."""

    kind = "malformed_attestation"


# Crypto errors
class CryptoError(TapWalletError):
    """Base error for local cryptographic failures."""

    kind = "crypto"


class KeyNotFoundError(CryptoError):
    """Signing key handle is unknown to the secure store."""

    kind = "key_not_found"

    def __init__(self, handle: str):
        self.handle = handle
        super().__init__(f"No signing key stored under '{handle}'")


class KeyGenerationError(CryptoError):
    """Keypair generation failed (entropy or backend failure)."""

    kind = "key_generation"


class AttestationUnavailableError(TapWalletError):
    """A signed request was requested without a current attestation."""

    kind = "attestation_unavailable"


# Payment errors
class PaymentError(TapWalletError):
    """Base error for payment failures."""

    kind = "payment"


class LimitExceededError(PaymentError):
    """Spend policy refused the payment."""

    kind = "limit_exceeded"

    def __init__(self, errors: list[str]):
        self.errors = list(errors)
        super().__init__("Spend limit exceeded: " + ", ".join(self.errors))


class PaymentRejectedError(PaymentError):
    """Service or settlement layer rejected the payment proof."""

    kind = "payment_rejected"

    def __init__(self, status_code: int, message: str):
        self.status_code = status_code
        super().__init__(f"Payment rejected ({status_code}): {message}")


class PaymentDeclinedError(PaymentError):
    """The operator declined an interactive confirmation."""

    kind = "payment_declined"


class ChallengeError(PaymentError):
    """A 402 response carried no usable payment requirement."""

    kind = "challenge"
