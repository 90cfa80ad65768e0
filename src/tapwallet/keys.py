"""TAP signing key management using Ed25519.

The TAP key binds the agent's registry identity to its outbound signatures.
It is independent from the settlement (wallet) key in `tapwallet.wallet`:
the two live in different key store slots and are never derived from each
other.
"""

from __future__ import annotations

import logging
import uuid

from cryptography.exceptions import InvalidSignature, UnsupportedAlgorithm
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ed25519

from .errors import KeyGenerationError, KeyNotFoundError
from .keystore import KeyStore

logger = logging.getLogger(__name__)

TAP_KEY_SLOT = "tap_signing_key"


def new_key_handle() -> str:
    """Fresh slot name, so a new key never overwrites one still in use."""
    return f"{TAP_KEY_SLOT}_{uuid.uuid4().hex}"


def _public_bytes(private_key: ed25519.Ed25519PrivateKey) -> bytes:
    return private_key.public_key().public_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PublicFormat.Raw,
    )


class SigningKeyManager:
    """Owns the agent's TAP keypair. Callers only ever hold a handle."""

    def __init__(self, store: KeyStore):
        self._store = store

    def generate_keypair(self, slot: str = TAP_KEY_SLOT) -> tuple[str, bytes]:
        """Generate a fresh keypair, persist it, and return (handle, public key)."""
        try:
            private_key = ed25519.Ed25519PrivateKey.generate()
            raw = private_key.private_bytes(
                encoding=serialization.Encoding.Raw,
                format=serialization.PrivateFormat.Raw,
                encryption_algorithm=serialization.NoEncryption(),
            )
        except (UnsupportedAlgorithm, OSError) as e:
            raise KeyGenerationError(f"Ed25519 key generation failed: {type(e).__name__}") from e

        self._store.put(slot, raw)
        logger.info("Generated new TAP signing key in slot %s", slot)
        return slot, _public_bytes(private_key)

    def has_key(self, handle: str) -> bool:
        return self._store.has(handle)

    def delete_key(self, handle: str) -> None:
        self._store.delete(handle)
        logger.info("Deleted TAP signing key in slot %s", handle)

    def _load(self, handle: str) -> ed25519.Ed25519PrivateKey:
        raw = self._store.get(handle)
        if raw is None:
            raise KeyNotFoundError(handle)
        return ed25519.Ed25519PrivateKey.from_private_bytes(raw)

    def public_key(self, handle: str) -> bytes:
        return _public_bytes(self._load(handle))

    def sign(self, handle: str, message: bytes) -> bytes:
        """Sign message with the key behind handle (deterministic Ed25519)."""
        return self._load(handle).sign(message)

    @staticmethod
    def verify(public_key: bytes, message: bytes, signature: bytes) -> bool:
        """Check an Ed25519 signature against raw public key bytes."""
        try:
            ed25519.Ed25519PublicKey.from_public_bytes(public_key).verify(signature, message)
        except (InvalidSignature, ValueError):
            return False
        return True
