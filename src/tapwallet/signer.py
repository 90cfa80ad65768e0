"""
TAP request signing.

Covers the method, the exact target URI, the body digest and the attestation
token, so a signature cannot be replayed against another endpoint or body or
grafted onto a different credential. The base string follows the RFC 9421
component layout.
"""

from __future__ import annotations

import base64
import hashlib
import logging
import re
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Mapping, Optional

from .challenge import header_lookup
from .credentials import Attestation, CredentialStore
from .errors import AttestationUnavailableError
from .keys import SigningKeyManager

logger = logging.getLogger(__name__)

ATTESTATION_HEADER = "X-TAP-Attestation"
SIGNATURE_HEADER = "X-TAP-Signature"
KEY_ID_HEADER = "X-TAP-Key-Id"
SIGNATURE_ALGORITHM = "ed25519"
COVERED_COMPONENTS = ("@method", "@target-uri", "content-digest", "x-tap-attestation")

_SIGNATURE_RE = re.compile(r"^sig1=:(?P<sig>[A-Za-z0-9+/=]+):;created=(?P<created>\d+)$")


def content_digest(body: bytes | str | None) -> str:
    """RFC 9530 style digest value: sha-256=:<base64>:"""
    if body is None:
        body = b""
    if isinstance(body, str):
        body = body.encode("utf-8")
    digest = base64.b64encode(hashlib.sha256(body).digest()).decode("ascii")
    return f"sha-256=:{digest}:"


def build_signature_base(
    method: str,
    url: str,
    body_digest: str,
    attestation_token: str,
    created: int,
    key_id: str,
) -> bytes:
    covered = " ".join(f'"{c}"' for c in COVERED_COMPONENTS)
    lines = [
        f'"@method": {method.upper()}',
        f'"@target-uri": {url}',
        f'"content-digest": {body_digest}',
        f'"x-tap-attestation": {attestation_token}',
        f'"@signature-params": ({covered});created={int(created)};'
        f'keyid="{key_id}";alg="{SIGNATURE_ALGORITHM}"',
    ]
    return "\n".join(lines).encode("utf-8")


@dataclass(frozen=True)
class ParsedSignature:
    signature: bytes
    created: int


def parse_signature_header(value: str) -> Optional[ParsedSignature]:
    match = _SIGNATURE_RE.match((value or "").strip())
    if not match:
        return None
    try:
        signature = base64.b64decode(match.group("sig"), validate=True)
    except ValueError:
        return None
    return ParsedSignature(signature=signature, created=int(match.group("created")))


def verify_request(
    method: str,
    url: str,
    body_digest: str,
    headers: Mapping[str, str],
    public_key: bytes,
) -> bool:
    """Relying-party check of the three TAP headers against a known public key."""
    token = header_lookup(headers, ATTESTATION_HEADER)
    key_id = header_lookup(headers, KEY_ID_HEADER)
    parsed = parse_signature_header(header_lookup(headers, SIGNATURE_HEADER) or "")
    if not token or not key_id or parsed is None:
        return False
    base = build_signature_base(method, url, body_digest, token, parsed.created, key_id)
    return SigningKeyManager.verify(public_key, base, parsed.signature)


class RequestSigner:
    """Produces TAP headers for outbound requests."""

    def __init__(
        self,
        keys: SigningKeyManager,
        credentials: Optional[CredentialStore] = None,
        clock: Callable[[], float] = time.time,
        now: Optional[Callable[[], datetime]] = None,
    ):
        self.keys = keys
        self.credentials = credentials
        self._clock = clock
        self._now = now

    def sign_request(
        self,
        method: str,
        url: str,
        body_digest: str,
        attestation: Optional[Attestation],
        key_handle: str,
        key_id: str,
    ) -> dict[str, str]:
        if attestation is None:
            raise AttestationUnavailableError("No attestation available; verify identity first")
        now = self._now() if self._now else None
        if attestation.is_expired(now):
            raise AttestationUnavailableError(
                f"Attestation expired at {attestation.expires_at.isoformat()}; re-verify identity"
            )

        created = int(self._clock())
        base = build_signature_base(method, url, body_digest, attestation.token, created, key_id)
        signature = self.keys.sign(key_handle, base)
        logger.debug("Signed %s request with TAP key %s", method.upper(), key_id)
        return {
            ATTESTATION_HEADER: attestation.token,
            SIGNATURE_HEADER: f"sig1=:{base64.b64encode(signature).decode('ascii')}:;created={created}",
            KEY_ID_HEADER: key_id,
        }

    def sign_with_stored_identity(
        self,
        method: str,
        url: str,
        body: bytes | str | None = None,
    ) -> dict[str, str]:
        """Sign using the profile's stored agent identity and attestation."""
        if self.credentials is None:
            raise AttestationUnavailableError("No credential store configured")
        agent = self.credentials.load_agent()
        if agent is None:
            raise AttestationUnavailableError("No registered agent identity")
        return self.sign_request(
            method,
            url,
            content_digest(body),
            self.credentials.load_attestation(),
            agent.key_handle,
            agent.key_id,
        )
