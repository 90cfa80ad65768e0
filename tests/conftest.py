"""Shared fakes for tapwallet tests."""

import json
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from urllib.parse import parse_qs

import httpx
import jwt
import pytest

from tapwallet.audit import AuditTrail
from tapwallet.challenge import PaymentChallenge
from tapwallet.credentials import Attestation, CredentialStore, IdentityLevel
from tapwallet.keys import SigningKeyManager
from tapwallet.limits import SpendLimits, SpendLimitValidator


REGISTRY_URL = "https://registry.test"
T0 = datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc)


class MemoryKeyStore:
    def __init__(self):
        self.data = {}

    def put(self, name, value):
        self.data[name] = bytes(value)

    def get(self, name):
        return self.data.get(name)

    def has(self, name):
        return name in self.data

    def delete(self, name):
        self.data.pop(name, None)


class FakeClock:
    """Mutable wall clock for both datetime and epoch consumers."""

    def __init__(self, start=T0):
        self.now = start

    def __call__(self):
        return self.now

    def epoch(self):
        return self.now.timestamp()

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


def make_token(level="kyc", issued=T0, days=365, **extra):
    claims = {
        "sub": "agent-1",
        "level": level,
        "iat": int(issued.timestamp()),
        "exp": int((issued + timedelta(days=days)).timestamp()),
        **extra,
    }
    return jwt.encode(claims, "registry-test-secret", algorithm="HS256")


def make_attestation(level="kyc", issued=T0, days=365, agent_id="agent-1"):
    return Attestation(
        identity_level=IdentityLevel(level),
        token=make_token(level, issued, days),
        issued_at=issued,
        expires_at=issued + timedelta(days=days),
        issuer=REGISTRY_URL,
        agent_id=agent_id,
    )


class FakeRegistry:
    """In-memory TAP registry served through httpx.MockTransport."""

    def __init__(self, issued=T0, days=365):
        self.requests = []
        self.registrations = 0
        self.pending_polls = 0
        self.issued = issued
        self.days = days
        self.fail_register = None
        self.fail_verify = None
        self.poll_status = "verified"
        self.verify_response = {
            "valid": True,
            "identity_level": "kyc",
            "reputation": {"reputation_score": 72.5},
        }

    def identity(self, level="kyc"):
        return {
            "status": "verified",
            "level": level,
            "attestation_jwt": make_token(level, self.issued, self.days),
            "issued_at": self.issued.isoformat(),
            "expires_at": (self.issued + timedelta(days=self.days)).isoformat(),
        }

    def handler(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content) if request.content else None
        self.requests.append(SimpleNamespace(method=request.method, path=request.url.path, body=body, url=request.url))
        path = request.url.path

        if path == "/v1/challenge":
            return httpx.Response(200, json={
                "challenge": {"nonce": f"nonce-{len(self.requests)}"},
                "message": f"Sign to register {body['wallet_address']}",
            })
        if path == "/v1/agents/register-wallet":
            if self.fail_register:
                return httpx.Response(400, json={"detail": self.fail_register})
            self.registrations += 1
            agent_id = f"agent-{self.registrations}"
            return httpx.Response(201, json={
                "agent": {"id": agent_id, "keys": [{"key_id": f"key-{self.registrations}"}]},
                "verification_url": f"https://verify.test/{agent_id}",
            })
        if path.endswith("/verify-demo"):
            if self.fail_verify:
                return httpx.Response(422, json={"detail": self.fail_verify})
            level = parse_qs(request.url.query.decode())["level"][0]
            return httpx.Response(200, json={"agent": {"identity": self.identity(level)}})
        if request.method == "GET" and path.startswith("/v1/agents/"):
            if self.pending_polls > 0:
                self.pending_polls -= 1
                return httpx.Response(200, json={"agent": {"identity": {"status": "pending"}}})
            if self.poll_status != "verified":
                return httpx.Response(200, json={"agent": {"identity": {
                    "status": self.poll_status, "error": "document check failed",
                }}})
            return httpx.Response(200, json={"agent": {"identity": self.identity("kyc")}})
        if path == "/v1/verify":
            return httpx.Response(200, json=self.verify_response)
        return httpx.Response(404, json={"detail": "not found"})

    def client(self):
        return httpx.Client(transport=httpx.MockTransport(self.handler))


class FakeNetwork:
    """Routes the registry host to FakeRegistry; every other host is a paywalled merchant."""

    def __init__(self):
        self.registry = FakeRegistry(issued=datetime.now(timezone.utc))
        self.merchant_requests = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        if request.url.host == "registry.test":
            return self.registry.handler(request)
        self.merchant_requests.append(request)
        if "payment-signature" not in request.headers:
            return httpx.Response(402, json={"error": "payment required"})
        return httpx.Response(200, json={"quote": 42})

    def client(self):
        return httpx.Client(transport=httpx.MockTransport(self.handler))


class FakeLedger:
    """Ledger double: fixed challenges, recorded proof requests."""

    network = "eip155:8453"

    def __init__(self, challenges=None):
        self.challenges = challenges if challenges is not None else [make_challenge(1.0)]
        self.proofs = []

    def get_balance(self, address):
        return SimpleNamespace(to_dict=lambda: {
            "address": address, "amount": "12.5", "currency": "USDC", "decimals": 6,
        })

    def parse_challenge(self, headers, body):
        return list(self.challenges)

    def build_payment_proof(self, challenge):
        self.proofs.append(challenge)
        return {"PAYMENT-SIGNATURE": f"proof-for-{challenge.amount_base_units}"}

    def submit_and_confirm(self, signed_tx):
        return "0x" + "ab" * 32

    def settlement_reference(self, headers):
        for k, v in headers.items():
            if k.lower() == "x-settlement-tx":
                return v
        return None


def make_challenge(amount_usd, network="eip155:8453", pay_to="0x1111111111111111111111111111111111111111"):
    units = int(round(amount_usd * 1_000_000))
    return PaymentChallenge(
        amount_micros=units,
        amount_base_units=units,
        asset="0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913",
        pay_to=pay_to,
        network=network,
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def key_store():
    return MemoryKeyStore()


@pytest.fixture
def keys(key_store):
    return SigningKeyManager(key_store)


@pytest.fixture
def credentials(tmp_path, clock):
    return CredentialStore(tmp_path / "tap", clock=clock)


@pytest.fixture
def audit(tmp_path):
    return AuditTrail(path=tmp_path / "audit.jsonl", key_path=tmp_path / "secrets" / "audit_hmac.key")


@pytest.fixture
def make_validator(tmp_path, clock):
    def _make(**limits):
        return SpendLimitValidator(SpendLimits(**limits), ledger_dir=tmp_path / "ledger", clock=clock.epoch)
    return _make
