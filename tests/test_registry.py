"""Tests for the TAP registry protocol client."""

import base64

import httpx
import pytest

from tapwallet.credentials import IdentityLevel
from tapwallet.errors import (
    MalformedAttestationError,
    RegistrationError,
    RegistryError,
    TransportError,
    VerificationError,
)
from tapwallet.keys import TAP_KEY_SLOT
from tapwallet.registry import RegistrationState, RegistryClient
from tapwallet.signer import RequestSigner, content_digest, verify_request
from tapwallet.wallet import Wallet

from conftest import REGISTRY_URL, FakeRegistry, T0


@pytest.fixture
def fake():
    return FakeRegistry()


@pytest.fixture
def wallet(key_store):
    return Wallet.create(key_store)


@pytest.fixture
def registry(fake, keys, credentials):
    sleeps = []
    ticks = iter(range(0, 10_000, 5))
    client = RegistryClient(
        keys=keys,
        credentials=credentials,
        registry_url=REGISTRY_URL + "/",
        http=fake.client(),
        poll_interval_seconds=5,
        poll_timeout_seconds=60,
        sleep=sleeps.append,
        monotonic=lambda: next(ticks),
    )
    client.sleeps = sleeps
    return client


class TestRegistration:
    def test_register_persists_identity(self, registry, fake, wallet, credentials, keys):
        registration = registry.register_agent(wallet.address, wallet, "Test Agent")

        assert registration.agent_id == "agent-1"
        assert registration.key_id == "key-1"
        assert registration.verification_url == "https://verify.test/agent-1"
        assert registration.attempt.state == RegistrationState.REGISTERED

        agent = credentials.load_agent()
        assert agent.agent_id == "agent-1"
        assert agent.key_handle.startswith(TAP_KEY_SLOT)
        assert agent.public_key == keys.public_key(agent.key_handle)
        assert agent.wallet_address == wallet.caip10()
        assert agent.registry_url == REGISTRY_URL

        status = credentials.get_status()
        assert not status.verified
        assert status.agent_id == "agent-1"

    def test_wire_format(self, registry, fake, wallet, keys, credentials):
        registry.register_agent(wallet.address, wallet, "Test Agent")
        challenge_req, register_req = fake.requests

        assert challenge_req.path == "/v1/challenge"
        assert challenge_req.body == {"wallet_address": wallet.caip10(), "chain_id": 8453}

        body = register_req.body
        assert register_req.path == "/v1/agents/register-wallet"
        assert body["wallet_address"] == wallet.caip10()
        assert body["algorithm"] == "ed25519"
        assert base64.b64decode(body["public_key"]) == keys.public_key(credentials.load_agent().key_handle)
        assert body["wallet_message"] == f"Sign to register {wallet.caip10()}"
        assert body["wallet_signature"] == wallet.sign_message(body["wallet_message"])

    def test_registration_is_not_idempotent(self, registry, fake, wallet, credentials):
        first = registry.register_agent(wallet.address, wallet, "Agent")
        second = registry.register_agent(wallet.address, wallet, "Agent")
        assert first.agent_id != second.agent_id
        assert first.public_key != second.public_key
        assert credentials.load_agent().agent_id == second.agent_id

    def test_rejection_surfaces_detail_verbatim(self, registry, fake, wallet, credentials):
        fake.fail_register = "wallet already bound to another agent"
        with pytest.raises(RegistrationError, match="wallet already bound to another agent") as exc:
            registry.register_agent(wallet.address, wallet, "Agent")
        assert exc.value.status_code == 400
        assert credentials.load_agent() is None
        assert fake.registrations == 0
        assert len([r for r in fake.requests if r.path == "/v1/agents/register-wallet"]) == 1

    def test_reregistration_replaces_key(self, registry, wallet, credentials, keys, key_store):
        first = registry.register_agent(wallet.address, wallet, "Agent")
        old_handle = credentials.load_agent().key_handle
        registry.register_agent(wallet.address, wallet, "Agent")

        agent = credentials.load_agent()
        assert agent.key_handle != old_handle
        assert not keys.has_key(old_handle)
        assert keys.public_key(agent.key_handle) != first.public_key
        assert [k for k in key_store.data if k.startswith(TAP_KEY_SLOT)] == [agent.key_handle]

    def test_failed_reregistration_keeps_signing_identity(self, registry, fake, wallet, credentials, keys, key_store, clock):
        registration = registry.register_agent(wallet.address, wallet, "Agent")
        registry.complete_verification(registration.agent_id, "kyc")
        before = credentials.load_agent()

        fake.fail_register = "registry unavailable"
        with pytest.raises(RegistrationError):
            registry.register_agent(wallet.address, wallet, "Agent")

        agent = credentials.load_agent()
        assert agent == before
        assert credentials.get_status().verified
        assert [k for k in key_store.data if k.startswith(TAP_KEY_SLOT)] == [agent.key_handle]

        url = "https://api.merchant.test/v1/quote"
        signer = RequestSigner(keys, credentials, now=clock)
        headers = signer.sign_with_stored_identity("GET", url)
        assert verify_request("GET", url, content_digest(b""), headers, agent.public_key)

    def test_transport_failure(self, keys, credentials, wallet):
        def boom(request):
            raise httpx.ConnectError("connection refused")

        client = RegistryClient(
            keys, credentials, REGISTRY_URL,
            http=httpx.Client(transport=httpx.MockTransport(boom)),
        )
        with pytest.raises(TransportError):
            client.get_challenge(wallet.address)

    def test_challenge_non_2xx_is_registry_error(self, keys, credentials, wallet):
        client = RegistryClient(
            keys, credentials, REGISTRY_URL,
            http=httpx.Client(transport=httpx.MockTransport(lambda r: httpx.Response(503))),
        )
        with pytest.raises(RegistryError):
            client.get_challenge(wallet.address)


class TestVerification:
    def test_demo_completion_persists_attestation(self, registry, fake, wallet, credentials):
        registration = registry.register_agent(wallet.address, wallet, "Agent")
        result = registry.complete_verification(registration.agent_id, "kyc", attempt=registration.attempt)

        assert result.identity_level == IdentityLevel.KYC
        assert result.reputation_score == 50.0
        assert registration.attempt.state == RegistrationState.VERIFIED

        status = credentials.get_status()
        assert status.verified
        assert status.identity_level == IdentityLevel.KYC
        assert fake.requests[-1].path == "/v1/agents/agent-1/verify-demo"

    def test_reregistering_invalidates_previous_attestation(self, registry, wallet, credentials):
        first = registry.register_agent(wallet.address, wallet, "Agent")
        registry.complete_verification(first.agent_id, "kyc")
        assert credentials.load_attestation().agent_id == "agent-1"

        second = registry.register_agent(wallet.address, wallet, "Agent")
        status = credentials.get_status()
        assert status.agent_id == second.agent_id == "agent-2"
        assert not status.verified
        assert status.identity_level is None
        assert credentials.load_attestation() is None

        registry.complete_verification(second.agent_id, "email")
        attestation = credentials.load_attestation()
        assert attestation.agent_id == "agent-2"
        assert attestation.key_id == "key-2"
        assert credentials.get_status().identity_level == IdentityLevel.EMAIL

    def test_rejection_raises_and_stores_nothing(self, registry, fake, wallet, credentials):
        registration = registry.register_agent(wallet.address, wallet, "Agent")
        fake.fail_verify = "document mismatch"
        with pytest.raises(VerificationError, match="document mismatch"):
            registry.complete_verification(registration.agent_id, "kyc", attempt=registration.attempt)
        assert registration.attempt.state == RegistrationState.FAILED
        assert credentials.load_attestation() is None

    def test_unknown_agent_id(self, registry, wallet):
        registry.register_agent(wallet.address, wallet, "Agent")
        with pytest.raises(VerificationError, match="agent-99"):
            registry.complete_verification("agent-99", "kyc")

    def test_interactive_polls_until_terminal(self, registry, fake, wallet, credentials):
        registration = registry.register_agent(wallet.address, wallet, "Agent")
        fake.pending_polls = 2
        registry.complete_verification(registration.agent_id, "kyc", interactive=True)
        assert registry.sleeps == [5, 5]
        assert credentials.is_verified()

    def test_interactive_failure(self, registry, fake, wallet):
        registration = registry.register_agent(wallet.address, wallet, "Agent")
        fake.poll_status = "rejected"
        with pytest.raises(VerificationError, match="document check failed"):
            registry.complete_verification(registration.agent_id, "kyc", interactive=True)

    def test_interactive_timeout(self, registry, fake, wallet, credentials):
        registration = registry.register_agent(wallet.address, wallet, "Agent")
        fake.pending_polls = 1000
        with pytest.raises(VerificationError, match="not completed"):
            registry.complete_verification(registration.agent_id, "kyc", interactive=True)
        assert credentials.load_attestation() is None

    def test_inverted_validity_window_is_malformed(self, keys, credentials, wallet):
        fake = FakeRegistry(days=-1)
        client = RegistryClient(keys, credentials, REGISTRY_URL, http=fake.client())
        registration = client.register_agent(wallet.address, wallet, "Agent")
        with pytest.raises(MalformedAttestationError):
            client.complete_verification(registration.agent_id, "kyc")
        assert credentials.load_attestation() is None

    def test_missing_times_fall_back_to_token_claims(self, keys, credentials, wallet):
        fake = FakeRegistry()
        full_identity = fake.identity

        def identity_without_times(level="kyc"):
            identity = full_identity(level)
            del identity["issued_at"], identity["expires_at"]
            return identity

        fake.identity = identity_without_times
        client = RegistryClient(keys, credentials, REGISTRY_URL, http=fake.client())
        registration = client.register_agent(wallet.address, wallet, "Agent")
        result = client.complete_verification(registration.agent_id, "email")
        assert result.identity_level == IdentityLevel.EMAIL
        assert credentials.load_attestation().issued_at == T0


class TestRelyingPartyLookups:
    def test_verify_agent(self, registry, fake):
        result = registry.verify_agent("eip155:8453:0xabc", "token")
        assert result.valid
        assert result.identity_level == IdentityLevel.KYC
        assert result.reputation_score == 72.5
        assert fake.requests[-1].body == {"wallet_address": "eip155:8453:0xabc", "attestation": "token"}

    def test_verify_agent_never_raises(self, keys, credentials):
        def boom(request):
            raise httpx.ReadTimeout("slow")

        client = RegistryClient(
            keys, credentials, REGISTRY_URL,
            http=httpx.Client(transport=httpx.MockTransport(boom)),
        )
        result = client.verify_agent("eip155:8453:0xabc", "token")
        assert not result.valid
        assert result.error

    def test_invalid_attestation(self, registry, fake):
        fake.verify_response = {"valid": False, "error": "attestation revoked"}
        result = registry.verify_agent("eip155:8453:0xabc", "token")
        assert not result.valid
        assert result.error == "attestation revoked"

    def test_non_numeric_reputation_is_unknown(self, registry, fake, wallet):
        fake.verify_response = {"valid": True, "reputation": {"reputation_score": "n/a"}}
        result = registry.verify_agent("eip155:8453:0xabc", "token")
        assert result.valid
        assert result.reputation_score is None

        registration = registry.register_agent(wallet.address, wallet, "Agent")
        registry.complete_verification(registration.agent_id, "kyc")
        assert registry.get_reputation().reputation_score == 0.0

    def test_reputation_requires_verification(self, registry, fake, wallet):
        assert registry.get_reputation() is None
        registration = registry.register_agent(wallet.address, wallet, "Agent")
        registry.complete_verification(registration.agent_id, "kyc")
        assert registry.get_reputation().reputation_score == 72.5
