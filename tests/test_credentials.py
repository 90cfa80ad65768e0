"""Tests for TAP credential persistence and derived status."""

import json
from datetime import timedelta

import pytest

from tapwallet.credentials import (
    AgentIdentity,
    Attestation,
    CredentialStore,
    IdentityLevel,
    parse_timestamp,
)
from tapwallet.errors import MalformedAttestationError, RegistryError
from tapwallet.keys import TAP_KEY_SLOT

from conftest import REGISTRY_URL, T0, make_attestation


def make_identity(agent_id="agent-1"):
    return AgentIdentity(
        agent_id=agent_id,
        key_id="key-1",
        public_key=b"\x02" * 32,
        registered_at=T0,
        wallet_address="eip155:8453:0xabc",
        name="Test Agent",
        registry_url=REGISTRY_URL,
    )


class TestAttestation:
    def test_expiry_must_follow_issue(self):
        with pytest.raises(MalformedAttestationError):
            make_attestation(days=0)

    def test_malformed_attestation_is_a_registry_error(self):
        assert issubclass(MalformedAttestationError, RegistryError)

    def test_repr_hides_token(self):
        attestation = make_attestation()
        assert attestation.token not in repr(attestation)
        assert "kyc" in repr(attestation)

    def test_is_expired_is_strictly_after_expiry(self):
        attestation = make_attestation(days=10)
        assert not attestation.is_expired(attestation.expires_at)
        assert attestation.is_expired(attestation.expires_at + timedelta(seconds=1))


class TestParseTimestamp:
    def test_accepts_z_suffix_and_epoch(self):
        assert parse_timestamp("2026-01-15T12:00:00Z") == T0
        assert parse_timestamp(int(T0.timestamp())) == T0

    def test_naive_is_utc(self):
        assert parse_timestamp("2026-01-15T12:00:00") == T0


class TestCredentialStore:
    def test_fresh_profile_is_unverified(self, credentials):
        status = credentials.get_status()
        assert not status.verified
        assert status.agent_id is None
        assert not credentials.is_configured()

    def test_registered_without_attestation(self, credentials):
        credentials.save_agent(make_identity())
        status = credentials.get_status()
        assert credentials.is_configured()
        assert not status.verified
        assert status.agent_id == "agent-1"

    def test_verified_after_attestation(self, credentials):
        credentials.save_agent(make_identity())
        credentials.save_attestation(make_attestation("kyb"))
        status = credentials.get_status()
        assert status.verified
        assert status.identity_level == IdentityLevel.KYB
        assert status.registry_url == REGISTRY_URL
        assert status.days_until_expiry == 365

    def test_status_flips_with_time_only(self, credentials, clock):
        credentials.save_agent(make_identity())
        credentials.save_attestation(make_attestation(days=40))
        assert credentials.is_verified()

        clock.advance(days=20)
        status = credentials.get_status()
        assert status.verified
        assert status.renewal_due

        clock.advance(days=20, seconds=1)
        assert not credentials.is_verified()

    def test_attestation_without_identity_is_absent(self, credentials):
        credentials.save_attestation(make_attestation())
        assert credentials.load_attestation() is None
        assert not credentials.get_status().verified

    def test_attestation_for_another_agent_is_absent(self, credentials):
        credentials.save_agent(make_identity("agent-2"))
        credentials.save_attestation(make_attestation(agent_id="agent-1"))
        assert credentials.load_attestation() is None
        status = credentials.get_status()
        assert status.agent_id == "agent-2"
        assert not status.verified

    def test_attestation_for_another_key_is_absent(self, credentials):
        credentials.save_agent(make_identity())
        attestation = make_attestation()
        credentials.save_attestation(Attestation.from_dict({**attestation.to_dict(), "key_id": "key-9"}))
        assert credentials.load_attestation() is None

    def test_new_agent_discards_stored_attestation(self, credentials):
        credentials.save_agent(make_identity())
        credentials.save_attestation(make_attestation())
        credentials.save_agent(make_identity())
        assert credentials.is_verified()

        credentials.save_agent(make_identity("agent-2"))
        assert not (credentials.base_dir / "attestation.json").exists()
        assert not credentials.is_verified()

    def test_identity_without_key_handle_uses_default_slot(self, credentials):
        record = make_identity().to_dict()
        del record["key_handle"]
        (credentials.base_dir / "agent.json").write_text(json.dumps(record))
        assert credentials.load_agent().key_handle == TAP_KEY_SLOT

    def test_later_attestation_replaces_earlier(self, credentials):
        credentials.save_agent(make_identity())
        credentials.save_attestation(make_attestation("email"))
        credentials.save_attestation(make_attestation("kyc"))
        assert credentials.load_attestation().identity_level == IdentityLevel.KYC

    def test_records_survive_a_new_store_instance(self, tmp_path, clock):
        first = CredentialStore(tmp_path / "tap", clock=clock)
        first.save_agent(make_identity())
        first.save_attestation(make_attestation())
        second = CredentialStore(tmp_path / "tap", clock=clock)
        assert second.load_agent() == make_identity()
        assert second.is_verified()

    def test_corrupt_files_read_as_absent(self, credentials):
        credentials.save_agent(make_identity())
        (credentials.base_dir / "attestation.json").write_text("{not json")
        assert credentials.load_attestation() is None
        (credentials.base_dir / "agent.json").write_text(json.dumps({"agent_id": "x"}))
        assert credentials.load_agent() is None

    def test_inverted_attestation_on_disk_reads_as_absent(self, credentials):
        credentials.save_agent(make_identity())
        record = make_attestation().to_dict()
        record["expires_at"] = record["issued_at"]
        (credentials.base_dir / "attestation.json").write_text(json.dumps(record))
        assert credentials.load_attestation() is None

    def test_clear(self, credentials):
        credentials.save_agent(make_identity())
        credentials.save_attestation(make_attestation())
        credentials.clear()
        assert credentials.load_agent() is None
        assert not credentials.is_verified()

    def test_status_dict(self, credentials):
        credentials.save_agent(make_identity())
        credentials.save_attestation(make_attestation())
        d = credentials.get_status().to_dict()
        assert d["verified"] is True
        assert d["identity_level"] == "kyc"
        assert d["attestation_expires"].endswith("Z")
