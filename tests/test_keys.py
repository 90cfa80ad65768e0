"""Tests for TAP signing keys and the key store."""

import stat

import pytest

from tapwallet.errors import KeyNotFoundError
from tapwallet.keys import TAP_KEY_SLOT, SigningKeyManager
from tapwallet.keystore import FileKeyStore
from tapwallet.wallet import WALLET_KEY_SLOT, Wallet


class TestSigningKeyManager:
    def test_generate_returns_handle_and_raw_public_key(self, keys, key_store):
        handle, public_key = keys.generate_keypair()
        assert handle == TAP_KEY_SLOT
        assert len(public_key) == 32
        assert key_store.has(TAP_KEY_SLOT)
        assert keys.public_key(handle) == public_key

    def test_each_generation_is_a_new_keypair(self, keys):
        _, first = keys.generate_keypair()
        _, second = keys.generate_keypair()
        assert first != second
        assert keys.public_key(TAP_KEY_SLOT) == second

    def test_sign_and_verify(self, keys):
        handle, public_key = keys.generate_keypair()
        signature = keys.sign(handle, b"hello")
        assert SigningKeyManager.verify(public_key, b"hello", signature)

    def test_signatures_are_deterministic(self, keys):
        handle, _ = keys.generate_keypair()
        assert keys.sign(handle, b"same") == keys.sign(handle, b"same")

    def test_tampered_message_fails_verification(self, keys):
        handle, public_key = keys.generate_keypair()
        signature = keys.sign(handle, b"hello")
        assert not SigningKeyManager.verify(public_key, b"hellp", signature)
        flipped = bytes([signature[0] ^ 0x01]) + signature[1:]
        assert not SigningKeyManager.verify(public_key, b"hello", flipped)

    def test_verify_rejects_garbage_public_key(self):
        assert not SigningKeyManager.verify(b"short", b"msg", b"\x00" * 64)

    def test_unknown_handle_raises(self, keys):
        with pytest.raises(KeyNotFoundError, match="no_such_key"):
            keys.sign("no_such_key", b"msg")
        assert not keys.has_key("no_such_key")


class TestKeySlots:
    def test_wallet_and_tap_keys_never_share_a_slot(self, keys, key_store):
        wallet = Wallet.create(key_store)
        keys.generate_keypair()
        assert WALLET_KEY_SLOT != TAP_KEY_SLOT
        assert key_store.get(WALLET_KEY_SLOT) != key_store.get(TAP_KEY_SLOT)
        assert Wallet.load(key_store).address == wallet.address

    def test_missing_wallet_raises(self, key_store):
        assert not Wallet.exists(key_store)
        with pytest.raises(KeyNotFoundError):
            Wallet.load(key_store)

    def test_wallet_repr_hides_key(self, key_store):
        wallet = Wallet.create(key_store)
        assert key_store.get(WALLET_KEY_SLOT).hex() not in repr(wallet)
        assert wallet.caip10() == f"eip155:8453:{wallet.address.lower()}"


class TestFileKeyStore:
    def test_round_trip_with_private_permissions(self, tmp_path):
        store = FileKeyStore(tmp_path / "keys")
        store.put("tap_signing_key", b"\x01" * 32)
        assert store.get("tap_signing_key") == b"\x01" * 32
        path = tmp_path / "keys" / "tap_signing_key.key"
        assert stat.S_IMODE(path.stat().st_mode) == 0o600
        assert stat.S_IMODE((tmp_path / "keys").stat().st_mode) == 0o700

    def test_missing_and_deleted(self, tmp_path):
        store = FileKeyStore(tmp_path / "keys")
        assert store.get("absent") is None
        store.put("k", b"v")
        store.delete("k")
        assert not store.has("k")

    def test_names_cannot_escape_the_directory(self, tmp_path):
        store = FileKeyStore(tmp_path / "keys")
        store.put("../escape", b"v")
        assert not (tmp_path / "escape.key").exists()
        assert store.get("../escape") == b"v"
