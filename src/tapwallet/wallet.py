"""
Settlement wallet key.

The wallet key moves funds and proves address ownership to the registry.
It is stored under its own key store slot and never shares material with
the TAP signing key managed by `tapwallet.keys`.
"""

from __future__ import annotations

import logging
from typing import Any, Protocol

from eth_account import Account
from eth_account.messages import encode_defunct
from eth_account.signers.local import LocalAccount

from .errors import KeyNotFoundError
from .keystore import KeyStore

logger = logging.getLogger(__name__)

WALLET_KEY_SLOT = "wallet_private_key"
BASE_CHAIN_ID = 8453


def _hex(value: bytes) -> str:
    text = bytes(value).hex()
    return text if text.startswith("0x") else "0x" + text


def caip10_address(address: str, chain_id: int = BASE_CHAIN_ID) -> str:
    """Chain-qualified account id, e.g. eip155:8453:0xabc..."""
    return f"eip155:{chain_id}:{address.lower()}"


class WalletSigner(Protocol):
    @property
    def address(self) -> str: ...

    def sign_message(self, message: str) -> str: ...


class EthAccountSigner:
    """Adapter that wraps eth-account LocalAccount for the x402 signer protocol."""

    def __init__(self, account: LocalAccount):
        self._account = account

    @property
    def address(self) -> str:
        return self._account.address

    def sign_typed_data(
        self,
        domain: Any,
        types: dict[str, list],
        primary_type: str,
        message: dict[str, Any],
    ) -> bytes:
        plain_types = {
            type_name: [
                {
                    "name": f["name"] if isinstance(f, dict) else getattr(f, "name"),
                    "type": f["type"] if isinstance(f, dict) else getattr(f, "type"),
                }
                for f in fields
            ]
            for type_name, fields in types.items()
        }

        domain_dict = _domain_to_dict(domain)
        msg = dict(message)
        if isinstance(msg.get("nonce"), bytes):
            msg["nonce"] = "0x" + msg["nonce"].hex()

        full_message = {
            "types": {**plain_types, "EIP712Domain": _build_domain_type(domain_dict)},
            "primaryType": primary_type,
            "domain": domain_dict,
            "message": msg,
        }
        signed = self._account.sign_typed_data(full_message=full_message)
        return bytes(signed.signature)


def _domain_to_dict(domain: Any) -> dict[str, Any]:
    if isinstance(domain, dict):
        return domain
    out: dict[str, Any] = {}
    if getattr(domain, "name", None) is not None:
        out["name"] = domain.name
    if getattr(domain, "version", None) is not None:
        out["version"] = domain.version
    chain_id = getattr(domain, "chain_id", None) or getattr(domain, "chainId", None)
    if chain_id is not None:
        out["chainId"] = chain_id
    verifying = getattr(domain, "verifying_contract", None) or getattr(domain, "verifyingContract", None)
    if verifying is not None:
        out["verifyingContract"] = verifying
    if getattr(domain, "salt", None) is not None:
        out["salt"] = domain.salt
    return out


def _build_domain_type(domain: dict) -> list[dict]:
    order = [
        ("name", "string"),
        ("version", "string"),
        ("chainId", "uint256"),
        ("verifyingContract", "address"),
        ("salt", "bytes32"),
    ]
    return [{"name": name, "type": typ} for name, typ in order if name in domain]


class Wallet:
    """Settlement account loaded from the secure key store."""

    def __init__(self, account: LocalAccount):
        self._account = account

    def __repr__(self) -> str:
        return f"Wallet(address={self.address!r})"

    @classmethod
    def create(cls, store: KeyStore) -> Wallet:
        account = Account.create()
        store.put(WALLET_KEY_SLOT, bytes(account.key))
        logger.info("Created settlement wallet %s", account.address)
        return cls(account)

    @classmethod
    def load(cls, store: KeyStore) -> Wallet:
        raw = store.get(WALLET_KEY_SLOT)
        if raw is None:
            raise KeyNotFoundError(WALLET_KEY_SLOT)
        return cls(Account.from_key(raw))

    @staticmethod
    def exists(store: KeyStore) -> bool:
        return store.has(WALLET_KEY_SLOT)

    @property
    def address(self) -> str:
        return self._account.address

    def caip10(self, chain_id: int = BASE_CHAIN_ID) -> str:
        return caip10_address(self.address, chain_id)

    def sign_message(self, message: str) -> str:
        """EIP-191 personal-message signature, 0x-prefixed hex."""
        signed = self._account.sign_message(encode_defunct(text=message))
        return _hex(signed.signature)

    def sign_transaction(self, tx: dict[str, Any]) -> bytes:
        return bytes(self._account.sign_transaction(tx).raw_transaction)

    def x402_signer(self) -> EthAccountSigner:
        return EthAccountSigner(self._account)
