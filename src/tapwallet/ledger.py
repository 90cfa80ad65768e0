"""
Settlement ledger capability.

Payment proofs use the official x402 SDK ("exact" EVM scheme, signed by the
wallet key). Balance reads and raw transaction submission go straight to the
chain's JSON-RPC endpoint.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Mapping, Optional, Protocol

import httpx
from eth_abi import decode, encode
from eth_utils import function_signature_to_4byte_selector, to_checksum_address
from x402 import x402ClientSync
from x402.http.x402_http_client import x402HTTPClientSync
from x402.mechanisms.evm.exact import ExactEvmScheme
from x402.mechanisms.evm.utils import get_asset_info

from .challenge import PaymentChallenge, header_lookup
from .errors import ChallengeError, PaymentError, TransportError
from .money import USDC_DECIMALS, base_units_to_micros, format_token_amount

logger = logging.getLogger(__name__)

BASE_MAINNET = "eip155:8453"
BASE_SEPOLIA = "eip155:84532"
USDC_BASE_MAINNET = "0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913"

_BALANCE_OF = function_signature_to_4byte_selector("balanceOf(address)")
_DECIMALS = function_signature_to_4byte_selector("decimals()")
_SYMBOL = function_signature_to_4byte_selector("symbol()")


@dataclass
class Balance:
    address: str
    amount: str
    symbol: str
    decimals: int
    raw: int = 0

    def to_dict(self) -> dict:
        return {
            "address": self.address,
            "amount": self.amount,
            "currency": self.symbol,
            "decimals": self.decimals,
        }


class Ledger(Protocol):
    def get_balance(self, address: str) -> Balance: ...

    def parse_challenge(self, headers: Mapping[str, str], body: bytes) -> list[PaymentChallenge]: ...

    def build_payment_proof(self, challenge: PaymentChallenge) -> dict[str, str]: ...

    def submit_and_confirm(self, signed_tx: bytes) -> str: ...

    def settlement_reference(self, headers: Mapping[str, str]) -> Optional[str]: ...


class X402Ledger:
    """x402 payment proofs plus JSON-RPC balance and transfer confirmation."""

    def __init__(
        self,
        signer: Any,
        rpc_url: str,
        usdc_contract: str = USDC_BASE_MAINNET,
        network: str = BASE_MAINNET,
        http: Optional[httpx.Client] = None,
        timeout_seconds: float = 30.0,
        confirmation_timeout_seconds: float = 120.0,
        poll_interval_seconds: float = 2.0,
        sleep: Callable[[float], None] = time.sleep,
        monotonic: Callable[[], float] = time.monotonic,
    ):
        self.rpc_url = rpc_url
        self.usdc_contract = to_checksum_address(usdc_contract)
        self.network = network
        self.confirmation_timeout_seconds = confirmation_timeout_seconds
        self.poll_interval_seconds = poll_interval_seconds
        self._http = http or httpx.Client(timeout=timeout_seconds)
        self._sleep = sleep
        self._monotonic = monotonic
        self._request_id = 0

        self._x402_client = x402ClientSync()
        self._x402_client.register(network, ExactEvmScheme(signer=signer))
        self._http_handler = x402HTTPClientSync(client=self._x402_client)

    # ── x402 ─────────────────────────────────────────────────────

    def parse_challenge(self, headers: Mapping[str, str], body: bytes) -> list[PaymentChallenge]:
        raw_headers = dict(headers)
        try:
            payment_required = self._http_handler.get_payment_required_response(
                lambda h: header_lookup(raw_headers, h),
                body,
            )
        except Exception as e:
            raise ChallengeError(f"Failed to parse 402 requirements: {type(e).__name__}: {e}") from e

        challenges = []
        for req in getattr(payment_required, "accepts", None) or []:
            network = str(getattr(req, "network", ""))
            asset = str(getattr(req, "asset", ""))
            amount_raw = int(getattr(req, "amount", "0"))
            challenges.append(
                PaymentChallenge(
                    amount_micros=base_units_to_micros(amount_raw, _asset_decimals(network, asset)),
                    amount_base_units=amount_raw,
                    asset=asset,
                    pay_to=str(getattr(req, "pay_to", "")),
                    network=network,
                    scheme=str(getattr(req, "scheme", "exact")),
                    requirement=req,
                    payment_required=payment_required,
                )
            )
        return challenges

    def build_payment_proof(self, challenge: PaymentChallenge) -> dict[str, str]:
        """Sign a payment for exactly the challenge's amount and recipient."""
        if not hasattr(challenge.payment_required, "model_copy"):
            raise ChallengeError("Unsupported x402 payment version")
        filtered = challenge.payment_required.model_copy(update={"accepts": [challenge.requirement]})

        try:
            payload = self._http_handler.create_payment_payload(filtered)
            headers = self._http_handler.encode_payment_signature_header(payload)
        except Exception as e:
            raise PaymentError(f"Failed to create payment: {type(e).__name__}: {e}") from e
        return dict(headers)

    def settlement_reference(self, headers: Mapping[str, str]) -> Optional[str]:
        try:
            settle = self._http_handler.get_payment_settle_response(
                lambda h: header_lookup(headers, h),
            )
        except Exception:
            return None
        return (
            getattr(settle, "tx_hash", None)
            or getattr(settle, "transaction_hash", None)
            or getattr(settle, "transaction", None)
        )

    # ── JSON-RPC ─────────────────────────────────────────────────

    def _rpc(self, method: str, params: Optional[list[Any]] = None) -> Any:
        self._request_id += 1
        payload = {
            "jsonrpc": "2.0",
            "id": self._request_id,
            "method": method,
            "params": params or [],
        }
        try:
            response = self._http.post(self.rpc_url, json=payload)
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise TransportError(f"RPC {method} failed: {type(e).__name__}: {e}") from e

        result = response.json()
        if "error" in result:
            raise PaymentError(f"RPC error from {method}: {result['error']}")
        return result.get("result")

    def _eth_call(self, data: bytes) -> bytes:
        result = self._rpc(
            "eth_call",
            [{"to": self.usdc_contract, "data": "0x" + data.hex()}, "latest"],
        )
        return bytes.fromhex((result or "0x")[2:])

    def get_balance(self, address: str) -> Balance:
        checksummed = to_checksum_address(address)
        (raw,) = decode(["uint256"], self._eth_call(_BALANCE_OF + encode(["address"], [checksummed])))
        (decimals,) = decode(["uint8"], self._eth_call(_DECIMALS))
        (symbol,) = decode(["string"], self._eth_call(_SYMBOL))
        return Balance(
            address=checksummed,
            amount=format_token_amount(raw, decimals),
            symbol=symbol,
            decimals=int(decimals),
            raw=int(raw),
        )

    def submit_and_confirm(self, signed_tx: bytes) -> str:
        """Broadcast a signed transaction and wait for a successful receipt."""
        tx_hash = self._rpc("eth_sendRawTransaction", ["0x" + bytes(signed_tx).hex()])
        logger.info("Submitted transaction %s", tx_hash)

        deadline = self._monotonic() + self.confirmation_timeout_seconds
        while True:
            receipt = self._rpc("eth_getTransactionReceipt", [tx_hash])
            if receipt:
                if int(receipt.get("status", "0x0"), 16) != 1:
                    raise PaymentError(f"Transaction {tx_hash} reverted")
                return tx_hash
            if self._monotonic() >= deadline:
                raise TransportError(f"Transaction {tx_hash} not confirmed in time")
            self._sleep(self.poll_interval_seconds)

    def close(self):
        self._http.close()

    def __enter__(self):
        return self

    def __exit__(self, *args):
        self.close()


def _asset_decimals(network: str, asset: str) -> int:
    try:
        return int(get_asset_info(network, asset).get("decimals", USDC_DECIMALS))
    except Exception:
        return USDC_DECIMALS
