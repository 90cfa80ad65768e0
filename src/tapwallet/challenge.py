"""x402 payment challenge types and response classification."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping, Optional

from .money import micros_to_usd_float

PAYMENT_REQUIRED = 402


class ResponseKind(str, Enum):
    SUCCESS = "success"
    CHALLENGE = "challenge"
    REJECTED = "rejected"


def classify_response(status_code: int) -> ResponseKind:
    if status_code == PAYMENT_REQUIRED:
        return ResponseKind.CHALLENGE
    if 200 <= status_code < 400:
        return ResponseKind.SUCCESS
    return ResponseKind.REJECTED


@dataclass
class PaymentChallenge:
    """One acceptable payment requirement parsed from a 402 response."""

    amount_micros: int
    amount_base_units: int
    asset: str
    pay_to: str
    network: str
    scheme: str = "exact"
    requirement: Any = field(default=None, repr=False)
    payment_required: Any = field(default=None, repr=False)

    @property
    def amount_usd(self) -> float:
        return micros_to_usd_float(self.amount_micros)

    def to_dict(self) -> dict:
        return {
            "amount_usd": self.amount_usd,
            "amount_base_units": self.amount_base_units,
            "asset": self.asset,
            "pay_to": self.pay_to,
            "network": self.network,
            "scheme": self.scheme,
        }


def header_lookup(headers: Mapping[str, str], name: str) -> Optional[str]:
    target = name.lower()
    for k, v in headers.items():
        if k.lower() == target:
            return v
    return None
