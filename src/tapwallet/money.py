"""Money conversion helpers using fixed micro-dollar precision.

USDC carries six decimals, so one micro-dollar is one USDC base unit.
"""

from __future__ import annotations

from decimal import Decimal, ROUND_CEILING, ROUND_FLOOR


MICROS_PER_USD = 1_000_000
USDC_DECIMALS = 6
_USD_QUANT = Decimal("0.000001")


def amount_usd_to_micros(value: Decimal | float | int | str) -> int:
    """Convert spend amount to micro-dollars, rounding up (conservative)."""
    dec = Decimal(str(value)).quantize(_USD_QUANT, rounding=ROUND_CEILING)
    return int(dec * MICROS_PER_USD)


def limit_usd_to_micros(value: Decimal | float | int | str) -> int:
    """Convert a limit to micro-dollars, rounding down (conservative)."""
    dec = Decimal(str(value)).quantize(_USD_QUANT, rounding=ROUND_FLOOR)
    return int(dec * MICROS_PER_USD)


def base_units_to_micros(amount: int, decimals: int) -> int:
    """Convert token base units to micro-dollars, rounding up."""
    if decimals == USDC_DECIMALS:
        return int(amount)
    dec = Decimal(int(amount)) / (Decimal(10) ** decimals)
    return amount_usd_to_micros(dec)


def micros_to_usd_decimal(value: int) -> Decimal:
    """Convert integer micro-dollars to Decimal USD."""
    return (Decimal(value) / Decimal(MICROS_PER_USD)).quantize(_USD_QUANT)


def micros_to_usd_float(value: int) -> float:
    """Convert integer micro-dollars to float USD (for display APIs)."""
    return float(micros_to_usd_decimal(value))


def format_usd_from_micros(value: int) -> str:
    """Format integer micro-dollars as a currency string."""
    return f"${micros_to_usd_decimal(value):.2f}"


def format_token_amount(base_units: int, decimals: int) -> str:
    """Render raw token units as a plain decimal string (e.g. '12.5')."""
    dec = Decimal(int(base_units)) / (Decimal(10) ** decimals)
    text = format(dec, "f")
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    return text or "0"
