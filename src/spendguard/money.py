"""USD fixed-point helpers (18 decimals) and basis-point arithmetic."""

from __future__ import annotations

from decimal import Decimal, ROUND_FLOOR


USD_DECIMALS = 18
USD_SCALE = 10**USD_DECIMALS
BPS_DENOMINATOR = 10_000
_DISPLAY_QUANT = Decimal("0.01")


def ceil_div(numerator: int, denominator: int) -> int:
    """Integer division rounding towards positive infinity."""
    if denominator <= 0:
        raise ValueError("denominator must be positive")
    return -(-numerator // denominator)


def bps_of(value: int, bps: int) -> int:
    """Return ``value * bps / 10000`` rounded down."""
    return value * bps // BPS_DENOMINATOR


def usd_to_scaled(value: Decimal | float | int | str) -> int:
    """Convert a USD amount to an 18-decimal integer, rounding down."""
    dec = Decimal(str(value)) * USD_SCALE
    return int(dec.to_integral_value(rounding=ROUND_FLOOR))


def scaled_to_usd_decimal(value: int) -> Decimal:
    return Decimal(value) / Decimal(USD_SCALE)


def format_usd(value: int) -> str:
    """Format an 18-decimal USD integer as a currency string."""
    return f"${scaled_to_usd_decimal(value).quantize(_DISPLAY_QUANT, rounding=ROUND_FLOOR):,}"
