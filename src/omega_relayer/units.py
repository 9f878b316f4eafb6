"""Amount conversion between the two ledgers' native denominations.

The bridged SPL token uses 9 decimals and Omega's native token 18, so the
rescale factor is an exact integer power of ten. Converting towards the
finer denomination is lossless; converting back truncates any remainder
below one source unit.
"""
from __future__ import annotations

from decimal import Decimal
from typing import Tuple

SOURCE_DECIMALS = 9
TARGET_DECIMALS = 18


def rescale_factor(source_decimals: int = SOURCE_DECIMALS, target_decimals: int = TARGET_DECIMALS) -> int:
    """Integer factor between the two denominations."""
    if target_decimals < source_decimals:
        raise ValueError(
            f"Target decimals ({target_decimals}) must not be below source decimals ({source_decimals})"
        )
    return 10 ** (target_decimals - source_decimals)


def to_target_units(
    amount: int,
    source_decimals: int = SOURCE_DECIMALS,
    target_decimals: int = TARGET_DECIMALS,
) -> int:
    """Convert raw source units to raw target units (exact)."""
    if amount < 0:
        raise ValueError(f"Amount must be non-negative, got {amount}")
    return amount * rescale_factor(source_decimals, target_decimals)


def to_source_units_with_dust(
    amount: int,
    source_decimals: int = SOURCE_DECIMALS,
    target_decimals: int = TARGET_DECIMALS,
) -> Tuple[int, int]:
    """Convert raw target units to raw source units.

    Returns (converted, dust) where dust is the truncated target-unit remainder.
    """
    if amount < 0:
        raise ValueError(f"Amount must be non-negative, got {amount}")
    return divmod(amount, rescale_factor(source_decimals, target_decimals))


def to_source_units(
    amount: int,
    source_decimals: int = SOURCE_DECIMALS,
    target_decimals: int = TARGET_DECIMALS,
) -> int:
    """Convert raw target units to raw source units, truncating toward zero."""
    return to_source_units_with_dust(amount, source_decimals, target_decimals)[0]


def format_units(amount: int, decimals: int) -> Decimal:
    """Human-readable amount for log lines."""
    return Decimal(amount) / Decimal(10 ** decimals)
