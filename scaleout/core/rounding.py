"""
Significant-digit rounding aligned with the venue's price/size quoting rule.

Hyperliquid quotes prices with at most 5 significant figures regardless of
magnitude, so every price and amount goes through round_sig() before it is
compared, stored or sent.
"""

from __future__ import annotations

import math
from decimal import Decimal, ROUND_HALF_UP

SIGNIFICANT_DIGITS = 5


def round_sig(x: float, digits: int = SIGNIFICANT_DIGITS, rounding: str = ROUND_HALF_UP) -> float:
    """
    Round x to `digits` significant figures (ties away from zero).

    Pass rounding=ROUND_DOWN to truncate toward zero instead, for sizes that
    must never exceed what is held. round_sig(0) == 0, and the result is
    idempotent.
    """
    if x == 0:
        return 0.0
    magnitude = math.ceil(math.log10(abs(x)))
    power = digits - magnitude
    # repr() gives the shortest decimal that round-trips, so 0.15 stays a tie
    quantum = Decimal(1).scaleb(-power)
    return float(Decimal(repr(float(x))).quantize(quantum, rounding=rounding))


def round_decimals(x: float, decimals: int, rounding: str = ROUND_HALF_UP) -> float:
    """Round x to a fixed number of decimals (ties away from zero by default)."""
    if decimals < 0:
        return x
    quantum = Decimal(1).scaleb(-decimals)
    return float(Decimal(repr(float(x))).quantize(quantum, rounding=rounding))
