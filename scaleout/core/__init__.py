"""
Core utilities package.

This package contains the significant-digit rounding rule and small helpers
shared by the strategy and execution layers.
"""

from scaleout.core.rounding import SIGNIFICANT_DIGITS, round_sig, round_decimals
from scaleout.core.utils import ClientIdFactory, now_ms

__all__ = [
    "SIGNIFICANT_DIGITS",
    "round_sig",
    "round_decimals",
    "ClientIdFactory",
    "now_ms",
]
