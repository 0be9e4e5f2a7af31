"""
Scale-out target price calculation.

The base 1:1 target reflects the stop distance across the entry
(2 * entry - stop). The slippage term assumes the stop fills worse than its
trigger, and the fee term lifts the target far enough to recover the taker
fee paid on both the entry and the exit legs, so the reward stays 1:1 net of
costs.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_DOWN
from typing import Optional

from scaleout.core.rounding import round_sig


def calculate_target_price(
    entry_fill_price: float,
    stop_price: float,
    fee_rate: float,
    slippage: float,
    is_short: bool,
    override_target: Optional[float] = None,
) -> float:
    """
    Return the rounded 1:1 risk/reward target.

    Args:
        entry_fill_price: Average fill price of the entry order
        stop_price: Protective stop price
        fee_rate: Taker fee rate (0.002 == 0.2%)
        slippage: Estimated stop slippage as a fraction (0.01 == 1%)
        is_short: Position direction
        override_target: Fixed target; when non-zero the formula is skipped
    """
    if override_target:
        return round_sig(override_target)
    if not is_short:
        target = (
            2 * entry_fill_price
            - stop_price * (1 - slippage)
            + 4 * entry_fill_price * fee_rate / (1 - fee_rate)
        )
    else:
        target = (
            2 * entry_fill_price
            - stop_price * (1 + slippage)
            - 4 * entry_fill_price * fee_rate / (1 + fee_rate)
        )
    return round_sig(target)


@dataclass(frozen=True)
class ScaleOutPlan:
    """Exit tranche sizes and prices, derived once after the entry fills."""
    stop_amount: float
    stop_price: float
    target_amount: float
    target_price: float

    @classmethod
    def split(
        cls,
        exit_amount: float,
        stop_price: float,
        target_price: float,
    ) -> "ScaleOutPlan":
        """Half to the plain stop, the remainder to the OCO target tranche."""
        stop_amount = round_sig(exit_amount / 2)
        # truncated so the two tranches never add up to more than the exit
        target_amount = round_sig(exit_amount - stop_amount, rounding=ROUND_DOWN)
        return cls(
            stop_amount=stop_amount,
            stop_price=stop_price,
            target_amount=target_amount,
            target_price=target_price,
        )
