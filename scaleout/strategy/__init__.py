"""
Strategy package - exit price logic.
"""

from scaleout.strategy.target import ScaleOutPlan, calculate_target_price

__all__ = [
    "ScaleOutPlan",
    "calculate_target_price",
]
