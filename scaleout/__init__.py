"""
Auto-stop 1:1 scale-out order runner for Hyperliquid.
"""
