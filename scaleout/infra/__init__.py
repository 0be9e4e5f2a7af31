"""
Infrastructure package.

This package contains logging configuration, signal routing and the async
wrappers around the Hyperliquid SDK and info endpoints.
"""

from scaleout.infra.logging_cfg import build_logger, log_event, run_log_path

__all__ = [
    "build_logger",
    "log_event",
    "run_log_path",
]
