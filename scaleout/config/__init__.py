"""
Configuration package.

This package contains environment-driven settings and credential resolution.
"""

from scaleout.config.config import Settings, env_bool, log_settings

__all__ = [
    "Settings",
    "env_bool",
    "log_settings",
]
