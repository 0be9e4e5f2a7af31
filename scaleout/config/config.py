"""
Environment-driven configuration with validation.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass

from dotenv import load_dotenv

load_dotenv()


def env_bool(key: str, default: bool) -> bool:
    val = os.getenv(key)
    if val is None:
        return default
    return val.lower() in {"1", "true", "yes", "y"}


@dataclass(frozen=True)
class Settings:
    base_url: str
    private_key: str | None
    agent_key: str | None
    user_address: str | None
    http_timeout: float
    taker_fee: float
    market_slippage: float
    price_log_interval: float
    log_base_path: str
    log_level: str

    def dump(self) -> dict:
        """Return a dict of settings for logging, with secrets masked."""
        payload = self.__dict__.copy()
        for key in ("private_key", "agent_key"):
            if payload.get(key):
                payload[key] = "***"
        return payload

    @property
    def testnet(self) -> bool:
        return "testnet" in self.base_url.lower()

    @classmethod
    def load(cls) -> "Settings":
        def _float_env(key: str, default: float) -> float:
            raw = os.getenv(key)
            if raw is None or raw == "":
                return default
            return float(raw)

        cfg = cls(
            base_url=os.getenv("HL_BASE_URL", "https://api.hyperliquid.xyz"),
            private_key=os.getenv("HL_PRIVATE_KEY"),
            agent_key=os.getenv("HL_AGENT_KEY"),
            user_address=os.getenv("HL_USER_ADDRESS"),
            http_timeout=_float_env("HL_HTTP_TIMEOUT", 10.0),
            taker_fee=_float_env("HL_TAKER_FEE", 0.002),
            market_slippage=_float_env("HL_MARKET_SLIPPAGE", 0.01),
            price_log_interval=_float_env("HL_PRICE_LOG_INTERVAL_SEC", 300.0),
            log_base_path=os.getenv("HL_LOG_BASE_PATH", ""),
            log_level=os.getenv("HL_LOG_LEVEL", "INFO").upper(),
        )
        cfg._validate()
        return cfg

    def resolve_account(self) -> str:
        if self.user_address:
            return self.user_address
        if self.private_key:
            from eth_account import Account

            return Account.from_key(self.private_key).address
        raise RuntimeError("Missing HL_USER_ADDRESS or HL_PRIVATE_KEY")

    def resolve_signer(self):
        from eth_account import Account

        if self.private_key:
            return Account.from_key(self.private_key)
        if self.agent_key:
            return Account.from_key(self.agent_key)
        raise RuntimeError("Missing credentials: set HL_PRIVATE_KEY or HL_AGENT_KEY")

    def _validate(self) -> None:
        if self.http_timeout <= 0:
            raise ValueError("HL_HTTP_TIMEOUT must be > 0")
        if not 0 <= self.taker_fee < 0.1:
            raise ValueError("HL_TAKER_FEE must be in [0, 0.1)")
        if not 0 < self.market_slippage < 1:
            raise ValueError("HL_MARKET_SLIPPAGE must be in (0, 1)")
        if self.price_log_interval <= 0:
            raise ValueError("HL_PRICE_LOG_INTERVAL_SEC must be > 0")
        if not isinstance(logging.getLevelName(self.log_level), int):
            raise ValueError(f"HL_LOG_LEVEL {self.log_level!r} is not a logging level")

        if self.agent_key and not self.user_address:
            logging.getLogger("scaleout").warning(
                "WARNING: HL_AGENT_KEY is set without HL_USER_ADDRESS. "
                "Agent keys trade on behalf of the account in HL_USER_ADDRESS."
            )


def log_settings(cfg: Settings) -> None:
    """Log critical settings once at startup so overrides are obvious."""
    logger = logging.getLogger("scaleout")
    payload = {"event": "config_loaded", **cfg.dump(), "testnet": cfg.testnet}
    logger.info(json.dumps(payload))
