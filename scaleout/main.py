"""
Entry point wiring the CLI, settings, Hyperliquid session and lifecycle.
"""

from __future__ import annotations

import asyncio
import logging
import sys
from typing import List, Optional

from scaleout.cli import build_intent, parse_args
from scaleout.config import Settings, log_settings
from scaleout.execution.controller import LifecycleController
from scaleout.execution.hyperliquid_session import HyperliquidSession
from scaleout.execution.models import OrderIntent
from scaleout.execution.order_state_machine import Terminate
from scaleout.infra.logging_cfg import build_logger, log_event, run_log_path
from scaleout.infra.signals import InterruptHandler

log = logging.getLogger("scaleout")


async def run(intent: OrderIntent, cfg: Settings) -> Terminate:
    session = HyperliquidSession(cfg)
    controller = LifecycleController(intent, session, price_log_interval=cfg.price_log_interval)
    interrupts = InterruptHandler(controller.post)
    interrupts.install(asyncio.get_running_loop())
    try:
        return await controller.run()
    finally:
        interrupts.remove()


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    try:
        cfg = Settings.load()
    except ValueError as exc:
        print(f"configuration error: {exc}", file=sys.stderr)
        return 1

    build_logger(
        "scaleout",
        level=logging.getLevelName(cfg.log_level),
        file_path=run_log_path(args.pair, cfg.log_base_path),
    )
    log_settings(cfg)

    intent = build_intent(args, taker_fee=cfg.taker_fee)
    log_event(log, "run_started", **intent.dump())

    try:
        outcome = asyncio.run(run(intent, cfg))
    except KeyboardInterrupt:
        # Only reachable where add_signal_handler is unsupported
        log_event(log, "run_interrupted", level=logging.WARNING)
        return 1

    log_event(log, "run_exit", success=outcome.success, reason=outcome.reason)
    return 0 if outcome.success else 1


def run_cli() -> None:
    sys.exit(main())


if __name__ == "__main__":
    run_cli()
