"""
Command-line surface for a single scale-out run.
"""

from __future__ import annotations

import argparse
import math
from typing import List, Optional

from scaleout.execution.models import DEFAULT_TAKER_FEE, ExitMode, OrderIntent


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="scaleout",
        description=(
            "Place an entry order and, once it fills, protect the position with a "
            "stop and a scale-out target."
        ),
    )
    parser.add_argument("-p", "--pair", required=True, help="coin or pair name as listed on the venue (BTC, PURR/USDC)")
    parser.add_argument("-a", "--amount", type=float, required=True, help="position size, unsigned")
    parser.add_argument("-e", "--entry", type=float, default=0.0, help="entry price; 0 enters at market")
    parser.add_argument("-s", "--stop", type=float, required=True, help="stop price")
    parser.add_argument("-S", "--slippage", type=float, default=0.0, help="expected stop slippage in percent")
    parser.add_argument("-l", "--limit", action="store_true", help="enter with a limit order instead of a stop")
    parser.add_argument("-t", "--trigger", type=float, default=0.0, help="trigger price for a stop-limit entry")
    parser.add_argument("-x", "--exchange", action="store_true", help="trade spot instead of margin")
    parser.add_argument("-H", "--hide-exit", action="store_true", help="hide exit orders from the book")
    parser.add_argument("-c", "--cancel-price", type=float, default=0.0, help="cancel the entry if price crosses this level (default: stop)")
    exits = parser.add_mutually_exclusive_group()
    exits.add_argument("-T", "--target", type=float, default=None, help="fixed target price instead of the break-even scale-out")
    exits.add_argument("-n", "--no-scale-out", action="store_true", help="protect the full position with a single stop")
    return parser


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = build_parser()
    args = parser.parse_args(argv)

    for name in ("amount", "stop", "entry", "trigger", "cancel_price", "slippage", "target"):
        value = getattr(args, name)
        if value is not None and not math.isfinite(value):
            parser.error(f"--{name.replace('_', '-')} must be a finite number")
    if args.amount <= 0:
        parser.error("--amount must be > 0")
    if args.stop <= 0:
        parser.error("--stop must be > 0")
    for name in ("entry", "trigger", "cancel_price", "slippage"):
        if getattr(args, name) < 0:
            parser.error(f"--{name.replace('_', '-')} must be >= 0")
    if args.target is not None and args.target <= 0:
        parser.error("--target must be > 0")
    if not args.pair.strip():
        parser.error("--pair must not be empty")
    return args


def build_intent(args: argparse.Namespace, taker_fee: float = DEFAULT_TAKER_FEE) -> OrderIntent:
    if args.target is not None:
        exit_mode = ExitMode.FIXED_TARGET
    elif args.no_scale_out:
        exit_mode = ExitMode.SINGLE_STOP
    else:
        exit_mode = ExitMode.SCALE_OUT

    return OrderIntent.create(
        symbol=args.pair,
        amount=args.amount,
        stop_price=args.stop,
        entry_price=args.entry,
        trigger_price=args.trigger,
        limit_entry=args.limit,
        margin=not args.exchange,
        hidden_exits=args.hide_exit,
        cancel_price=args.cancel_price,
        exit_mode=exit_mode,
        target_price=args.target or 0.0,
        slippage_pct=args.slippage,
        taker_fee=taker_fee,
    )
