"""
Execution layer components for the scale-out runner.

- models: OrderIntent, OrderRequest, venue status and ticker types
- OrderLifecycle: pure state machine for entry, pre-fill cancel and exits
- LifecycleController: async runtime executing the machine's effects
- ExchangeSession: venue interface consumed by the controller

The Hyperliquid adapter lives in scaleout.execution.hyperliquid_session and
is imported explicitly by the entry point.
"""

from scaleout.execution.models import (
    DEFAULT_TAKER_FEE,
    ExitMode,
    OrderIntent,
    OrderKind,
    OrderRequest,
    OrderStatus,
    OrderUpdate,
    TickerSnapshot,
)
from scaleout.execution.order_state_machine import (
    LifecycleState,
    OrderLifecycle,
    OrderRole,
    Terminate,
    Transition,
)
from scaleout.execution.session import ExchangeSession, OrderAck, OrderRejectedError, SessionError
from scaleout.execution.controller import LifecycleController

__all__ = [
    "DEFAULT_TAKER_FEE",
    "ExitMode",
    "OrderIntent",
    "OrderKind",
    "OrderRequest",
    "OrderStatus",
    "OrderUpdate",
    "TickerSnapshot",
    "LifecycleState",
    "OrderLifecycle",
    "OrderRole",
    "Terminate",
    "Transition",
    "ExchangeSession",
    "OrderAck",
    "OrderRejectedError",
    "SessionError",
    "LifecycleController",
]
