"""
Exchange session interface consumed by the lifecycle controller.

A session owns the authenticated venue connection, the market-data
subscription and order submission/cancellation. Callbacks are always invoked
on the event loop thread.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Optional

from scaleout.execution.models import OrderRequest, OrderStatus, OrderUpdate, TickerSnapshot

TickerCallback = Callable[[TickerSnapshot], None]
OrderUpdateCallback = Callable[[OrderUpdate], None]


class SessionError(Exception):
    """Session could not be opened or was used before it was ready."""


class OrderRejectedError(Exception):
    """The venue rejected a submission or cancellation."""

    def __init__(self, message: str, raw: Optional[object] = None) -> None:
        super().__init__(message)
        self.raw = raw


@dataclass(frozen=True)
class OrderAck:
    cid: int
    order_id: Optional[int]
    status: OrderStatus = OrderStatus.ACTIVE
    avg_price: Optional[float] = None


class ExchangeSession(ABC):
    @abstractmethod
    async def open(self) -> None:
        """Connect and authenticate; returning is the ready signal."""

    @abstractmethod
    async def close(self) -> None:
        """Release the connection. Safe to call more than once."""

    @abstractmethod
    async def subscribe_ticker(self, symbol: str, callback: TickerCallback) -> None:
        ...

    @abstractmethod
    async def unsubscribe_ticker(self, symbol: str) -> None:
        ...

    @abstractmethod
    def on_order_update(self, callback: OrderUpdateCallback) -> None:
        """Register the order-status listener (terminal and non-terminal)."""

    @abstractmethod
    async def submit(self, request: OrderRequest) -> OrderAck:
        """Submit an order; raises OrderRejectedError when the venue refuses it."""

    @abstractmethod
    async def cancel(self, request: OrderRequest) -> None:
        """Cancel an order; raises OrderRejectedError when the venue refuses it."""
