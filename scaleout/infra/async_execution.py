"""
Async wrapper around the blocking Hyperliquid Exchange using a private thread pool.

Calls are never retried: an order that timed out may still have reached the
venue, and resubmitting it could open a second position.
"""

from __future__ import annotations

import asyncio
from concurrent.futures import ThreadPoolExecutor
from typing import Any


class AsyncExchange:
    def __init__(self, exchange, timeout: float = 10.0, max_workers: int = 4) -> None:
        self._exchange = exchange
        self._timeout = timeout
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="hl-exec")

    async def order(self, *args, **kwargs) -> Any:
        return await self._call(lambda: self._exchange.order(*args, **kwargs))

    async def market_open(self, *args, **kwargs) -> Any:
        return await self._call(lambda: self._exchange.market_open(*args, **kwargs))

    async def bulk_orders(self, *args, **kwargs) -> Any:
        return await self._call(lambda: self._exchange.bulk_orders(*args, **kwargs))

    async def cancel_by_cloid(self, coin: str, cloid: Any) -> Any:
        return await self._call(lambda: self._exchange.cancel_by_cloid(coin, cloid))

    async def close(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)

    async def _call(self, fn) -> Any:
        loop = asyncio.get_running_loop()
        return await asyncio.wait_for(loop.run_in_executor(self._executor, fn), timeout=self._timeout)
