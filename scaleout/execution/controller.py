"""
LifecycleController: async runtime for the order lifecycle state machine.

Owns the exchange session for its whole lifetime. Ticker ticks, order-status
callbacks, submit/cancel outcomes and interrupt signals all enter through
post() into one queue and are applied to the state machine in arrival order.
Each venue call runs as its own task, so a pending cancel never blocks a
fill notification.
"""

from __future__ import annotations

import asyncio
import logging
from typing import List, Optional, Set

from scaleout.execution.models import OrderIntent, OrderUpdate, TickerSnapshot
from scaleout.execution.order_state_machine import (
    CancelAcked,
    CancelOrder,
    CancelRejected,
    Effect,
    Event,
    OrderAcked,
    OrderClosed,
    OrderLifecycle,
    OrderRejected,
    PriceTick,
    SubmitOrder,
    SubscribeTicker,
    Terminate,
    UnsubscribeTicker,
)
from scaleout.execution.session import ExchangeSession
from scaleout.infra.logging_cfg import log_event

log = logging.getLogger("scaleout")


class LifecycleController:
    def __init__(
        self,
        intent: OrderIntent,
        session: ExchangeSession,
        lifecycle: Optional[OrderLifecycle] = None,
        price_log_interval: float = 300.0,
    ) -> None:
        self.intent = intent
        self.session = session
        self.lifecycle = lifecycle or OrderLifecycle(intent, price_log_interval=price_log_interval)
        self._events: asyncio.Queue = asyncio.Queue()
        self._tasks: Set[asyncio.Task] = set()
        self._session_open = False
        self._session_closed = False
        self.outcome: Optional[Terminate] = None

    def post(self, event: Event) -> None:
        """Queue an event for the state machine. Must be called on the loop thread."""
        self._events.put_nowait(event)

    async def run(self) -> Terminate:
        """Drive the lifecycle to a terminal state. Never raises."""
        transition = self.lifecycle.start()
        if any(isinstance(e, Terminate) for e in transition.effects):
            # Rejected before any venue contact
            await self._apply(transition.effects)
            return self.outcome

        try:
            await self.session.open()
        except Exception as exc:
            log_event(log, "session_open_failed", level=logging.ERROR, err=str(exc))
            await self._finish(Terminate(False, "session_open_failed"))
            return self.outcome
        self._session_open = True
        self.session.on_order_update(self._on_order_update)
        log_event(log, "session_ready", symbol=self.intent.symbol)

        await self._apply(transition.effects)
        while self.outcome is None:
            event = await self._events.get()
            transition = self.lifecycle.handle(event)
            await self._apply(transition.effects)
        return self.outcome

    # ----------------------------------------------------------- effects

    async def _apply(self, effects: List[Effect]) -> None:
        for effect in effects:
            if self.outcome is not None:
                return
            if isinstance(effect, SubmitOrder):
                self._spawn(self._submit(effect))
            elif isinstance(effect, CancelOrder):
                self._spawn(self._cancel(effect))
            elif isinstance(effect, SubscribeTicker):
                await self._subscribe(effect.symbol)
            elif isinstance(effect, UnsubscribeTicker):
                await self._unsubscribe(effect.symbol)
            elif isinstance(effect, Terminate):
                await self._finish(effect)
            else:
                raise TypeError(f"unsupported effect: {effect!r}")

    async def _submit(self, effect: SubmitOrder) -> None:
        request = effect.request
        try:
            ack = await self.session.submit(request)
        except Exception as exc:
            log_event(
                log, "venue_submit_error",
                level=logging.ERROR,
                role=effect.role.name,
                cid=request.cid,
                err=str(exc) or type(exc).__name__,
            )
            self.post(OrderRejected(effect.role, request.cid, str(exc) or type(exc).__name__))
            return
        self.post(OrderAcked(effect.role, request.cid, ack.order_id))

    async def _cancel(self, effect: CancelOrder) -> None:
        request = effect.request
        log_event(log, "cancel_requested", cid=request.cid, oid=request.order_id)
        try:
            await self.session.cancel(request)
        except Exception as exc:
            self.post(CancelRejected(request.cid, str(exc) or type(exc).__name__))
            return
        self.post(CancelAcked(request.cid))

    async def _subscribe(self, symbol: str) -> None:
        try:
            await self.session.subscribe_ticker(symbol, self._on_ticker)
        except Exception as exc:
            # Entry still goes out; only the pre-fill cancel guard is lost
            log_event(log, "ticker_subscribe_failed", level=logging.ERROR, symbol=symbol, err=str(exc))

    async def _unsubscribe(self, symbol: str) -> None:
        try:
            await self.session.unsubscribe_ticker(symbol)
        except Exception as exc:
            log_event(log, "ticker_unsubscribe_failed", level=logging.WARNING, symbol=symbol, err=str(exc))

    async def _finish(self, outcome: Terminate) -> None:
        """Single termination path: record outcome, stop tasks, close the session."""
        if self.outcome is not None:
            return
        self.outcome = outcome
        current = asyncio.current_task()
        pending = [t for t in self._tasks if t is not current and not t.done()]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        if self._session_open and not self._session_closed:
            self._session_closed = True
            try:
                await self.session.close()
            except Exception as exc:
                log_event(log, "session_close_failed", level=logging.WARNING, err=str(exc))
        log_event(
            log, "lifecycle_finished",
            success=outcome.success,
            reason=outcome.reason,
            state=self.lifecycle.state.name,
        )

    def _spawn(self, coro) -> None:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    # --------------------------------------------------------- callbacks

    def _on_ticker(self, ticker: TickerSnapshot) -> None:
        self.post(PriceTick(ticker))

    def _on_order_update(self, update: OrderUpdate) -> None:
        if update.status.is_terminal:
            self.post(OrderClosed(update))
        else:
            log_event(
                log, "order_updated",
                cid=update.cid,
                oid=update.order_id,
                status=update.status.name,
                raw=update.raw_status,
            )
