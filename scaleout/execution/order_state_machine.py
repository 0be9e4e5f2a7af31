"""
Order Lifecycle State Machine - entry, pre-fill cancel and protective exits.

A pure state machine: handle() takes one event, updates the lifecycle and
returns the effects (submit/cancel/subscribe/terminate) the runtime must
execute. No I/O happens here, so every transition can be driven directly
from tests.

State Diagram:

    INIT ──ack──> ENTRY_PENDING ──breach/interrupt──> CANCEL_REQUESTED
      │               │                                    │
      │               ├──closed CANCELED──> ENTRY_CANCELED <┤ cancel ack / closed CANCELED
      │               │                                    │
      └──closed filled┴──closed filled──> ENTRY_FILLED <───┘ closed filled
                                               │
                                               ▼
                                        EXIT_SUBMITTING ──last exit ack──> DONE
                                               │
                                               └──exit rejected──> FATAL_ERROR

    INIT ──precondition / entry rejected / interrupt──> ABORTED
    CANCEL_REQUESTED ──cancel rejected──> ABORTED

A fill notification may overtake a cancel confirmation; whichever terminal
entry event arrives first wins and the other is ignored.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Callable, Dict, List, Optional, Union

from scaleout.core.rounding import round_sig
from scaleout.core.utils import ClientIdFactory, now_ms
from scaleout.execution.models import (
    ExitMode,
    OrderIntent,
    OrderKind,
    OrderRequest,
    OrderStatus,
    OrderUpdate,
    TickerSnapshot,
)
from scaleout.infra.logging_cfg import log_event
from scaleout.strategy.target import ScaleOutPlan, calculate_target_price

log = logging.getLogger("scaleout")

DEFAULT_PRICE_LOG_INTERVAL = 300.0


class LifecycleState(Enum):
    INIT = auto()              # entry built, submission in flight
    ENTRY_PENDING = auto()     # entry acknowledged and live on the venue
    CANCEL_REQUESTED = auto()  # entry cancel in flight (breach or interrupt)
    ENTRY_CANCELED = auto()    # terminal, no position
    ENTRY_FILLED = auto()      # position open, exits not yet sent
    EXIT_SUBMITTING = auto()   # protective orders being placed
    DONE = auto()              # terminal, position protected
    FATAL_ERROR = auto()       # terminal, position under-protected
    ABORTED = auto()           # terminal, no position opened by us


TERMINAL_STATES = frozenset({
    LifecycleState.ENTRY_CANCELED,
    LifecycleState.DONE,
    LifecycleState.FATAL_ERROR,
    LifecycleState.ABORTED,
})


class OrderRole(Enum):
    ENTRY = auto()
    STOP = auto()
    TARGET = auto()  # OCO limit at target + linked stop


# ---------------------------------------------------------------- events

@dataclass(frozen=True)
class PriceTick:
    ticker: TickerSnapshot


@dataclass(frozen=True)
class OrderAcked:
    role: OrderRole
    cid: int
    order_id: Optional[int] = None


@dataclass(frozen=True)
class OrderRejected:
    role: OrderRole
    cid: int
    error: str


@dataclass(frozen=True)
class OrderClosed:
    update: OrderUpdate


@dataclass(frozen=True)
class CancelAcked:
    cid: int


@dataclass(frozen=True)
class CancelRejected:
    cid: int
    error: str


@dataclass(frozen=True)
class InterruptSignal:
    signal_name: str


Event = Union[PriceTick, OrderAcked, OrderRejected, OrderClosed, CancelAcked, CancelRejected, InterruptSignal]


# --------------------------------------------------------------- effects

@dataclass(frozen=True)
class SubscribeTicker:
    symbol: str


@dataclass(frozen=True)
class UnsubscribeTicker:
    symbol: str


@dataclass(frozen=True)
class SubmitOrder:
    request: OrderRequest
    role: OrderRole


@dataclass(frozen=True)
class CancelOrder:
    request: OrderRequest


@dataclass(frozen=True)
class Terminate:
    success: bool
    reason: str


Effect = Union[SubscribeTicker, UnsubscribeTicker, SubmitOrder, CancelOrder, Terminate]


@dataclass
class StateChange:
    """Audit record of a single state change."""
    from_state: LifecycleState
    to_state: LifecycleState
    timestamp_ms: int
    reason: Optional[str] = None


@dataclass
class Transition:
    """Result of feeding one event to the lifecycle."""
    from_state: LifecycleState
    to_state: LifecycleState
    event: str
    effects: List[Effect] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return self.from_state is not self.to_state


class OrderLifecycle:
    """
    Single-trade lifecycle: one entry, then one or two protective exits.

    Owns every piece of lifecycle state. The runtime feeds it events in
    arrival order and executes the returned effects.
    """

    def __init__(
        self,
        intent: OrderIntent,
        cid_factory: Optional[ClientIdFactory] = None,
        clock: Callable[[], float] = time.monotonic,
        price_log_interval: float = DEFAULT_PRICE_LOG_INTERVAL,
    ) -> None:
        self.intent = intent
        self._cids = cid_factory or ClientIdFactory()
        self._clock = clock
        self._price_log_interval = price_log_interval
        self._state = LifecycleState.INIT
        self._started = False
        self._last_price_log: Optional[float] = None

        self.entry: Optional[OrderRequest] = None
        self.exits: Dict[OrderRole, OrderRequest] = {}
        self.acked_exits: List[OrderRole] = []
        self.plan: Optional[ScaleOutPlan] = None
        self.exit_amount: Optional[float] = None
        # Set once, at the fill transition
        self.effective_entry_price: Optional[float] = None
        self.degraded = False
        self.cancel_reason: Optional[str] = None
        self.interrupted = False
        self.transitions: List[StateChange] = []

        self._handlers: Dict[type, Callable[..., List[Effect]]] = {
            PriceTick: self._on_price_tick,
            OrderAcked: self._on_order_acked,
            OrderRejected: self._on_order_rejected,
            OrderClosed: self._on_order_closed,
            CancelAcked: self._on_cancel_acked,
            CancelRejected: self._on_cancel_rejected,
            InterruptSignal: self._on_interrupt,
        }

    @property
    def state(self) -> LifecycleState:
        return self._state

    @property
    def is_terminal(self) -> bool:
        return self._state in TERMINAL_STATES

    @property
    def entry_active(self) -> bool:
        return self._state in (LifecycleState.ENTRY_PENDING, LifecycleState.CANCEL_REQUESTED)

    # ------------------------------------------------------------ intake

    def start(self) -> Transition:
        """Validate the intent and emit the entry submission."""
        if self._started:
            raise RuntimeError("lifecycle already started")
        self._started = True
        intent = self.intent
        log_event(
            log, "lifecycle_start",
            symbol=intent.symbol,
            side=intent.side,
            exit_mode=intent.exit_mode.name,
            scale_out=intent.exit_mode is ExitMode.SCALE_OUT,
        )

        error = intent.precondition_error()
        if error:
            log_event(log, "precondition_failed", level=logging.ERROR, reason=error, margin=intent.margin)
            self._move(LifecycleState.ABORTED, "precondition_failed")
            return self._transition(LifecycleState.INIT, "start", [Terminate(False, error)])

        self.entry = self._entry_request()
        log_event(
            log, "monitoring_cancel_price",
            symbol=intent.symbol,
            cancel_price=intent.cancel_price,
        )
        log_event(log, "entry_submitting", **self.entry.describe())
        effects: List[Effect] = [
            SubscribeTicker(intent.symbol),
            SubmitOrder(self.entry, OrderRole.ENTRY),
        ]
        return self._transition(LifecycleState.INIT, "start", effects)

    def handle(self, event: Event) -> Transition:
        name = type(event).__name__
        from_state = self._state
        if self.is_terminal:
            log.debug("lifecycle_event_after_terminal state=%s event=%s", from_state.name, name)
            return self._transition(from_state, name, [])
        handler = self._handlers.get(type(event))
        if handler is None:
            raise TypeError(f"unsupported lifecycle event: {event!r}")
        effects = handler(event)
        return self._transition(from_state, name, effects)

    # ---------------------------------------------------------- handlers

    def _on_price_tick(self, event: PriceTick) -> List[Effect]:
        # Only a live, not-yet-cancelling entry is monitored
        if self._state is not LifecycleState.ENTRY_PENDING:
            return []
        ticker = event.ticker.rounded()
        self._maybe_log_price(ticker)
        if not self._is_breached(ticker):
            return []
        log_event(
            log, "cancel_price_breached",
            msg=f"Your cancel price of {self.intent.cancel_price} was breached prior to entry. Cancelling entry order.",
            cancel_price=self.intent.cancel_price,
            bid=ticker.bid,
            ask=ticker.ask,
            cid=self.entry.cid,
        )
        self.cancel_reason = "price_breach"
        self._move(LifecycleState.CANCEL_REQUESTED, "price_breach")
        return [CancelOrder(self.entry)]

    def _on_order_acked(self, event: OrderAcked) -> List[Effect]:
        if event.role is OrderRole.ENTRY:
            if self.entry.order_id is None:
                self.entry.order_id = event.order_id
            if self._state is not LifecycleState.INIT:
                log.debug("entry_ack_late state=%s cid=%s", self._state.name, event.cid)
                return []
            log_event(log, "entry_submitted", cid=event.cid, oid=event.order_id)
            self._move(LifecycleState.ENTRY_PENDING, "entry_acknowledged")
            return []

        if self._state is not LifecycleState.EXIT_SUBMITTING:
            log.debug("exit_ack_ignored state=%s role=%s", self._state.name, event.role.name)
            return []
        request = self.exits[event.role]
        request.order_id = event.order_id
        self.acked_exits.append(event.role)
        if event.role is OrderRole.STOP:
            log_event(
                log, "stop_submitted",
                msg=f"Submitted stop order for {request.amount} at {request.price}",
                **request.describe(),
            )
        else:
            log_event(
                log, "target_submitted",
                msg="Submitted limit target and stop (oco) order",
                **request.describe(),
            )

        if event.role is OrderRole.STOP and self._awaiting_target():
            target = self._target_request(self.plan.target_amount, self.plan.target_price)
            self.exits[OrderRole.TARGET] = target
            log_event(
                log, "target_compiled",
                msg=(
                    f"Compiled oco limit order for {target.amount} at {target.price} "
                    f"and stop at {target.aux_price}"
                ),
                avg_entry=self.effective_entry_price,
                **target.describe(),
            )
            return [SubmitOrder(target, OrderRole.TARGET)]

        if self.plan is not None and self.intent.exit_mode is ExitMode.SCALE_OUT:
            log_event(log, "exits_complete", msg="Submitted scale out 1:1 (oco) + stop order")
        else:
            log_event(log, "exits_complete", msg="Protective exit order in place")
        self._move(LifecycleState.DONE, "exits_acknowledged")
        return [Terminate(True, "position_protected")]

    def _on_order_rejected(self, event: OrderRejected) -> List[Effect]:
        if event.role is OrderRole.ENTRY:
            if self._state is not LifecycleState.INIT:
                log.debug("entry_reject_ignored state=%s", self._state.name)
                return []
            log_event(
                log, "entry_submit_failed",
                level=logging.ERROR,
                msg=f"WARNING - error submitting entry order: {event.error}",
                cid=event.cid,
                err=event.error,
            )
            self._move(LifecycleState.ABORTED, "entry_rejected")
            return [Terminate(False, "entry_rejected")]

        if self._state is not LifecycleState.EXIT_SUBMITTING:
            log.debug("exit_reject_ignored state=%s role=%s", self._state.name, event.role.name)
            return []
        self._alert_exit_failure(event)
        self._move(LifecycleState.FATAL_ERROR, f"{event.role.name.lower()}_rejected")
        return [Terminate(False, "exit_submit_failed")]

    def _on_order_closed(self, event: OrderClosed) -> List[Effect]:
        update = event.update
        if not self._is_entry(update):
            log.debug("order_closed_ignored cid=%s oid=%s", update.cid, update.order_id)
            return []
        if self._state not in (
            LifecycleState.INIT,
            LifecycleState.ENTRY_PENDING,
            LifecycleState.CANCEL_REQUESTED,
        ):
            log.debug("entry_close_ignored state=%s", self._state.name)
            return []
        log_event(log, "entry_order_status", status=update.status.name, raw=update.raw_status, oid=update.order_id)
        if not update.status.is_terminal:
            return []
        if update.status is OrderStatus.CANCELED:
            log_event(log, "entry_canceled", msg="Entry order cancelled.", cid=self.entry.cid, reason=self.cancel_reason)
            self._move(LifecycleState.ENTRY_CANCELED, "entry_canceled")
            return [Terminate(True, "entry_canceled")]
        return self._on_entry_filled(update)

    def _on_cancel_acked(self, event: CancelAcked) -> List[Effect]:
        if self._state is not LifecycleState.CANCEL_REQUESTED:
            log_event(log, "cancel_ack_ignored", cid=event.cid, state=self._state.name)
            return []
        log_event(log, "cancel_confirmed", msg=f"Cancellation confirmed for order {event.cid}", cid=event.cid)
        self._move(LifecycleState.ENTRY_CANCELED, "cancel_acknowledged")
        return [Terminate(True, "entry_canceled")]

    def _on_cancel_rejected(self, event: CancelRejected) -> List[Effect]:
        if self._state is not LifecycleState.CANCEL_REQUESTED:
            log_event(log, "cancel_reject_ignored", level=logging.WARNING, cid=event.cid, err=event.error)
            return []
        log_event(
            log, "cancel_failed",
            level=logging.WARNING,
            msg=f"WARNING - error cancelling order: {event.error}",
            cid=event.cid,
            reason=self.cancel_reason,
            err=event.error,
        )
        self._move(LifecycleState.ABORTED, "cancel_rejected")
        return [Terminate(False, "cancel_failed")]

    def _on_interrupt(self, event: InterruptSignal) -> List[Effect]:
        self.interrupted = True
        log_event(
            log, "interrupt",
            level=logging.ERROR,
            msg=f"handled script interrupt - {event.signal_name}",
            state=self._state.name,
        )
        if self._state is LifecycleState.ENTRY_PENDING:
            self.cancel_reason = "interrupt"
            self._move(LifecycleState.CANCEL_REQUESTED, "interrupt")
            return [CancelOrder(self.entry)]
        if self._state is LifecycleState.INIT:
            log_event(
                log, "interrupt_before_ack",
                level=logging.WARNING,
                msg="Entry order not yet acknowledged; check the venue for a stray order.",
                cid=self.entry.cid if self.entry else None,
            )
            self._move(LifecycleState.ABORTED, "interrupt")
            return [Terminate(False, "interrupted")]
        if self._state is LifecycleState.CANCEL_REQUESTED:
            log_event(log, "interrupt_cancel_in_flight", cid=self.entry.cid)
            return []
        # ENTRY_FILLED / EXIT_SUBMITTING: protective orders run to completion
        log_event(
            log, "interrupt_deferred",
            level=logging.WARNING,
            msg="Position is open; finishing protective exit orders before exiting.",
        )
        return []

    # ------------------------------------------------------------- fills

    def _on_entry_filled(self, update: OrderUpdate) -> List[Effect]:
        intent = self.intent
        if self.entry.order_id is None:
            self.entry.order_id = update.order_id
        self._move(LifecycleState.ENTRY_FILLED, f"entry_{update.raw_status or 'filled'}")
        log_event(
            log, "position_entered",
            msg="-- POSITION ENTERED --",
            cid=self.entry.cid,
            oid=self.entry.order_id,
            avg_price=update.avg_price,
        )
        effects: List[Effect] = [UnsubscribeTicker(intent.symbol)]

        self.exit_amount = intent.exit_amount()
        if update.avg_price:
            self.effective_entry_price = round_sig(update.avg_price)
        elif intent.entry_price:
            self.effective_entry_price = intent.entry_price

        mode = intent.exit_mode
        if mode is ExitMode.FIXED_TARGET:
            target_price = calculate_target_price(
                self.effective_entry_price or 0.0,
                intent.stop_price,
                intent.taker_fee,
                intent.slippage,
                intent.is_short,
                override_target=intent.target_price,
            )
            self.plan = ScaleOutPlan(
                stop_amount=0.0,
                stop_price=intent.stop_price,
                target_amount=self.exit_amount,
                target_price=target_price,
            )
            request = self._target_request(self.exit_amount, target_price)
            role = OrderRole.TARGET
            log_event(
                log, "target_compiled",
                msg=(
                    f"Compiled oco limit order for {request.amount} at {request.price} "
                    f"and stop at {request.aux_price}"
                ),
                **request.describe(),
            )
        elif mode is ExitMode.SINGLE_STOP:
            request = self._stop_request(self.exit_amount)
            role = OrderRole.STOP
        elif self.effective_entry_price is None:
            self.degraded = True
            request = self._stop_request(self.exit_amount)
            role = OrderRole.STOP
            log_event(
                log, "avg_price_missing",
                level=logging.WARNING,
                msg=(
                    "Average price of entry was NOT RETURNED by the venue! Scale-out target cannot be "
                    f"calculated. Placing a SINGLE stop order at {intent.stop_price} for "
                    f"{self.exit_amount} (100%) to protect your position."
                ),
                action_required="convert the single stop into a 1:1 scale-out manually",
                intent=intent.dump(),
                entry=self.entry.describe(),
            )
        else:
            target_price = calculate_target_price(
                self.effective_entry_price,
                intent.stop_price,
                intent.taker_fee,
                intent.slippage,
                intent.is_short,
            )
            self.plan = ScaleOutPlan.split(self.exit_amount, intent.stop_price, target_price)
            request = self._stop_request(self.plan.stop_amount)
            role = OrderRole.STOP
            log_event(
                log, "scale_out_plan",
                avg_entry=self.effective_entry_price,
                stop_amount=self.plan.stop_amount,
                stop_price=self.plan.stop_price,
                target_amount=self.plan.target_amount,
                target_price=self.plan.target_price,
            )

        self.exits[role] = request
        self._move(LifecycleState.EXIT_SUBMITTING, mode.name.lower())
        effects.append(SubmitOrder(request, role))
        return effects

    def _awaiting_target(self) -> bool:
        return (
            self.intent.exit_mode is ExitMode.SCALE_OUT
            and self.plan is not None
            and OrderRole.TARGET not in self.exits
        )

    def _alert_exit_failure(self, event: OrderRejected) -> None:
        protected = sum(abs(self.exits[r].amount) for r in self.acked_exits)
        unprotected = round_sig(abs(self.exit_amount or 0.0) - protected)
        stop = self.intent.stop_price
        if event.role is OrderRole.TARGET and self.acked_exits:
            first = f"CRITICAL ERROR - error submitting OCO order: {event.error}"
        elif event.role is OrderRole.TARGET:
            first = f"CRITICAL ERROR - error submitting target (oco) order: {event.error}"
        else:
            first = f"CRITICAL ERROR - error submitting stop order: {event.error}"
        log_event(
            log, "exit_submit_failed",
            level=logging.CRITICAL,
            msg=first,
            role=event.role.name,
            cid=event.cid,
            err=event.error,
        )
        log_event(
            log, "position_at_risk",
            level=logging.CRITICAL,
            msg=(
                f"CRITICAL ERROR - risk of LOSSES: {unprotected} of the position has NO protective order. "
                f"You must enter a stop at {stop} manually!!!"
            ),
            protected_amount=protected,
            unprotected_amount=unprotected,
            stop_price=stop,
            exits=[self.exits[r].describe() for r in self.acked_exits],
        )

    # ---------------------------------------------------------- builders

    def _entry_request(self) -> OrderRequest:
        intent = self.intent
        kind = intent.entry_kind
        price, aux = intent.entry_price, None
        if kind is OrderKind.STOP_LIMIT:
            price, aux = intent.trigger_price, intent.entry_price
        return OrderRequest(
            cid=self._cids.next(),
            symbol=intent.symbol,
            amount=intent.entry_amount,
            price=price,
            kind=kind,
            aux_price=aux,
            margin=intent.margin,
        )

    def _stop_request(self, amount: float) -> OrderRequest:
        return OrderRequest(
            cid=self._cids.next(),
            symbol=self.intent.symbol,
            amount=amount,
            price=self.intent.stop_price,
            kind=OrderKind.STOP,
            reduce_only=True,
            hidden=self.intent.hidden_exits,
            margin=self.intent.margin,
        )

    def _target_request(self, amount: float, target_price: float) -> OrderRequest:
        return OrderRequest(
            cid=self._cids.next(),
            symbol=self.intent.symbol,
            amount=amount,
            price=target_price,
            kind=OrderKind.LIMIT,
            aux_price=self.intent.stop_price,
            reduce_only=True,
            hidden=self.intent.hidden_exits,
            oco=True,
            margin=self.intent.margin,
        )

    # ----------------------------------------------------------- helpers

    def _is_entry(self, update: OrderUpdate) -> bool:
        if self.entry is None:
            return False
        if update.cid is not None and update.cid == self.entry.cid:
            return True
        return update.order_id is not None and update.order_id == self.entry.order_id

    def _is_breached(self, ticker: TickerSnapshot) -> bool:
        entry = self.intent.entry_price
        cancel = self.intent.cancel_price
        if not self.intent.is_short:
            return entry > cancel and ticker.bid <= cancel
        return entry < cancel and ticker.ask >= cancel

    def _maybe_log_price(self, ticker: TickerSnapshot) -> None:
        now = self._clock()
        if self._last_price_log is not None and now - self._last_price_log <= self._price_log_interval:
            return
        self._last_price_log = now
        intent = self.intent
        log_event(
            log, "ticker_status",
            msg=(
                f"{intent.symbol} price: {ticker.last} (ask: {ticker.ask}, bid: {ticker.bid}) "
                f"{intent.side}: {intent.reference_price} cancel: {intent.cancel_price}"
            ),
            last=ticker.last,
            bid=ticker.bid,
            ask=ticker.ask,
        )

    def _move(self, to_state: LifecycleState, reason: Optional[str] = None) -> None:
        change = StateChange(
            from_state=self._state,
            to_state=to_state,
            timestamp_ms=now_ms(),
            reason=reason,
        )
        self.transitions.append(change)
        log_event(log, "lifecycle_transition", from_state=change.from_state.name, to_state=to_state.name, reason=reason)
        self._state = to_state

    def _transition(self, from_state: LifecycleState, event: str, effects: List[Effect]) -> Transition:
        return Transition(from_state=from_state, to_state=self._state, event=event, effects=effects)
