"""
Tests for the order lifecycle state machine.

Tests cover:
- Entry order construction per entry kind
- Precondition and entry rejection aborts
- Cancel-price breach detection (long and short)
- Scale-out, fixed-target and single-stop exit plans
- Degraded single stop when the fill price is unknown
- Interrupt handling before and after the fill
- Exit rejection alerts and throttled ticker logging
"""

import json
import logging

import pytest

from scaleout.execution.models import ExitMode, OrderKind, OrderStatus, OrderUpdate, TickerSnapshot
from scaleout.execution.order_state_machine import (
    CancelAcked,
    CancelOrder,
    CancelRejected,
    InterruptSignal,
    LifecycleState,
    OrderAcked,
    OrderClosed,
    OrderLifecycle,
    OrderRejected,
    OrderRole,
    PriceTick,
    SubmitOrder,
    SubscribeTicker,
    Terminate,
    UnsubscribeTicker,
)


def _pending(lifecycle):
    """Start the lifecycle and acknowledge the entry."""
    lifecycle.start()
    lifecycle.handle(OrderAcked(OrderRole.ENTRY, lifecycle.entry.cid, order_id=1))
    assert lifecycle.state is LifecycleState.ENTRY_PENDING
    return lifecycle


def _fill(lifecycle, avg_price=None, status=OrderStatus.FILLED):
    entry = lifecycle.entry
    return lifecycle.handle(
        OrderClosed(OrderUpdate(cid=entry.cid, order_id=entry.order_id, status=status, avg_price=avg_price))
    )


def _tick(bid, ask, last=None):
    return PriceTick(TickerSnapshot(last=last or (bid + ask) / 2, bid=bid, ask=ask))


def _submits(transition):
    return [e for e in transition.effects if isinstance(e, SubmitOrder)]


def _cancels(transition):
    return [e for e in transition.effects if isinstance(e, CancelOrder)]


def _event_payloads(caplog, event):
    out = []
    for record in caplog.records:
        try:
            payload = json.loads(record.getMessage())
        except ValueError:
            continue
        if payload.get("event") == event:
            out.append(payload)
    return out


# ------------------------------------------------------------------ start


def test_start_emits_subscription_and_stop_entry(make_intent, cid_factory):
    lifecycle = OrderLifecycle(make_intent(), cid_factory=cid_factory)
    transition = lifecycle.start()

    assert transition.effects[0] == SubscribeTicker("BTC")
    (submit,) = _submits(transition)
    assert submit.role is OrderRole.ENTRY
    entry = submit.request
    assert entry.cid == 1000
    assert entry.kind is OrderKind.STOP
    assert entry.amount == 1.0
    assert entry.price == 10000.0
    assert entry.reduce_only is False
    assert lifecycle.state is LifecycleState.INIT


@pytest.mark.parametrize(
    "overrides, kind, price, aux",
    [
        ({"entry_price": 0.0}, OrderKind.MARKET, 0.0, None),
        ({"limit_entry": True}, OrderKind.LIMIT, 10000.0, None),
        ({"trigger_price": 10010.0}, OrderKind.STOP_LIMIT, 10010.0, 10000.0),
    ],
)
def test_entry_kinds(make_intent, cid_factory, overrides, kind, price, aux):
    lifecycle = OrderLifecycle(make_intent(**overrides), cid_factory=cid_factory)
    lifecycle.start()
    assert lifecycle.entry.kind is kind
    assert lifecycle.entry.price == price
    assert lifecycle.entry.aux_price == aux


def test_short_entry_sells(make_intent, cid_factory):
    lifecycle = OrderLifecycle(make_intent(entry_price=9000.0, stop_price=10000.0), cid_factory=cid_factory)
    lifecycle.start()
    assert lifecycle.entry.amount == -1.0
    assert lifecycle.entry.side == "sell"


@pytest.mark.parametrize(
    "entry_price, stop_price, is_short, entry_amount",
    [
        (9000.0, 10000.0, True, -1.0),
        (10000.0, 10000.0, False, 1.0),
        (10000.0, 9000.0, False, 1.0),
        # market entry: a zero entry price sits below any stop
        (0.0, 9000.0, True, -1.0),
    ],
)
def test_direction_follows_entry_versus_stop(make_intent, entry_price, stop_price, is_short, entry_amount):
    intent = make_intent(entry_price=entry_price, stop_price=stop_price)
    assert intent.is_short is is_short
    assert intent.entry_amount == entry_amount


def test_short_without_margin_aborts_before_any_order(make_intent, cid_factory):
    intent = make_intent(entry_price=9000.0, stop_price=10000.0, margin=False)
    lifecycle = OrderLifecycle(intent, cid_factory=cid_factory)
    transition = lifecycle.start()

    assert lifecycle.state is LifecycleState.ABORTED
    assert transition.effects == [Terminate(False, "You must use margin trading if you want to go short.")]
    assert lifecycle.entry is None


def test_start_twice_raises(make_intent):
    lifecycle = OrderLifecycle(make_intent())
    lifecycle.start()
    with pytest.raises(RuntimeError):
        lifecycle.start()


def test_entry_rejected_aborts(make_intent, cid_factory):
    lifecycle = OrderLifecycle(make_intent(), cid_factory=cid_factory)
    lifecycle.start()
    transition = lifecycle.handle(OrderRejected(OrderRole.ENTRY, 1000, "insufficient margin"))

    assert lifecycle.state is LifecycleState.ABORTED
    assert transition.effects == [Terminate(False, "entry_rejected")]


def test_unknown_event_raises(make_intent):
    lifecycle = OrderLifecycle(make_intent())
    lifecycle.start()
    with pytest.raises(TypeError):
        lifecycle.handle(object())


# ---------------------------------------------------------------- breach


def test_long_breach_at_cancel_price(make_intent, cid_factory):
    lifecycle = _pending(OrderLifecycle(make_intent(cancel_price=9500.0), cid_factory=cid_factory))

    assert lifecycle.handle(_tick(bid=9501.0, ask=9502.0)).effects == []
    assert lifecycle.state is LifecycleState.ENTRY_PENDING

    transition = lifecycle.handle(_tick(bid=9500.0, ask=9501.0))
    assert transition.effects == [CancelOrder(lifecycle.entry)]
    assert lifecycle.state is LifecycleState.CANCEL_REQUESTED
    assert lifecycle.cancel_reason == "price_breach"


def test_short_breach_at_cancel_price(make_intent, cid_factory):
    intent = make_intent(entry_price=9000.0, stop_price=10000.0, cancel_price=9500.0)
    lifecycle = _pending(OrderLifecycle(intent, cid_factory=cid_factory))

    assert lifecycle.handle(_tick(bid=9498.0, ask=9499.0)).effects == []
    transition = lifecycle.handle(_tick(bid=9499.0, ask=9500.0))
    assert len(_cancels(transition)) == 1
    assert lifecycle.state is LifecycleState.CANCEL_REQUESTED


def test_breach_is_checked_on_rounded_prices(make_intent, cid_factory):
    lifecycle = _pending(OrderLifecycle(make_intent(cancel_price=9500.0), cid_factory=cid_factory))
    # 9500.04 rounds to 9500.0 at five significant digits
    transition = lifecycle.handle(_tick(bid=9500.04, ask=9501.0))
    assert len(_cancels(transition)) == 1


def test_no_breach_when_cancel_on_wrong_side(make_intent, cid_factory):
    # long entry with cancel above the entry price is never monitored
    lifecycle = _pending(OrderLifecycle(make_intent(cancel_price=10500.0), cid_factory=cid_factory))
    assert lifecycle.handle(_tick(bid=1.0, ask=99999.0)).effects == []


def test_ticks_ignored_before_entry_ack(make_intent, cid_factory):
    lifecycle = OrderLifecycle(make_intent(cancel_price=9500.0), cid_factory=cid_factory)
    lifecycle.start()
    assert lifecycle.handle(_tick(bid=9000.0, ask=9001.0)).effects == []
    assert lifecycle.state is LifecycleState.INIT


def test_breach_cancels_only_once(make_intent, cid_factory):
    lifecycle = _pending(OrderLifecycle(make_intent(cancel_price=9500.0), cid_factory=cid_factory))
    lifecycle.handle(_tick(bid=9400.0, ask=9401.0))
    assert lifecycle.handle(_tick(bid=9300.0, ask=9301.0)).effects == []


def test_cancel_ack_ends_run(make_intent, cid_factory):
    lifecycle = _pending(OrderLifecycle(make_intent(cancel_price=9500.0), cid_factory=cid_factory))
    lifecycle.handle(_tick(bid=9400.0, ask=9401.0))
    transition = lifecycle.handle(CancelAcked(lifecycle.entry.cid))

    assert lifecycle.state is LifecycleState.ENTRY_CANCELED
    assert transition.effects == [Terminate(True, "entry_canceled")]


def test_cancel_rejected_aborts(make_intent, cid_factory):
    lifecycle = _pending(OrderLifecycle(make_intent(cancel_price=9500.0), cid_factory=cid_factory))
    lifecycle.handle(_tick(bid=9400.0, ask=9401.0))
    transition = lifecycle.handle(CancelRejected(lifecycle.entry.cid, "order not found"))

    assert lifecycle.state is LifecycleState.ABORTED
    assert transition.effects == [Terminate(False, "cancel_failed")]


def test_fill_overtakes_cancel(make_intent, cid_factory):
    lifecycle = _pending(OrderLifecycle(make_intent(cancel_price=9500.0), cid_factory=cid_factory))
    lifecycle.handle(_tick(bid=9400.0, ask=9401.0))

    transition = _fill(lifecycle, avg_price=10000.0)
    assert lifecycle.state is LifecycleState.EXIT_SUBMITTING
    assert len(_submits(transition)) == 1

    # the late cancel outcome no longer matters
    assert lifecycle.handle(CancelRejected(lifecycle.entry.cid, "already filled")).effects == []
    assert lifecycle.state is LifecycleState.EXIT_SUBMITTING


def test_venue_cancel_ends_run(make_intent, cid_factory):
    lifecycle = _pending(OrderLifecycle(make_intent(), cid_factory=cid_factory))
    transition = _fill(lifecycle, status=OrderStatus.CANCELED)
    assert lifecycle.state is LifecycleState.ENTRY_CANCELED
    assert transition.effects == [Terminate(True, "entry_canceled")]


def test_closed_update_for_other_order_ignored(make_intent, cid_factory):
    lifecycle = _pending(OrderLifecycle(make_intent(), cid_factory=cid_factory))
    update = OrderUpdate(cid=999, order_id=555, status=OrderStatus.FILLED, avg_price=10000.0)
    assert lifecycle.handle(OrderClosed(update)).effects == []
    assert lifecycle.state is LifecycleState.ENTRY_PENDING


def test_fill_matched_by_order_id(make_intent, cid_factory):
    lifecycle = _pending(OrderLifecycle(make_intent(), cid_factory=cid_factory))
    update = OrderUpdate(cid=None, order_id=1, status=OrderStatus.FILLED, avg_price=10000.0)
    lifecycle.handle(OrderClosed(update))
    assert lifecycle.state is LifecycleState.EXIT_SUBMITTING


# ----------------------------------------------------------------- exits


def test_scale_out_produces_stop_then_oco(make_intent, cid_factory):
    lifecycle = _pending(OrderLifecycle(make_intent(), cid_factory=cid_factory))

    transition = _fill(lifecycle, avg_price=10000.0)
    assert transition.effects[0] == UnsubscribeTicker("BTC")
    (stop_submit,) = _submits(transition)
    stop = stop_submit.request
    assert stop_submit.role is OrderRole.STOP
    assert stop.kind is OrderKind.STOP
    assert stop.amount == -0.5
    assert stop.price == 9000.0
    assert stop.reduce_only is True
    assert lifecycle.effective_entry_price == 10000.0
    assert lifecycle.plan.target_price == 11080.0

    transition = lifecycle.handle(OrderAcked(OrderRole.STOP, stop.cid, order_id=2))
    (target_submit,) = _submits(transition)
    target = target_submit.request
    assert target_submit.role is OrderRole.TARGET
    assert target.kind is OrderKind.LIMIT
    assert target.oco is True
    assert target.reduce_only is True
    assert target.amount == -0.5
    assert target.price == 11080.0
    assert target.aux_price == 9000.0

    transition = lifecycle.handle(OrderAcked(OrderRole.TARGET, target.cid, order_id=3))
    assert transition.effects == [Terminate(True, "position_protected")]
    assert lifecycle.state is LifecycleState.DONE
    assert lifecycle.acked_exits == [OrderRole.STOP, OrderRole.TARGET]


def test_scale_out_short_uses_short_target(make_intent, cid_factory):
    intent = make_intent(entry_price=9000.0, stop_price=10000.0)
    lifecycle = _pending(OrderLifecycle(intent, cid_factory=cid_factory))
    transition = _fill(lifecycle, avg_price=9000.0)
    (stop_submit,) = _submits(transition)
    assert stop_submit.request.amount == 0.5

    transition = lifecycle.handle(OrderAcked(OrderRole.STOP, stop_submit.request.cid, order_id=2))
    (target_submit,) = _submits(transition)
    assert target_submit.request.price == 7928.1
    assert target_submit.request.amount == 0.5


def test_target_uses_average_fill_not_configured_entry(make_intent, cid_factory):
    lifecycle = _pending(OrderLifecycle(make_intent(), cid_factory=cid_factory))
    _fill(lifecycle, avg_price=10100.0)
    assert lifecycle.effective_entry_price == 10100.0
    # 2*10100 - 9000 + 4*10100*0.002/0.998
    assert lifecycle.plan.target_price == 11281.0


def test_missing_avg_price_falls_back_to_configured_entry(make_intent, cid_factory):
    lifecycle = _pending(OrderLifecycle(make_intent(), cid_factory=cid_factory))
    _fill(lifecycle, avg_price=None)
    assert lifecycle.degraded is False
    assert lifecycle.plan.target_price == 11080.0


def test_market_entry_without_avg_price_places_single_full_stop(make_intent, cid_factory, caplog):
    intent = make_intent(entry_price=0.0)
    lifecycle = _pending(OrderLifecycle(intent, cid_factory=cid_factory))
    with caplog.at_level(logging.WARNING, logger="scaleout"):
        transition = _fill(lifecycle, avg_price=None)

    (submit,) = _submits(transition)
    assert submit.role is OrderRole.STOP
    assert submit.request.amount == intent.exit_amount()
    assert abs(submit.request.amount) == 1.0
    assert lifecycle.degraded is True
    assert lifecycle.plan is None

    (warning,) = _event_payloads(caplog, "avg_price_missing")
    assert "action_required" in warning
    assert warning["intent"]["symbol"] == "BTC"

    transition = lifecycle.handle(OrderAcked(OrderRole.STOP, submit.request.cid, order_id=2))
    assert transition.effects == [Terminate(True, "position_protected")]


def test_spot_exit_amount_is_fee_adjusted(make_intent, cid_factory):
    lifecycle = _pending(OrderLifecycle(make_intent(margin=False, exit_mode=ExitMode.SINGLE_STOP), cid_factory=cid_factory))
    (submit,) = _submits(_fill(lifecycle, avg_price=10000.0))
    assert submit.request.amount == -0.998
    assert submit.request.margin is False


def test_spot_scale_out_tranches_fit_fee_adjusted_holdings(make_intent, cid_factory):
    lifecycle = _pending(OrderLifecycle(make_intent(amount=3.33335, margin=False), cid_factory=cid_factory))
    (stop_submit,) = _submits(_fill(lifecycle, avg_price=10000.0))
    # 3.33335 * 0.998 = 3.3266833, truncated rather than rounded up
    assert lifecycle.intent.exit_amount() == -3.3266
    transition = lifecycle.handle(OrderAcked(OrderRole.STOP, stop_submit.request.cid, order_id=2))
    (target_submit,) = _submits(transition)
    held = 3.33335 * 0.998
    assert abs(stop_submit.request.amount) + abs(target_submit.request.amount) <= held


@pytest.mark.parametrize("avg_price", [10000.0, None])
def test_single_stop_mode_places_one_full_stop(make_intent, cid_factory, avg_price):
    lifecycle = _pending(OrderLifecycle(make_intent(exit_mode=ExitMode.SINGLE_STOP), cid_factory=cid_factory))
    (submit,) = _submits(_fill(lifecycle, avg_price=avg_price))
    assert submit.role is OrderRole.STOP
    assert submit.request.amount == -1.0

    transition = lifecycle.handle(OrderAcked(OrderRole.STOP, submit.request.cid, order_id=2))
    assert transition.effects == [Terminate(True, "position_protected")]


def test_fixed_target_places_one_full_oco(make_intent, cid_factory):
    intent = make_intent(exit_mode=ExitMode.FIXED_TARGET, target_price=12000.0)
    lifecycle = _pending(OrderLifecycle(intent, cid_factory=cid_factory))
    (submit,) = _submits(_fill(lifecycle, avg_price=None))

    assert submit.role is OrderRole.TARGET
    assert submit.request.oco is True
    assert submit.request.amount == -1.0
    assert submit.request.price == 12000.0
    assert submit.request.aux_price == 9000.0

    transition = lifecycle.handle(OrderAcked(OrderRole.TARGET, submit.request.cid, order_id=2))
    assert transition.effects == [Terminate(True, "position_protected")]


def test_hidden_exits_flagged(make_intent, cid_factory):
    lifecycle = _pending(OrderLifecycle(make_intent(hidden_exits=True), cid_factory=cid_factory))
    (submit,) = _submits(_fill(lifecycle, avg_price=10000.0))
    assert submit.request.hidden is True
    assert lifecycle.entry.hidden is False


def test_oco_rejection_is_fatal_and_alerts(make_intent, cid_factory, caplog):
    lifecycle = _pending(OrderLifecycle(make_intent(), cid_factory=cid_factory))
    (stop_submit,) = _submits(_fill(lifecycle, avg_price=10000.0))
    (target_submit,) = _submits(lifecycle.handle(OrderAcked(OrderRole.STOP, stop_submit.request.cid, order_id=2)))

    with caplog.at_level(logging.CRITICAL, logger="scaleout"):
        transition = lifecycle.handle(OrderRejected(OrderRole.TARGET, target_submit.request.cid, "margin"))

    assert lifecycle.state is LifecycleState.FATAL_ERROR
    assert transition.effects == [Terminate(False, "exit_submit_failed")]
    (alert,) = _event_payloads(caplog, "exit_submit_failed")
    assert alert["msg"].startswith("CRITICAL ERROR - error submitting OCO order")
    (risk,) = _event_payloads(caplog, "position_at_risk")
    assert risk["unprotected_amount"] == 0.5
    assert "enter a stop at 9000.0 manually" in risk["msg"]


def test_stop_rejection_is_fatal(make_intent, cid_factory):
    lifecycle = _pending(OrderLifecycle(make_intent(), cid_factory=cid_factory))
    (stop_submit,) = _submits(_fill(lifecycle, avg_price=10000.0))
    transition = lifecycle.handle(OrderRejected(OrderRole.STOP, stop_submit.request.cid, "rejected"))
    assert lifecycle.state is LifecycleState.FATAL_ERROR
    assert transition.effects == [Terminate(False, "exit_submit_failed")]


# ------------------------------------------------------------- interrupts


def test_interrupt_while_entry_active_cancels_once(make_intent, cid_factory):
    lifecycle = _pending(OrderLifecycle(make_intent(), cid_factory=cid_factory))

    transition = lifecycle.handle(InterruptSignal("SIGINT"))
    assert transition.effects == [CancelOrder(lifecycle.entry)]
    assert lifecycle.state is LifecycleState.CANCEL_REQUESTED
    assert lifecycle.cancel_reason == "interrupt"

    assert lifecycle.handle(InterruptSignal("SIGTERM")).effects == []
    assert lifecycle.handle(_tick(bid=1.0, ask=2.0)).effects == []


def test_interrupt_after_fill_does_not_cancel(make_intent, cid_factory):
    lifecycle = _pending(OrderLifecycle(make_intent(), cid_factory=cid_factory))
    (stop_submit,) = _submits(_fill(lifecycle, avg_price=10000.0))

    transition = lifecycle.handle(InterruptSignal("SIGINT"))
    assert transition.effects == []
    assert lifecycle.state is LifecycleState.EXIT_SUBMITTING
    assert lifecycle.interrupted is True

    # exits still run to completion
    transition = lifecycle.handle(OrderAcked(OrderRole.STOP, stop_submit.request.cid, order_id=2))
    assert len(_submits(transition)) == 1


def test_interrupt_before_entry_ack_aborts(make_intent, cid_factory):
    lifecycle = OrderLifecycle(make_intent(), cid_factory=cid_factory)
    lifecycle.start()
    transition = lifecycle.handle(InterruptSignal("SIGINT"))
    assert lifecycle.state is LifecycleState.ABORTED
    assert transition.effects == [Terminate(False, "interrupted")]


def test_events_after_terminal_state_are_ignored(make_intent, cid_factory):
    lifecycle = _pending(OrderLifecycle(make_intent(), cid_factory=cid_factory))
    _fill(lifecycle, status=OrderStatus.CANCELED)
    transition = lifecycle.handle(InterruptSignal("SIGINT"))
    assert transition.effects == []
    assert transition.changed is False


# ---------------------------------------------------------------- logging


def test_ticker_status_log_is_throttled(make_intent, cid_factory, fake_clock, caplog):
    lifecycle = _pending(
        OrderLifecycle(make_intent(), cid_factory=cid_factory, clock=fake_clock, price_log_interval=300.0)
    )
    with caplog.at_level(logging.INFO, logger="scaleout"):
        lifecycle.handle(_tick(bid=9990.0, ask=9991.0))
        fake_clock.advance(100)
        lifecycle.handle(_tick(bid=9990.0, ask=9991.0))
        fake_clock.advance(201)
        lifecycle.handle(_tick(bid=9992.0, ask=9993.0))

    lines = _event_payloads(caplog, "ticker_status")
    assert len(lines) == 2
    assert lines[0]["msg"] == "BTC price: 9990.5 (ask: 9991.0, bid: 9990.0) buy: 10000.0 cancel: 9000.0"


def test_transitions_are_recorded(make_intent, cid_factory):
    lifecycle = _pending(OrderLifecycle(make_intent(), cid_factory=cid_factory))
    _fill(lifecycle, avg_price=10000.0)
    path = [(c.from_state, c.to_state) for c in lifecycle.transitions]
    assert path == [
        (LifecycleState.INIT, LifecycleState.ENTRY_PENDING),
        (LifecycleState.ENTRY_PENDING, LifecycleState.ENTRY_FILLED),
        (LifecycleState.ENTRY_FILLED, LifecycleState.EXIT_SUBMITTING),
    ]
