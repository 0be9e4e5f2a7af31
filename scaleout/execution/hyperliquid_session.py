"""
Hyperliquid exchange session: WS order/fill/book feeds + signed order actions.

The SDK delivers websocket messages on its own thread; every callback is
marshalled onto the event loop before any session state is touched.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import replace
from decimal import ROUND_DOWN, ROUND_HALF_UP
from typing import Any, Callable, Dict, List, Optional, Tuple

from hyperliquid.exchange import Exchange
from hyperliquid.info import Info
from hyperliquid.utils.types import Cloid

from scaleout.config import Settings
from scaleout.core.rounding import round_decimals
from scaleout.execution.models import OrderKind, OrderRequest, OrderStatus, OrderUpdate, TickerSnapshot
from scaleout.execution.session import (
    ExchangeSession,
    OrderAck,
    OrderRejectedError,
    OrderUpdateCallback,
    SessionError,
    TickerCallback,
)
from scaleout.infra.async_execution import AsyncExchange
from scaleout.infra.async_info import AsyncInfo

log = logging.getLogger("scaleout")

# OCO stop leg gets its own cloid in the upper half of the 128-bit space
OCO_STOP_CLOID_OFFSET = 1 << 64

_STATUS_MAP = {
    "open": OrderStatus.ACTIVE,
    "triggered": OrderStatus.ACTIVE,
    "filled": OrderStatus.FILLED,
    "canceled": OrderStatus.CANCELED,
    "rejected": OrderStatus.CANCELED,
}


def map_order_status(raw: str) -> OrderStatus:
    """Venue status string -> lifecycle status. Every '*Canceled' variant is CANCELED."""
    status = _STATUS_MAP.get(raw)
    if status is not None:
        return status
    if raw.endswith("Canceled") or raw.endswith("Rejected"):
        return OrderStatus.CANCELED
    return OrderStatus.PENDING


def parse_cloid(raw: Optional[str]) -> Optional[int]:
    if not raw:
        return None
    try:
        return int(raw, 16)
    except (TypeError, ValueError):
        return None


def parse_book(data: Dict[str, Any]) -> Optional[Tuple[float, float]]:
    """Best bid/ask from an l2Book message: levels = [[bids...], [asks...]]."""
    levels = data.get("levels") or []
    if len(levels) < 2 or not levels[0] or not levels[1]:
        return None
    return float(levels[0][0]["px"]), float(levels[1][0]["px"])


class HyperliquidSession(ExchangeSession):
    def __init__(
        self,
        cfg: Settings,
        info_factory: Optional[Callable[[], Any]] = None,
        exchange_factory: Optional[Callable[[Any, str], Any]] = None,
        async_info: Optional[AsyncInfo] = None,
    ) -> None:
        self.cfg = cfg
        self._info_factory = info_factory or (lambda: Info(cfg.base_url, skip_ws=False))
        self._exchange_factory = exchange_factory or (
            lambda wallet, account: Exchange(wallet, cfg.base_url, account_address=account)
        )
        self.info: Any = None
        self.exchange: Optional[AsyncExchange] = None
        self.async_info = async_info
        self.account: Optional[str] = None
        self.loop: Optional[asyncio.AbstractEventLoop] = None
        self._opened_ms = 0
        self._order_listener: Optional[OrderUpdateCallback] = None
        self._ticker_listener: Optional[TickerCallback] = None
        self._account_subs: Dict[str, Tuple[dict, int]] = {}
        self._ticker_subs: Dict[str, Tuple[dict, int]] = {}
        self._last_trade_px: Optional[float] = None
        # oid -> [notional, size]
        self._fills: Dict[int, List[float]] = {}
        self._closed_oids: set = set()
        self._pending: set = set()
        self._cid_by_oid: Dict[int, int] = {}
        self._hidden_warned = False
        self._spot_oco_warned = False
        self._closed = False

    # ------------------------------------------------------- lifecycle

    async def open(self) -> None:
        self.loop = asyncio.get_running_loop()
        self._opened_ms = int(time.time() * 1000)
        wallet = self.cfg.resolve_signer()
        self.account = self.cfg.resolve_account()
        # SDK constructors fetch venue metadata over blocking HTTP
        self.info = await asyncio.to_thread(self._info_factory)
        base_exchange = await asyncio.to_thread(self._exchange_factory, wallet, self.account)
        self.exchange = AsyncExchange(base_exchange, timeout=self.cfg.http_timeout)
        if self.async_info is None:
            self.async_info = AsyncInfo(self.cfg.base_url, timeout=self.cfg.http_timeout)
        self._subscribe_account("orders", {"type": "orderUpdates", "user": self.account}, self._ws_order_updates)
        self._subscribe_account("fills", {"type": "userFills", "user": self.account}, self._ws_user_fills)
        log.info(json.dumps({"event": "hl_session_open", "account": self.account, "base_url": self.cfg.base_url}))

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        for subs in (self._ticker_subs, self._account_subs):
            for sub, sub_id in list(subs.values()):
                try:
                    self.info.unsubscribe(sub, sub_id)
                except Exception as exc:
                    log.debug(json.dumps({"event": "hl_unsubscribe_failed", "sub": sub, "err": str(exc)}))
            subs.clear()
        if self.info is not None:
            try:
                self.info.disconnect_websocket()
            except Exception as exc:
                log.warning(json.dumps({"event": "hl_ws_disconnect_failed", "err": str(exc)}))
        if self.exchange is not None:
            await self.exchange.close(wait=False)
        if self.async_info is not None:
            await self.async_info.close()
        log.info(json.dumps({"event": "hl_session_closed"}))

    def _subscribe_account(self, key: str, sub: dict, handler: Callable[[Any], None]) -> None:
        sub_id = self.info.subscribe(sub, self._threadsafe(handler))
        self._account_subs[key] = (sub, sub_id)

    def _threadsafe(self, handler: Callable[[Any], None]) -> Callable[[Any], None]:
        loop = self.loop

        def _callback(msg: Any) -> None:
            if not loop.is_closed():
                loop.call_soon_threadsafe(self._dispatch, handler, msg)

        return _callback

    def _dispatch(self, handler: Callable[[Any], None], msg: Any) -> None:
        if self._closed:
            return
        try:
            handler(msg)
        except Exception as exc:
            # A malformed message must not take down the event loop
            log.error(json.dumps({"event": "hl_ws_message_error", "err": str(exc), "msg": str(msg)[:500]}))

    def _require_open(self) -> None:
        if self.exchange is None or self.info is None:
            raise SessionError("session is not open")

    # -------------------------------------------------------- ticker

    async def subscribe_ticker(self, symbol: str, callback: TickerCallback) -> None:
        self._require_open()
        self._ticker_listener = callback
        book = {"type": "l2Book", "coin": symbol}
        trades = {"type": "trades", "coin": symbol}
        self._ticker_subs["book"] = (book, self.info.subscribe(book, self._threadsafe(self._ws_book)))
        self._ticker_subs["trades"] = (trades, self.info.subscribe(trades, self._threadsafe(self._ws_trades)))

    async def unsubscribe_ticker(self, symbol: str) -> None:
        self._ticker_listener = None
        for key in ("book", "trades"):
            entry = self._ticker_subs.pop(key, None)
            if entry is not None:
                sub, sub_id = entry
                self.info.unsubscribe(sub, sub_id)

    def _ws_book(self, msg: Any) -> None:
        if self._ticker_listener is None:
            return
        best = parse_book(msg.get("data") or {})
        if best is None:
            return
        bid, ask = best
        last = self._last_trade_px if self._last_trade_px is not None else (bid + ask) / 2
        self._ticker_listener(TickerSnapshot(last=last, bid=bid, ask=ask))

    def _ws_trades(self, msg: Any) -> None:
        trades = msg.get("data") or []
        if trades:
            self._last_trade_px = float(trades[-1]["px"])

    # -------------------------------------------------- order status

    def on_order_update(self, callback: OrderUpdateCallback) -> None:
        self._order_listener = callback

    def _ws_order_updates(self, msg: Any) -> None:
        data = msg.get("data") or []
        updates = data if isinstance(data, list) else [data]
        for update in updates:
            order = update.get("order") or {}
            oid = order.get("oid")
            raw = update.get("status", "")
            status = map_order_status(raw)
            cid = parse_cloid(order.get("cloid"))
            if cid is None and oid is not None:
                cid = self._cid_by_oid.get(int(oid))
            if status.is_terminal:
                self._close_order(cid, oid, status, raw)
            elif self._order_listener is not None:
                self._order_listener(OrderUpdate(cid=cid, order_id=oid, status=status, raw_status=raw))

    def _ws_user_fills(self, msg: Any) -> None:
        data = msg.get("data") or {}
        if data.get("isSnapshot"):
            return
        for fill in data.get("fills") or []:
            oid = fill.get("oid")
            if oid is None:
                continue
            px, sz = float(fill["px"]), float(fill["sz"])
            acc = self._fills.setdefault(int(oid), [0.0, 0.0])
            acc[0] += px * sz
            acc[1] += sz

    def _close_order(
        self,
        cid: Optional[int],
        oid: Optional[int],
        status: OrderStatus,
        raw: str,
        avg_price: Optional[float] = None,
    ) -> None:
        """Emit one terminal update per order."""
        key = oid if oid is not None else ("cid", cid)
        if key in self._closed_oids:
            return
        self._closed_oids.add(key)
        if status is OrderStatus.FILLED and avg_price is None and oid is not None:
            task = self.loop.create_task(self._emit_fill(cid, int(oid), raw))
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)
            return
        self._emit(OrderUpdate(cid=cid, order_id=oid, status=status, avg_price=avg_price, raw_status=raw))

    async def _emit_fill(self, cid: Optional[int], oid: int, raw: str) -> None:
        avg = self._avg_fill_price(oid)
        if avg is None:
            avg = await self._backfill_avg_price(oid)
        self._emit(OrderUpdate(cid=cid, order_id=oid, status=OrderStatus.FILLED, avg_price=avg, raw_status=raw))

    def _emit(self, update: OrderUpdate) -> None:
        if self._order_listener is not None and not self._closed:
            self._order_listener(update)

    def _avg_fill_price(self, oid: int) -> Optional[float]:
        acc = self._fills.get(oid)
        if not acc or acc[1] <= 0:
            return None
        return acc[0] / acc[1]

    async def _backfill_avg_price(self, oid: int) -> Optional[float]:
        try:
            fills = await self.async_info.user_fills_by_time(self.account, self._opened_ms - 60_000)
        except Exception as exc:
            log.warning(json.dumps({"event": "hl_fill_backfill_failed", "oid": oid, "err": str(exc)}))
            return None
        notional = size = 0.0
        for fill in fills:
            if fill.get("oid") == oid:
                notional += float(fill["px"]) * float(fill["sz"])
                size += float(fill["sz"])
        return notional / size if size > 0 else None

    # ----------------------------------------------------- submission

    def _sz_decimals(self, symbol: str) -> Optional[int]:
        try:
            return self.info.asset_to_sz_decimals[self.info.name_to_asset(symbol)]
        except (AttributeError, KeyError):
            return None

    def _size(self, request: OrderRequest) -> float:
        """Venue size; exits are truncated so they never exceed the position."""
        sz_decimals = self._sz_decimals(request.symbol)
        if sz_decimals is None:
            return abs(request.amount)
        rounding = ROUND_DOWN if request.reduce_only else ROUND_HALF_UP
        return round_decimals(abs(request.amount), sz_decimals, rounding=rounding)

    def _price(self, request: OrderRequest, px: Optional[float]) -> Optional[float]:
        """At most (6 - szDecimals) decimals for perps, (8 - szDecimals) for spot."""
        sz_decimals = self._sz_decimals(request.symbol)
        if px is None or sz_decimals is None:
            return px
        max_decimals = (6 if request.margin else 8) - sz_decimals
        return round_decimals(px, max(0, max_decimals))

    def _quantized(self, request: OrderRequest) -> OrderRequest:
        return replace(
            request,
            price=self._price(request, request.price),
            aux_price=self._price(request, request.aux_price),
        )

    def _reduce_only(self, request: OrderRequest) -> bool:
        # Spot has no reduce-only semantics
        return request.reduce_only and request.margin

    def _check_hidden(self, request: OrderRequest) -> None:
        if request.hidden and not self._hidden_warned:
            self._hidden_warned = True
            log.warning(json.dumps({
                "event": "hl_hidden_unsupported",
                "msg": "Hyperliquid has no hidden orders; exit orders will be visible in the book.",
            }))

    def _check_spot_oco(self, request: OrderRequest) -> None:
        if request.oco and not request.margin and not self._spot_oco_warned:
            self._spot_oco_warned = True
            log.warning(json.dumps({
                "event": "hl_spot_oco_unlinked",
                "msg": (
                    "Spot OCO legs are independent orders without reduce-only; "
                    "if one leg fills, cancel the other manually."
                ),
                "cid": request.cid,
            }))

    def build_order_type(self, request: OrderRequest) -> Tuple[float, dict]:
        """(limit_px, order_type) for a non-market, non-OCO request."""
        if request.kind is OrderKind.LIMIT:
            return request.price, {"limit": {"tif": "Gtc"}}
        if request.kind is OrderKind.STOP:
            return request.price, {"trigger": {"triggerPx": request.price, "isMarket": True, "tpsl": "sl"}}
        if request.kind is OrderKind.STOP_LIMIT:
            return request.aux_price, {"trigger": {"triggerPx": request.price, "isMarket": False, "tpsl": "sl"}}
        raise ValueError(f"no resting order type for {request.kind.name}")

    def build_oco_legs(self, request: OrderRequest, sz: float) -> List[dict]:
        """Reduce-only limit at the target plus stop trigger, sized to the same tranche."""
        reduce_only = self._reduce_only(request)
        return [
            {
                "coin": request.symbol,
                "is_buy": request.is_buy,
                "sz": sz,
                "limit_px": request.price,
                "order_type": {"limit": {"tif": "Gtc"}},
                "reduce_only": reduce_only,
                "cloid": Cloid.from_int(request.cid),
            },
            {
                "coin": request.symbol,
                "is_buy": request.is_buy,
                "sz": sz,
                "limit_px": request.aux_price,
                "order_type": {"trigger": {"triggerPx": request.aux_price, "isMarket": True, "tpsl": "sl"}},
                "reduce_only": reduce_only,
                "cloid": Cloid.from_int(request.cid + OCO_STOP_CLOID_OFFSET),
            },
        ]

    async def submit(self, request: OrderRequest) -> OrderAck:
        self._require_open()
        self._check_hidden(request)
        self._check_spot_oco(request)
        sz = self._size(request)
        if sz <= 0:
            raise OrderRejectedError(f"order size {request.amount} rounds to zero for {request.symbol}")
        wire = self._quantized(request)
        cloid = Cloid.from_int(request.cid)
        log.info(json.dumps({"event": "hl_submit", "sz": sz, **wire.describe()}))
        if wire.oco:
            resp = await self.exchange.bulk_orders(self.build_oco_legs(wire, sz))
        elif wire.kind is OrderKind.MARKET:
            resp = await self.exchange.market_open(
                wire.symbol, wire.is_buy, sz, None, self.cfg.market_slippage, cloid
            )
        else:
            limit_px, order_type = self.build_order_type(wire)
            resp = await self.exchange.order(
                wire.symbol, wire.is_buy, sz, limit_px, order_type,
                reduce_only=self._reduce_only(wire), cloid=cloid,
            )
        ack = self.parse_order_response(request, resp)
        if ack.order_id is not None:
            self._cid_by_oid[ack.order_id] = request.cid
        if ack.status is OrderStatus.FILLED:
            # Report the fill after the caller has seen the ack
            self.loop.call_soon(
                self._close_order, request.cid, ack.order_id, OrderStatus.FILLED, "filled", ack.avg_price
            )
        return ack

    @staticmethod
    def parse_order_response(request: OrderRequest, resp: Any) -> OrderAck:
        if not isinstance(resp, dict) or resp.get("status") != "ok":
            raise OrderRejectedError(f"order rejected: {resp}", raw=resp)
        try:
            statuses = resp["response"]["data"]["statuses"]
        except (KeyError, TypeError):
            raise OrderRejectedError(f"malformed order response: {resp}", raw=resp)
        for st in statuses:
            if isinstance(st, dict) and "error" in st:
                raise OrderRejectedError(st["error"], raw=resp)
        first = statuses[0] if statuses else None
        if isinstance(first, dict) and "filled" in first:
            filled = first["filled"]
            return OrderAck(
                cid=request.cid,
                order_id=filled.get("oid"),
                status=OrderStatus.FILLED,
                avg_price=float(filled["avgPx"]) if filled.get("avgPx") is not None else None,
            )
        if isinstance(first, dict) and "resting" in first:
            return OrderAck(cid=request.cid, order_id=first["resting"].get("oid"))
        # Trigger orders may answer with a bare status string
        return OrderAck(cid=request.cid, order_id=None)

    async def cancel(self, request: OrderRequest) -> None:
        self._require_open()
        resp = await self.exchange.cancel_by_cloid(request.symbol, Cloid.from_int(request.cid))
        if not isinstance(resp, dict) or resp.get("status") != "ok":
            raise OrderRejectedError(f"cancel rejected: {resp}", raw=resp)
        statuses = resp.get("response", {}).get("data", {}).get("statuses", [])
        for st in statuses:
            if isinstance(st, dict) and "error" in st:
                raise OrderRejectedError(st["error"], raw=resp)
        log.info(json.dumps({"event": "hl_cancel_ok", "cid": request.cid, "oid": request.order_id}))
