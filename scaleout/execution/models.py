"""
Order lifecycle data model: intent, venue-bound requests and venue status.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_DOWN, Decimal
from enum import Enum, auto
from typing import Any, Dict, Optional

from scaleout.core.rounding import round_sig

DEFAULT_TAKER_FEE = 0.002  # 0.2% taker fee


class OrderKind(Enum):
    MARKET = auto()
    LIMIT = auto()
    STOP = auto()
    STOP_LIMIT = auto()


class ExitMode(Enum):
    """How the position is protected once the entry fills."""
    SCALE_OUT = auto()     # half stop + half OCO at the 1:1 target
    FIXED_TARGET = auto()  # one OCO for the full amount at a fixed target
    SINGLE_STOP = auto()   # one stop for the full amount


class OrderStatus(Enum):
    PENDING = auto()
    ACTIVE = auto()
    PARTIALLY_FILLED = auto()
    FILLED = auto()
    CANCELED = auto()

    @property
    def is_terminal(self) -> bool:
        return self in (OrderStatus.FILLED, OrderStatus.CANCELED)


@dataclass(frozen=True)
class OrderIntent:
    """
    Validated trade request. Build with OrderIntent.create() so every price
    and amount is rounded to the venue precision exactly once.
    """
    symbol: str
    amount: float
    entry_price: float
    stop_price: float
    trigger_price: float = 0.0
    limit_entry: bool = False
    margin: bool = True
    hidden_exits: bool = False
    cancel_price: float = 0.0
    exit_mode: ExitMode = ExitMode.SCALE_OUT
    target_price: float = 0.0
    slippage_pct: float = 0.0
    taker_fee: float = DEFAULT_TAKER_FEE

    @classmethod
    def create(
        cls,
        symbol: str,
        amount: float,
        stop_price: float,
        entry_price: float = 0.0,
        trigger_price: float = 0.0,
        limit_entry: bool = False,
        margin: bool = True,
        hidden_exits: bool = False,
        cancel_price: float = 0.0,
        exit_mode: ExitMode = ExitMode.SCALE_OUT,
        target_price: float = 0.0,
        slippage_pct: float = 0.0,
        taker_fee: float = DEFAULT_TAKER_FEE,
    ) -> "OrderIntent":
        stop = round_sig(stop_price)
        return cls(
            symbol=symbol.strip(),
            amount=round_sig(abs(amount)),
            entry_price=round_sig(entry_price),
            stop_price=stop,
            trigger_price=round_sig(trigger_price),
            limit_entry=limit_entry,
            margin=margin,
            hidden_exits=hidden_exits,
            cancel_price=round_sig(cancel_price) if cancel_price else stop,
            exit_mode=exit_mode,
            target_price=round_sig(target_price),
            slippage_pct=slippage_pct,
            taker_fee=taker_fee,
        )

    @property
    def is_short(self) -> bool:
        return self.entry_price < self.stop_price

    @property
    def side(self) -> str:
        return "sell" if self.is_short else "buy"

    @property
    def slippage(self) -> float:
        """Slippage estimate as a fraction."""
        return self.slippage_pct / 100

    @property
    def entry_kind(self) -> OrderKind:
        if self.entry_price == 0:
            return OrderKind.MARKET
        if self.limit_entry:
            return OrderKind.LIMIT
        if self.trigger_price == 0:
            return OrderKind.STOP
        return OrderKind.STOP_LIMIT

    @property
    def reference_price(self) -> float:
        """Price the entry is waiting on, for status lines."""
        return self.trigger_price or self.entry_price

    @property
    def entry_amount(self) -> float:
        return -self.amount if self.is_short else self.amount

    def exit_amount(self) -> float:
        """
        Signed size of the protective exit, opposite to the entry.

        Spot fills pay the taker fee in the traded asset, so the position is
        smaller than the requested amount. Truncated, never rounded up, so the
        exit cannot be larger than the position held.
        """
        amount = self.amount
        if not self.margin:
            # decimal product: 1.0 at a 0.002 fee stays exactly 0.998
            amount = float(Decimal(repr(amount)) * (1 - Decimal(repr(self.taker_fee))))
        return round_sig(amount if self.is_short else -amount, rounding=ROUND_DOWN)

    def precondition_error(self) -> Optional[str]:
        if self.is_short and not self.margin:
            return "You must use margin trading if you want to go short."
        return None

    def dump(self) -> Dict[str, Any]:
        payload = self.__dict__.copy()
        payload["exit_mode"] = self.exit_mode.name
        payload["is_short"] = self.is_short
        return payload


@dataclass
class OrderRequest:
    """
    Venue-bound order. Signed amount: positive buys, negative sells.

    `price` is the limit/trigger price; `aux_price` is the stop-limit limit
    price, or the linked stop price of an OCO.
    """
    cid: int
    symbol: str
    amount: float
    price: float
    kind: OrderKind
    aux_price: Optional[float] = None
    reduce_only: bool = False
    hidden: bool = False
    oco: bool = False
    margin: bool = True
    order_id: Optional[int] = None

    @property
    def is_buy(self) -> bool:
        return self.amount > 0

    @property
    def side(self) -> str:
        return "buy" if self.is_buy else "sell"

    def describe(self) -> Dict[str, Any]:
        return {
            "cid": self.cid,
            "oid": self.order_id,
            "symbol": self.symbol,
            "amount": self.amount,
            "price": self.price,
            "aux_price": self.aux_price,
            "kind": self.kind.name,
            "reduce_only": self.reduce_only,
            "hidden": self.hidden,
            "oco": self.oco,
        }


@dataclass(frozen=True)
class OrderUpdate:
    """Venue-reported status change for one order."""
    cid: Optional[int]
    order_id: Optional[int]
    status: OrderStatus
    avg_price: Optional[float] = None
    raw_status: str = ""


@dataclass(frozen=True)
class TickerSnapshot:
    last: float
    bid: float
    ask: float

    def rounded(self) -> "TickerSnapshot":
        return TickerSnapshot(
            last=round_sig(self.last),
            bid=round_sig(self.bid),
            ask=round_sig(self.ask),
        )
