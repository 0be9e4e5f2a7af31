"""
Pytest configuration and fixtures.
Adds the repo root to Python path so tests can import scaleout.
"""

import asyncio
import sys
from pathlib import Path
from typing import Dict, List, Optional

import pytest

repo_root = Path(__file__).parent.parent
if str(repo_root) not in sys.path:
    sys.path.insert(0, str(repo_root))

from scaleout.core.utils import ClientIdFactory  # noqa: E402
from scaleout.execution.models import (  # noqa: E402
    ExitMode,
    OrderIntent,
    OrderRequest,
    OrderUpdate,
    TickerSnapshot,
)
from scaleout.execution.session import ExchangeSession, OrderAck, OrderRejectedError  # noqa: E402


class FakeSession(ExchangeSession):
    """
    In-memory exchange session.

    Submissions are acknowledged with sequential order ids unless a rejection
    is configured for the request's role ("entry", "stop" or "oco").
    """

    def __init__(self):
        self.open_calls = 0
        self.close_calls = 0
        self.open_error: Optional[Exception] = None
        self.submitted: List[OrderRequest] = []
        self.canceled: List[OrderRequest] = []
        self.subscribed: List[str] = []
        self.unsubscribed: List[str] = []
        self.rejections: Dict[str, str] = {}
        self.cancel_error: Optional[str] = None
        self.cancel_gate: Optional[asyncio.Event] = None
        self._ticker_cb = None
        self._order_cb = None
        self._next_oid = 100

    @staticmethod
    def role_of(request: OrderRequest) -> str:
        if request.oco:
            return "oco"
        if request.reduce_only:
            return "stop"
        return "entry"

    async def open(self):
        self.open_calls += 1
        if self.open_error is not None:
            raise self.open_error

    async def close(self):
        self.close_calls += 1

    async def subscribe_ticker(self, symbol, callback):
        self.subscribed.append(symbol)
        self._ticker_cb = callback

    async def unsubscribe_ticker(self, symbol):
        self.unsubscribed.append(symbol)
        self._ticker_cb = None

    def on_order_update(self, callback):
        self._order_cb = callback

    async def submit(self, request):
        self.submitted.append(request)
        await asyncio.sleep(0)
        error = self.rejections.get(self.role_of(request))
        if error:
            raise OrderRejectedError(error)
        oid = self._next_oid
        self._next_oid += 1
        return OrderAck(cid=request.cid, order_id=oid)

    async def cancel(self, request):
        self.canceled.append(request)
        if self.cancel_gate is not None:
            await self.cancel_gate.wait()
        if self.cancel_error:
            raise OrderRejectedError(self.cancel_error)

    # ---------------------------------------------------------- test hooks

    def push_ticker(self, last, bid, ask):
        if self._ticker_cb is not None:
            self._ticker_cb(TickerSnapshot(last=last, bid=bid, ask=ask))

    def push_update(self, request, status, avg_price=None, raw_status=""):
        self._order_cb(
            OrderUpdate(
                cid=request.cid,
                order_id=request.order_id,
                status=status,
                avg_price=avg_price,
                raw_status=raw_status or status.name.lower(),
            )
        )

    def by_role(self, role: str) -> List[OrderRequest]:
        return [r for r in self.submitted if self.role_of(r) == role]


class FakeClock:
    def __init__(self, start=0.0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


@pytest.fixture
def fake_session():
    return FakeSession()


@pytest.fixture
def cid_factory():
    # Frozen clock: ids become 1000, 1001, 1002, ...
    return ClientIdFactory(clock=lambda: 1000)


@pytest.fixture
def make_intent():
    def _make(**overrides):
        params = dict(
            symbol="BTC",
            amount=1.0,
            entry_price=10000.0,
            stop_price=9000.0,
            exit_mode=ExitMode.SCALE_OUT,
        )
        params.update(overrides)
        return OrderIntent.create(**params)

    return _make


@pytest.fixture
def wait_until():
    async def _wait(predicate, timeout=1.0):
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not predicate():
            if loop.time() > deadline:
                raise AssertionError("condition not reached before timeout")
            await asyncio.sleep(0.001)

    return _wait


@pytest.fixture
def fake_clock():
    return FakeClock()
