"""
Shared fixtures and in-memory collaborators for the rebalancer tests.
"""

from collections import deque

import pytest

from rangebot.config import Settings
from rangebot.errors import QueryFailed, SubmissionExhausted
from rangebot.models import Balances, Confirmation, OpenedPosition, PoolState, Position
from rangebot.positions import PositionTracker

TEST_PRIVATE_KEY = "0x" + "11" * 32
OWNER = "0x" + "ab" * 20
POOL_ID = "0x" + "ab" * 32


def make_settings(**overrides) -> Settings:
    values = {
        "private_key": TEST_PRIVATE_KEY,
        "pool_id": POOL_ID,
        "retry_base_delay": 0.0,
        "data_dir": "unused",
    }
    values.update(overrides)
    return Settings(**values)


@pytest.fixture
def settings(tmp_path):
    return make_settings(data_dir=tmp_path)


def make_position(position_id: str, lower: float, upper: float, **kwargs) -> Position:
    return Position(
        id=position_id,
        owner=OWNER,
        lower_price=lower,
        upper_price=upper,
        base_amount=kwargs.pop("base_amount", 1.0),
        quote_amount=kwargs.pop("quote_amount", 100.0),
        **kwargs,
    )


class FakeOracle:
    def __init__(self, price: float = 100.0, tick_spacing: int = 10, error=None):
        self.price = price
        self.tick_spacing = tick_spacing
        self.error = error
        self.calls = 0

    def get_pool_state(self) -> PoolState:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return PoolState(
            current_price=self.price,
            tick_spacing=self.tick_spacing,
            liquidity=10**18,
            sqrt_price_x96=2**96,
        )


class FakeTracker:
    def __init__(self, positions=(), error=None):
        self.positions = list(positions)
        self.error = error
        self.opened = []
        self.closed = []

    def list_positions(self, owner, pool_state=None):
        if self.error is not None:
            raise self.error
        return list(self.positions)

    is_in_range = staticmethod(PositionTracker.is_in_range)

    def record_opened(self, token_id, tick_lower, tick_upper, entry_price):
        self.opened.append((token_id, tick_lower, tick_upper, entry_price))

    def record_closed(self, token_id):
        self.closed.append(str(token_id))


class FakeWallet:
    """Returns queued balances in order, then repeats the last one."""

    address = OWNER

    def __init__(self, *balances, error=None):
        self.queue = deque(Balances(base, quote) for base, quote in balances)
        self.last = self.queue[-1] if self.queue else Balances(0.0, 0.0)
        self.error = error
        self.calls = 0

    def get_balances(self) -> Balances:
        self.calls += 1
        if self.error is not None:
            raise self.error
        if self.queue:
            self.last = self.queue.popleft()
        return self.last


class FakeLPManager:
    def __init__(self, failing_closes=(), open_error=None, opened_id="77"):
        self.failing_closes = set(failing_closes)
        self.open_error = open_error
        self.opened_id = opened_id
        self.close_calls = []
        self.open_calls = []

    def close_position(self, position):
        self.close_calls.append(position.id)
        if position.id in self.failing_closes:
            raise SubmissionExhausted(RuntimeError("rpc down"), attempts=3)
        return Confirmation(signature=f"0xclose{position.id}", attempts=1)

    def open_position(self, tick_range, base_amount, quote_amount, pool_state):
        self.open_calls.append((tick_range, base_amount, quote_amount))
        if self.open_error is not None:
            raise self.open_error
        return OpenedPosition(id=self.opened_id, signature="0xopen", tick_range=tick_range)


class RecordingSink:
    def __init__(self):
        self.events = []

    def emit(self, event):
        self.events.append(event)

    def kinds(self):
        return [e.kind for e in self.events]


class ExplodingSink:
    def emit(self, event):
        raise RuntimeError("webhook unreachable")


@pytest.fixture
def query_failed():
    return QueryFailed("rpc timeout")
