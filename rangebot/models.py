"""
Value types shared by the rebalancer components.

Snapshots are frozen: a cycle replaces them wholesale and never patches them.
"""

from dataclasses import asdict, dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import ClassVar


@dataclass(frozen=True)
class PoolState:
    current_price: float
    tick_spacing: int
    liquidity: int
    sqrt_price_x96: int = 0
    tick: int = 0


@dataclass(frozen=True)
class PriceRange:
    lower_bound: float
    upper_bound: float

    def contains(self, price: float) -> bool:
        return self.lower_bound <= price <= self.upper_bound


@dataclass(frozen=True)
class TickRange:
    lower_tick: int
    upper_tick: int


@dataclass(frozen=True)
class Position:
    id: str
    owner: str
    lower_price: float
    upper_price: float
    base_amount: float = 0.0
    quote_amount: float = 0.0
    lower_tick: int = 0
    upper_tick: int = 0
    liquidity: int = 0
    in_range: bool = False

    @property
    def price_range(self) -> PriceRange:
        return PriceRange(self.lower_price, self.upper_price)

    def with_in_range(self, in_range: bool) -> "Position":
        return replace(self, in_range=in_range)


@dataclass(frozen=True)
class AllocationResult:
    base_amount: float
    quote_amount: float

    def value_at(self, price: float) -> float:
        return self.base_amount * price + self.quote_amount


@dataclass(frozen=True)
class Balances:
    base: float
    quote: float


@dataclass(frozen=True)
class Confirmation:
    """Outcome of a successful submission. `signature` is the tx hash."""

    signature: str
    attempts: int
    receipt: dict | None = None


@dataclass(frozen=True)
class OpenedPosition:
    id: str
    signature: str
    tick_range: TickRange


class CycleState(str, Enum):
    IDLE = "Idle"
    PRICING_AND_SURVEY = "PricingAndSurvey"
    CLOSING_OUT_OF_RANGE = "ClosingOutOfRange"
    REALLOCATING = "Reallocating"
    OPENING_POSITION = "OpeningPosition"


@dataclass
class CycleReport:
    """What a single rebalance cycle observed and did."""

    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    last_state: CycleState = CycleState.IDLE
    pool_state: PoolState | None = None
    price_range: PriceRange | None = None
    positions_seen: int = 0
    closed: list[str] = field(default_factory=list)
    close_failures: list[str] = field(default_factory=list)
    opened: OpenedPosition | None = None
    skip_reason: str | None = None
    error: str | None = None


# ----------------------------------------------------------------------
# Lifecycle events
# ----------------------------------------------------------------------


@dataclass(frozen=True)
class Event:
    kind: ClassVar[str] = "event"

    def to_dict(self) -> dict:
        record = asdict(self)
        record["kind"] = self.kind
        return record


@dataclass(frozen=True)
class PriceUpdate(Event):
    kind: ClassVar[str] = "priceUpdate"

    current: float
    lower_bound: float
    upper_bound: float


@dataclass(frozen=True)
class PositionOpened(Event):
    kind: ClassVar[str] = "positionOpened"

    id: str
    range: PriceRange
    base_amount: float
    quote_amount: float
    signature: str = ""


@dataclass(frozen=True)
class PositionClosed(Event):
    kind: ClassVar[str] = "positionClosed"

    id: str
    range: PriceRange
    base_amount: float
    quote_amount: float
    signature: str = ""


@dataclass(frozen=True)
class BalancesChanged(Event):
    kind: ClassVar[str] = "balancesChanged"

    base: float
    quote: float


@dataclass(frozen=True)
class OperationFailed(Event):
    kind: ClassVar[str] = "operationFailed"

    context: str
    error: str


@dataclass(frozen=True)
class BotStarted(Event):
    kind: ClassVar[str] = "botStarted"

    network: str
    pool_id: str
    width_percent: float
    wallet: str


@dataclass(frozen=True)
class BotStopped(Event):
    kind: ClassVar[str] = "botStopped"

    reason: str
