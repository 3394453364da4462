from dataclasses import dataclass, field
from typing import Literal

Side = Literal["buy", "sell"]
ImbalanceSide = Literal["buy", "sell"]


@dataclass(frozen=True)
class Tick:
    time: int  # ms epoch
    price: float
    volume: float
    side: Side
    bid: float | None = None
    ask: float | None = None


@dataclass
class FootprintLevel:
    price: float
    buy_volume: float = 0.0
    sell_volume: float = 0.0
    trades: int = 0
    buy_trades: int = 0
    sell_trades: int = 0
    imbalance: ImbalanceSide | None = None
    imbalance_strength: float | None = None

    @property
    def delta(self) -> float:
        return self.buy_volume - self.sell_volume

    @property
    def total_volume(self) -> float:
        return self.buy_volume + self.sell_volume


@dataclass
class FootprintData:
    time: int
    tick_size: float
    levels: dict[float, FootprintLevel] = field(default_factory=dict)
    poc: float | None = None
    vah: float | None = None
    val: float | None = None

    @property
    def buy_volume(self) -> float:
        return sum(lvl.buy_volume for lvl in self.levels.values())

    @property
    def sell_volume(self) -> float:
        return sum(lvl.sell_volume for lvl in self.levels.values())

    @property
    def delta(self) -> float:
        return sum(lvl.delta for lvl in self.levels.values())

    @property
    def total_volume(self) -> float:
        return sum(lvl.total_volume for lvl in self.levels.values())


@dataclass(frozen=True)
class PowerTrade:
    time: int  # ms epoch of the tick that completed the burst
    price: float  # volume weighted
    volume: float
    side: Side
    tick_count: int


@dataclass(frozen=True)
class TickStats:
    tick_count: int = 0
    buy_volume: float = 0.0
    sell_volume: float = 0.0
    delta: float = 0.0
    avg_price: float = 0.0
    min_price: float = 0.0
    max_price: float = 0.0
