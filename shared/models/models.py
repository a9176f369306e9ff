"""核心数据结构：Candle / IndicatorSnapshot / Position / TradeRecord。

约定：
- Candle 以 `start_ts`（K 线开盘时间）作为排序与去重键；
- 快照与成交记录均为不可变对象，由引擎/仓位管理器整体替换；
- 仅 IndicatorState 为可变结构，由指标引擎独占持有。
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime
from enum import Enum


class Side(str, Enum):
    """方向。"""

    LONG = "long"
    SHORT = "short"

    @property
    def opposite(self) -> "Side":
        return Side.SHORT if self is Side.LONG else Side.LONG


class ExitReason(str, Enum):
    """平仓原因。"""

    TARGET_HIT = "tp_hit"
    SIGNAL = "signal"
    MANUAL = "manual"


class PositionState(str, Enum):
    FLAT = "flat"
    LONG_OPEN = "long_open"
    SHORT_OPEN = "short_open"


class ErrorKind(str, Enum):
    """错误事件类别。"""

    VALIDATION = "validation"
    OUT_OF_ORDER = "out_of_order"
    FEED_FAILURE = "feed_failure"


class CandleValidationError(ValueError):
    """K 线数据不合法（非有限数值 / 高低价矛盾 / 负成交量）。"""


@dataclass(frozen=True)
class Candle:
    """K 线数据。`is_final=False` 表示尚未收盘的实时更新。"""

    symbol: str
    open: float
    high: float
    low: float
    close: float
    volume: float
    start_ts: datetime
    end_ts: datetime
    is_final: bool = True


def validate_candle(candle: Candle) -> Candle:
    """校验单根 K 线，合法时原样返回。

    Raises
    ------
    CandleValidationError
        任一价格/成交量非有限数值、`high < low`、开收盘价越出 [low, high]、或成交量为负。
    """
    fields = {
        "open": candle.open,
        "high": candle.high,
        "low": candle.low,
        "close": candle.close,
        "volume": candle.volume,
    }
    for name, value in fields.items():
        if not isinstance(value, (int, float)) or not math.isfinite(value):
            raise CandleValidationError(f"{candle.symbol} {candle.start_ts}: {name} is not finite ({value!r})")
    if candle.high < candle.low:
        raise CandleValidationError(f"{candle.symbol} {candle.start_ts}: high {candle.high} < low {candle.low}")
    if candle.high < max(candle.open, candle.close):
        raise CandleValidationError(f"{candle.symbol} {candle.start_ts}: high below open/close")
    if candle.low > min(candle.open, candle.close):
        raise CandleValidationError(f"{candle.symbol} {candle.start_ts}: low above open/close")
    if candle.volume < 0:
        raise CandleValidationError(f"{candle.symbol} {candle.start_ts}: negative volume {candle.volume}")
    return candle


@dataclass
class IndicatorState:
    """指标引擎的滚动状态（None 表示尚未预热完成）。"""

    atr: float | None = None
    baseline: float | None = None
    trailing_stop: float | None = None
    trailing_stop_fast: float | None = None
    scalp_line: float | None = None


@dataclass(frozen=True)
class IndicatorSnapshot:
    """单根已收盘 K 线对应的完整指标值。"""

    ts: datetime
    close: float
    atr: float
    baseline: float
    trailing_stop: float
    trailing_stop_fast: float
    scalp_line: float


@dataclass(frozen=True)
class Position:
    """持仓。

    `reward_amount` 为命中目标位时的完整盈利（已含杠杆）；
    `liquidation_level` 仅作展示，未启用杠杆或杠杆 <= 1 时为 None。
    """

    side: Side
    entry_price: float
    reference_stop: float
    target_level: float
    risk_amount: float
    reward_amount: float
    liquidation_level: float | None
    opened_at: datetime


@dataclass(frozen=True)
class TradeRecord:
    """已完成交易。"""

    side: Side
    entry_price: float
    exit_price: float
    pnl: float
    is_win: bool
    is_target_hit: bool
    exit_reason: ExitReason
    opened_at: datetime
    closed_at: datetime
    risk_amount: float
    reference_stop: float
    target_level: float
    capital_after: float

    def to_dict(self) -> dict[str, object]:
        return {
            "position": self.side.value,
            "entry_date": self.opened_at.isoformat(),
            "exit_date": self.closed_at.isoformat(),
            "entry_price": self.entry_price,
            "exit_price": self.exit_price,
            "reference_stop": self.reference_stop,
            "target_level": self.target_level,
            "risk_amount": self.risk_amount,
            "pnl": self.pnl,
            "is_win": self.is_win,
            "is_target_hit": self.is_target_hit,
            "exit_reason": self.exit_reason.value,
            "capital_after": self.capital_after,
        }
