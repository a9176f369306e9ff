"""单实例 K 线处理管线（IndicatorEngine → detect_signal → PositionManager）。

runner 与 backtest 共用这一段逻辑，避免两处实现漂移。
每根 K 线同步处理完毕后才接受下一根；乱序与重复时间戳的 K 线被忽略而不是重排。
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, Literal

from algo.indicators.engine import IndicatorEngine
from algo.strategy.signals import detect_signal, reference_stop
from engine.events import (
    ErrorEvent,
    ErrorKind,
    EventBus,
    PositionClosedEvent,
    PositionOpenedEvent,
    SignalEvent,
    TakeProfitHitEvent,
)
from risk.manager import CloseResult, PositionManager
from shared.config.schema import SniperConfig
from shared.models.models import (
    Candle,
    CandleValidationError,
    IndicatorSnapshot,
    Position,
    Side,
    TradeRecord,
    validate_candle,
)
from shared.utils.logging import setup_logger

StepStatus = Literal["processed", "tick", "duplicate", "out_of_order"]


@dataclass
class StepResult:
    status: StepStatus
    snapshot: IndicatorSnapshot | None = None
    signal: Side | None = None
    opened: Position | None = None
    closed: list[TradeRecord] = field(default_factory=list)


class TrendSniperPipeline:
    """趋势狙击单实例管线。

    Parameters
    ----------
    cfg:
        策略参数（实例生命周期内不可变）。
    symbol:
        实例标识，写入事件。
    bus:
        事件总线；不传则新建。
    """

    def __init__(self, cfg: SniperConfig, symbol: str = "", bus: EventBus | None = None):
        self.cfg = cfg
        self.symbol = symbol
        self.bus = bus or EventBus()
        self.indicators = IndicatorEngine(cfg)
        self.positions = PositionManager(cfg)
        self.logger = setup_logger("pipeline")
        self.equity_curve: list[tuple[datetime, float]] = []
        self._last_ts: datetime | None = None
        self._prev_snapshot: IndicatorSnapshot | None = None

    @property
    def last_ts(self) -> datetime | None:
        return self._last_ts

    @property
    def snapshot(self) -> IndicatorSnapshot | None:
        return self._prev_snapshot

    def prime(self, candles: Iterable[Candle]) -> int:
        """用历史 K 线预热指标（不产生信号、不开仓），返回实际使用的根数。"""
        used = 0
        for candle in candles:
            if not candle.is_final:
                continue
            validate_candle(candle)
            if self._last_ts is not None and candle.start_ts <= self._last_ts:
                continue
            self._prev_snapshot = self.indicators.update(candle)
            self._last_ts = candle.start_ts
            used += 1
        self.logger.info(f"{self.symbol} primed with {used} candles, ready={self.indicators.is_ready}")
        return used

    def on_candle(self, candle: Candle) -> StepResult:
        """处理一根 K 线。

        Raises
        ------
        CandleValidationError
            K 线数据不合法；此时状态不变，并发布 VALIDATION 错误事件。
        """
        try:
            validate_candle(candle)
        except CandleValidationError as exc:
            self.bus.publish(ErrorEvent(self.symbol, ErrorKind.VALIDATION, {"error": str(exc), "ts": candle.start_ts}))
            raise

        if not candle.is_final:
            return self._on_tick(candle)

        if self._last_ts is not None:
            if candle.start_ts == self._last_ts:
                return StepResult(status="duplicate")
            if candle.start_ts < self._last_ts:
                self.logger.warning(f"{self.symbol} out-of-order candle {candle.start_ts} <= {self._last_ts}, ignored")
                self.bus.publish(
                    ErrorEvent(
                        self.symbol,
                        ErrorKind.OUT_OF_ORDER,
                        {"ts": candle.start_ts, "last_ts": self._last_ts},
                    )
                )
                return StepResult(status="out_of_order")

        result = StepResult(status="processed")
        hit = self.positions.check_target(candle.high, candle.low, candle.start_ts)
        if hit is not None:
            result.closed.append(hit)
            self._publish_close(hit)

        snapshot = self.indicators.update(candle)
        previous = self._prev_snapshot
        self._prev_snapshot = snapshot
        self._last_ts = candle.start_ts
        result.snapshot = snapshot

        side = detect_signal(snapshot, previous)
        if side is not None and snapshot is not None:
            result.signal = side
            self.bus.publish(SignalEvent(self.symbol, side, candle.close, candle.start_ts))
            outcome = self.positions.on_signal(
                side, candle.close, reference_stop(snapshot, self.cfg.use_scalp_mode), candle.start_ts
            )
            if outcome.closed is not None:
                result.closed.append(outcome.closed)
                self._publish_close(outcome.closed)
            if outcome.opened is not None:
                result.opened = outcome.opened
                self.bus.publish(PositionOpenedEvent(self.symbol, outcome.opened))

        self.equity_curve.append((candle.start_ts, self.positions.ledger.current_capital))
        return result

    def close_manual(self, price: float, ts: datetime) -> CloseResult:
        """外部触发的手动平仓；空仓时返回 no_active_position 结果。"""
        result = self.positions.close_position(price, ts)
        if result.record is not None:
            self._publish_close(result.record)
        return result

    def _on_tick(self, candle: Candle) -> StepResult:
        """未收盘 K 线只检查目标位，不更新指标、不检测信号。"""
        if self._last_ts is not None and candle.start_ts <= self._last_ts:
            return StepResult(status="out_of_order")
        result = StepResult(status="tick")
        hit = self.positions.check_target(candle.high, candle.low, candle.start_ts)
        if hit is not None:
            result.closed.append(hit)
            self._publish_close(hit)
        return result

    def _publish_close(self, record: TradeRecord) -> None:
        if record.is_target_hit:
            self.bus.publish(TakeProfitHitEvent(self.symbol, record))
        self.bus.publish(PositionClosedEvent(self.symbol, record))
