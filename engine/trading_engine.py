"""实时/干跑交易引擎（TradingEngine）。

每个 (symbol, timeframe) 是一个独立实例：独占自己的管线（指标/仓位/账本），
运行在各自的 asyncio 任务里。实例之间不共享可变状态，所有事件以
`(InstanceKey, event)` 消息的形式汇入同一个 outbox 队列，跨实例协作（镜像/投票）
只通过消费该队列完成。
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Callable

from engine.base_engine import BaseEngine, EngineResult
from engine.events import (
    ErrorEvent,
    Event,
    PositionClosedEvent,
    PositionOpenedEvent,
    SignalEvent,
)
from engine.signal_pipeline import TrendSniperPipeline
from market_data.client import MarketDataError, MarketDataSource, get_market_client
from shared.config.config_loader import load_config
from shared.config.schema import MainConfig, SniperConfig
from shared.models.models import Candle, CandleValidationError, ErrorKind
from shared.utils.logging import setup_logger
from utils.metrics import StatisticsAggregator


@dataclass(frozen=True)
class InstanceKey:
    symbol: str
    interval: str

    def __str__(self) -> str:
        return f"{self.symbol}@{self.interval}"


class SniperInstance:
    """单个交易实例：预热 → 订阅 → 逐根处理，直到被停止或行情源失效。

    Parameters
    ----------
    key:
        实例标识。
    cfg:
        策略参数。
    source:
        行情源。
    outbox:
        事件汇聚队列；为 None 时只在本实例事件总线上发布。
    warmup_candles:
        订阅前拉取的历史 K 线数量（只用于预热指标）。
    max_candles:
        处理多少根已收盘 K 线后自动停止；None 表示不限。
    """

    def __init__(
        self,
        key: InstanceKey,
        cfg: SniperConfig,
        source: MarketDataSource,
        outbox: asyncio.Queue | None = None,
        warmup_candles: int = 500,
        max_candles: int | None = None,
    ):
        self.key = key
        self.source = source
        self.warmup_candles = warmup_candles
        self.max_candles = max_candles
        self.pipeline = TrendSniperPipeline(cfg, symbol=key.symbol)
        self.logger = setup_logger("engine")
        self.processed = 0
        self.failed = False
        self._queue: asyncio.Queue[Candle | None] | None = None
        self._stopped = False
        if outbox is not None:
            self.pipeline.bus.subscribe(lambda event: outbox.put_nowait((key, event)))

    def stop(self) -> None:
        """请求停止；当前 K 线处理完后生效。"""
        self._stopped = True
        if self._queue is not None:
            self._queue.put_nowait(None)

    async def run(self) -> None:
        if not await self._warmup():
            return
        queue: asyncio.Queue[Candle | None] = asyncio.Queue()
        self._queue = queue

        def _on_error(kind: ErrorKind, details: dict[str, Any]) -> None:
            self._fail(kind, details)
            queue.put_nowait(None)

        handle = self.source.subscribe_to_candles(self.key.symbol, self.key.interval, queue.put_nowait, _on_error)
        handle.add_done_callback(lambda: queue.put_nowait(None))
        self.logger.info(f"[{self.key}] subscribed")
        try:
            while not self._stopped:
                candle = await queue.get()
                if candle is None:
                    break
                try:
                    step = self.pipeline.on_candle(candle)
                except CandleValidationError as exc:
                    self.logger.warning(f"[{self.key}] rejected candle: {exc}")
                    continue
                if step.status == "processed":
                    self.processed += 1
                    if self.max_candles is not None and self.processed >= self.max_candles:
                        break
        finally:
            handle.cancel()
            await handle.wait()
            self.logger.info(f"[{self.key}] stopped after {self.processed} candles")

    async def _warmup(self) -> bool:
        if self.warmup_candles <= 0:
            return True
        try:
            history = await asyncio.to_thread(
                self.source.get_historical_candles, self.key.symbol, self.key.interval, self.warmup_candles
            )
        except MarketDataError as exc:
            self._fail(ErrorKind.FEED_FAILURE, {"stage": "warmup", "error": str(exc)})
            return False
        self.pipeline.prime(c for c in history if c.is_final)
        return True

    def _fail(self, kind: ErrorKind, details: dict[str, Any]) -> None:
        self.failed = True
        self._stopped = True
        self.logger.error(f"[{self.key}] {kind.value}: {details}")
        self.pipeline.bus.publish(ErrorEvent(self.key.symbol, kind, details))

    def summary(self) -> dict[str, Any]:
        positions = self.pipeline.positions
        stats = StatisticsAggregator(positions.ledger, positions.trades, self.pipeline.equity_curve)
        pos = positions.position
        return {
            **stats.summary(),
            "processed_candles": self.processed,
            "failed": self.failed,
            "state": positions.state.value,
            "open_position": pos.side.value if pos is not None else None,
        }


class TradingEngine(BaseEngine):
    """多实例实时引擎。

    Parameters
    ----------
    cfg_path / cfg_obj:
        配置来源。
    source:
        行情源；不传则按 `cfg.mode` 选择（live -> Binance，其余 -> 假数据）。
    max_candles:
        每个实例处理的已收盘 K 线上限，便于干跑/测试。
    on_event:
        outbox 消息的消费者，签名 `(InstanceKey, event) -> None`。
    """

    def __init__(
        self,
        *,
        cfg_path: str = "config/config.yml",
        cfg_obj: MainConfig | None = None,
        source: MarketDataSource | None = None,
        max_candles: int | None = None,
        on_event: Callable[[InstanceKey, Event], None] | None = None,
    ):
        self._cfg_path = cfg_path
        self._cfg_obj = cfg_obj
        self._source = source
        self._max_candles = max_candles
        self._on_event = on_event
        self.logger = setup_logger("engine")
        self.instances: list[SniperInstance] = []

    def run(self) -> EngineResult:
        return asyncio.run(self.run_async())

    def stop(self) -> None:
        for inst in self.instances:
            inst.stop()

    async def run_async(self) -> EngineResult:
        cfg = self._cfg_obj or load_config(self._cfg_path)
        source = self._source or get_market_client(cfg.mode, cfg.exchange)
        outbox: asyncio.Queue = asyncio.Queue()

        self.instances = [
            SniperInstance(
                InstanceKey(symbol, cfg.timeframe),
                cfg.strategy,
                source,
                outbox=outbox,
                warmup_candles=cfg.exchange.warmup_candles,
                max_candles=self._max_candles,
            )
            for symbol in cfg.instance_symbols
        ]
        self.logger.info(f"starting {len(self.instances)} instance(s): {', '.join(str(i.key) for i in self.instances)}")

        relay = asyncio.create_task(self._relay(outbox))
        try:
            await asyncio.gather(*(inst.run() for inst in self.instances))
        finally:
            relay.cancel()
            try:
                await relay
            except asyncio.CancelledError:
                pass
            while not outbox.empty():
                self._dispatch(*outbox.get_nowait())

        summary = {str(inst.key): inst.summary() for inst in self.instances}
        return EngineResult(summary=summary)

    async def _relay(self, outbox: asyncio.Queue) -> None:
        while True:
            key, event = await outbox.get()
            self._dispatch(key, event)

    def _dispatch(self, key: InstanceKey, event: Event) -> None:
        if isinstance(event, SignalEvent):
            self.logger.info(f"[{key}] signal {event.direction.value} @ {event.price}")
        elif isinstance(event, PositionOpenedEvent):
            pos = event.position
            self.logger.info(
                f"[{key}] open {pos.side.value} @ {pos.entry_price} target={pos.target_level} "
                f"liq={pos.liquidation_level}"
            )
        elif isinstance(event, PositionClosedEvent):
            rec = event.record
            self.logger.info(f"[{key}] close {rec.side.value} reason={rec.exit_reason.value} pnl={rec.pnl:.4f}")
        if self._on_event is not None:
            try:
                self._on_event(key, event)
            except Exception:
                self.logger.exception(f"[{key}] on_event consumer failed")
