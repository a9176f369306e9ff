"""K 线行情源（Binance REST/WebSocket / 本地假数据）。

两类接口：
- `get_historical_candles(symbol, interval, limit)`：同步拉取最近 limit 根 K 线；
- `subscribe_to_candles(symbol, interval, on_candle, on_error)`：在当前事件循环里起一个任务推送 K 线。

网络异常在行情源内部按封顶的指数退避重试；连续失败 `max_retries` 次后
通过 `on_error(ErrorKind.FEED_FAILURE, details)` 上报并停止该订阅。
"""

from __future__ import annotations

import asyncio
import json
import random
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Iterator, Protocol, Sequence

import requests
import websockets

from market_data.loader import interval_to_timedelta, kline_row_to_candle
from shared.config.schema import ExchangeConfig
from shared.models.models import Candle, ErrorKind
from shared.utils.logging import setup_logger

CandleCallback = Callable[[Candle], None]
ErrorCallback = Callable[[ErrorKind, dict[str, Any]], None]

_ENDPOINTS = {
    "spot": ("https://api.binance.com/api/v3/klines", "wss://stream.binance.com:9443/ws"),
    "futures": ("https://fapi.binance.com/fapi/v1/klines", "wss://fstream.binance.com/ws"),
}


class MarketDataError(RuntimeError):
    """行情源重试耗尽后的致命错误。"""


class SubscriptionHandle:
    """订阅句柄：包装推送任务，可取消、可等待。"""

    def __init__(self, task: asyncio.Task):
        self._task = task

    def cancel(self) -> None:
        self._task.cancel()

    def add_done_callback(self, fn: Callable[[], None]) -> None:
        self._task.add_done_callback(lambda _task: fn())

    async def wait(self) -> None:
        try:
            await self._task
        except asyncio.CancelledError:
            pass


class MarketDataSource(Protocol):
    def get_historical_candles(self, symbol: str, interval: str, limit: int) -> list[Candle]: ...

    def subscribe_to_candles(
        self,
        symbol: str,
        interval: str,
        on_candle: CandleCallback,
        on_error: ErrorCallback | None = None,
    ) -> SubscriptionHandle: ...


@dataclass(frozen=True)
class Backoff:
    """封顶指数退避 + 随机抖动。"""

    initial_secs: float = 1.0
    max_secs: float = 30.0
    factor: float = 2.0
    jitter_secs: float = 0.2

    def delays(self) -> Iterator[float]:
        delay = self.initial_secs
        while True:
            jitter = random.uniform(0, self.jitter_secs) if self.jitter_secs > 0 else 0.0
            yield min(self.max_secs, delay) + jitter
            delay = min(self.max_secs, max(self.initial_secs, delay * self.factor))

    @classmethod
    def from_config(cls, cfg: ExchangeConfig) -> "Backoff":
        return cls(
            initial_secs=cfg.backoff_initial_secs,
            max_secs=cfg.backoff_max_secs,
            factor=cfg.backoff_factor,
            jitter_secs=cfg.jitter_secs,
        )


def parse_kline_message(symbol: str, data: dict[str, Any]) -> Candle | None:
    """解析 Binance kline 推送；非 kline 消息返回 None。

    兼容单流 `{"e": "kline", "k": {...}}` 与组合流 `{"stream": ..., "data": {...}}`。
    """
    if "data" in data and isinstance(data["data"], dict):
        data = data["data"]
    k = data.get("k")
    if data.get("e") != "kline" or not isinstance(k, dict):
        return None
    return Candle(
        symbol=str(k.get("s") or symbol),
        open=float(k["o"]),
        high=float(k["h"]),
        low=float(k["l"]),
        close=float(k["c"]),
        volume=float(k["v"]),
        start_ts=datetime.fromtimestamp(int(k["t"]) / 1000, tz=timezone.utc),
        end_ts=datetime.fromtimestamp(int(k["T"]) / 1000, tz=timezone.utc),
        is_final=bool(k.get("x", False)),
    )


class BinanceMarketClient:
    """Binance 公开行情（REST klines + kline WebSocket）。"""

    def __init__(
        self,
        market: str = "spot",
        rest_url: str | None = None,
        ws_url: str | None = None,
        max_retries: int = 5,
        backoff: Backoff | None = None,
        timeout: float = 10.0,
        logger=None,
    ):
        if market not in _ENDPOINTS:
            raise ValueError(f"Unsupported Binance market: {market}")
        default_rest, default_ws = _ENDPOINTS[market]
        self.market = market
        self.rest_url = rest_url or default_rest
        self.ws_base = (ws_url or default_ws).rstrip("/")
        self.max_retries = max_retries
        self.backoff = backoff or Backoff()
        self.timeout = timeout
        self.logger = logger or setup_logger("market-binance")

    def get_historical_candles(self, symbol: str, interval: str, limit: int) -> list[Candle]:
        """拉取最近 limit 根 K 线（最后一根可能未收盘，is_final=False）。

        Raises
        ------
        MarketDataError
            连续 max_retries 次请求失败。
        """
        params = {"symbol": symbol.upper(), "interval": interval, "limit": limit}
        delays = self.backoff.delays()
        for attempt in range(1, self.max_retries + 1):
            try:
                resp = requests.get(self.rest_url, params=params, timeout=self.timeout)
                resp.raise_for_status()
                now = datetime.now(timezone.utc)
                return [kline_row_to_candle(symbol, item, now) for item in resp.json()]
            except (requests.RequestException, ValueError) as exc:
                if attempt >= self.max_retries:
                    raise MarketDataError(
                        f"klines {symbol} {interval} failed after {attempt} attempts: {exc}"
                    ) from exc
                delay = next(delays)
                self.logger.warning(f"klines request failed: {exc} (retry {attempt} in {delay:.1f}s)")
                time.sleep(delay)
        return []

    def subscribe_to_candles(
        self,
        symbol: str,
        interval: str,
        on_candle: CandleCallback,
        on_error: ErrorCallback | None = None,
    ) -> SubscriptionHandle:
        """订阅 `<symbol>@kline_<interval>`；必须在运行中的事件循环里调用。"""
        task = asyncio.get_running_loop().create_task(self._kline_loop(symbol, interval, on_candle, on_error))
        return SubscriptionHandle(task)

    async def _kline_loop(
        self,
        symbol: str,
        interval: str,
        on_candle: CandleCallback,
        on_error: ErrorCallback | None,
    ) -> None:
        url = f"{self.ws_base}/{symbol.lower()}@kline_{interval}"
        failures = 0
        delays = self.backoff.delays()
        while True:
            try:
                async with websockets.connect(url) as ws:
                    self.logger.info(f"Connected to Binance WS: {url}")
                    async for msg in ws:
                        if failures:
                            failures = 0
                            delays = self.backoff.delays()
                        try:
                            candle = parse_kline_message(symbol, json.loads(msg))
                        except (ValueError, KeyError, TypeError) as exc:
                            self.logger.warning(f"Malformed kline message skipped: {exc}")
                            continue
                        if candle is not None:
                            on_candle(candle)
                raise ConnectionError("stream closed by server")
            except (OSError, asyncio.TimeoutError, websockets.WebSocketException) as exc:
                failures += 1
                if failures >= self.max_retries:
                    self.logger.error(f"WS {url} failed {failures} times, giving up: {exc}")
                    if on_error is not None:
                        on_error(ErrorKind.FEED_FAILURE, {"symbol": symbol, "url": url, "error": str(exc)})
                    return
                delay = next(delays)
                self.logger.warning(f"WS error {exc}, reconnecting in {delay:.1f}s ({failures}/{self.max_retries})")
                await asyncio.sleep(delay)


class FakeMarketClient:
    """本地假数据源，便于离线开发/测试。

    给定 `candles` 时按顺序回放（回放完即结束）；否则生成固定种子的随机游走 K 线。
    """

    def __init__(
        self,
        candles: Sequence[Candle] | None = None,
        history: Sequence[Candle] | None = None,
        delay_secs: float = 0.0,
        seed: int = 7,
        logger=None,
    ):
        self.candles = list(candles) if candles is not None else None
        self.history = list(history) if history is not None else None
        self.delay_secs = delay_secs
        self._rng = random.Random(seed)
        self.logger = logger or setup_logger("market-fake")

    def _random_walk(self, symbol: str, interval: str, start: datetime, price: float = 100.0) -> Iterator[Candle]:
        step = interval_to_timedelta(interval)
        ts = start
        while True:
            open_ = price
            close = max(0.01, open_ + self._rng.gauss(0, 0.5))
            high = max(open_, close) + abs(self._rng.gauss(0, 0.2))
            low = max(0.0, min(open_, close) - abs(self._rng.gauss(0, 0.2)))
            yield Candle(symbol, open_, high, low, close, abs(self._rng.gauss(10, 3)), ts, ts + step)
            price = close
            ts += step

    def get_historical_candles(self, symbol: str, interval: str, limit: int) -> list[Candle]:
        if self.history is not None:
            return self.history[-limit:] if limit > 0 else []
        start = datetime.now(timezone.utc) - interval_to_timedelta(interval) * limit
        walk = self._random_walk(symbol, interval, start)
        return [next(walk) for _ in range(limit)]

    def subscribe_to_candles(
        self,
        symbol: str,
        interval: str,
        on_candle: CandleCallback,
        on_error: ErrorCallback | None = None,
    ) -> SubscriptionHandle:
        task = asyncio.get_running_loop().create_task(self._replay(symbol, interval, on_candle))
        return SubscriptionHandle(task)

    async def _replay(self, symbol: str, interval: str, on_candle: CandleCallback) -> None:
        if self.candles is not None:
            source: Iterator[Candle] = iter(self.candles)
        else:
            last = self.history[-1].start_ts if self.history else datetime.now(timezone.utc)
            source = self._random_walk(symbol, interval, last + interval_to_timedelta(interval))
        for candle in source:
            on_candle(candle)
            await asyncio.sleep(self.delay_secs)


def get_market_client(mode: str, exchange_cfg: ExchangeConfig | None = None, logger=None) -> MarketDataSource:
    """根据运行模式选择行情源：live -> Binance，dry-run/backtest -> 假数据。"""
    cfg = exchange_cfg or ExchangeConfig()
    mode_l = mode.lower().replace("_", "-")
    if mode_l == "live":
        if cfg.name.lower() != "binance":
            raise ValueError(f"Unsupported exchange for live mode: {cfg.name}")
        return BinanceMarketClient(
            market=cfg.market,
            rest_url=cfg.base_url,
            ws_url=cfg.ws_url,
            max_retries=cfg.max_retries,
            backoff=Backoff.from_config(cfg),
            timeout=cfg.request_timeout_secs,
            logger=logger,
        )
    if mode_l in {"dry-run", "backtest"}:
        return FakeMarketClient(logger=logger)
    raise ValueError(f"Unsupported market mode: {mode}")
