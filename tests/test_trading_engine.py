import asyncio

from engine.events import ErrorEvent, PositionOpenedEvent, SignalEvent
from engine.trading_engine import InstanceKey, TradingEngine
from market_data.client import FakeMarketClient, MarketDataError, SubscriptionHandle
from shared.config.schema import ExchangeConfig, MainConfig
from shared.models.models import ErrorKind, Side

from candle_factory import rising


def _cfg(symbols: list[str], warmup: int = 30) -> MainConfig:
    return MainConfig(
        symbol=symbols[0],
        symbols=symbols,
        mode="dry-run",
        exchange=ExchangeConfig(warmup_candles=warmup),
    )


def test_instances_run_independently_and_relay_events():
    candles = rising(50)
    source = FakeMarketClient(candles=candles[30:], history=candles[:30])
    received = []
    engine = TradingEngine(
        cfg_obj=_cfg(["BTCUSDT", "ETHUSDT"]),
        source=source,
        on_event=lambda key, event: received.append((key, event)),
    )
    result = engine.run()

    assert set(result.summary) == {"BTCUSDT@5m", "ETHUSDT@5m"}
    for name, summary in result.summary.items():
        assert summary["processed_candles"] == 20, name
        assert summary["failed"] is False
        assert summary["open_position"] == "long"
        assert summary["state"] == "long_open"

    for symbol in ("BTCUSDT", "ETHUSDT"):
        key = InstanceKey(symbol, "5m")
        events = [e for k, e in received if k == key]
        signals = [e for e in events if isinstance(e, SignalEvent)]
        assert [(s.direction, s.price) for s in signals] == [(Side.LONG, 119.0)]
        assert all(e.symbol == symbol for e in events)
        assert sum(isinstance(e, PositionOpenedEvent) for e in events) == 1


def test_max_candles_stops_instance():
    candles = rising(60)
    source = FakeMarketClient(candles=candles[30:], history=candles[:30])
    result = TradingEngine(cfg_obj=_cfg(["BTCUSDT"]), source=source, max_candles=5).run()
    assert result.summary["BTCUSDT@5m"]["processed_candles"] == 5


class _BrokenHistory(FakeMarketClient):
    def get_historical_candles(self, symbol, interval, limit):
        raise MarketDataError("klines unavailable")


class _DroppingFeed(FakeMarketClient):
    def subscribe_to_candles(self, symbol, interval, on_candle, on_error=None):
        async def _fail():
            await asyncio.sleep(0)
            if on_error is not None:
                on_error(ErrorKind.FEED_FAILURE, {"symbol": symbol, "error": "stream closed"})

        return SubscriptionHandle(asyncio.get_running_loop().create_task(_fail()))


def test_warmup_failure_reports_feed_failure():
    received = []
    result = TradingEngine(
        cfg_obj=_cfg(["BTCUSDT"]),
        source=_BrokenHistory(),
        on_event=lambda key, event: received.append(event),
    ).run()
    assert result.summary["BTCUSDT@5m"]["failed"] is True
    errors = [e for e in received if isinstance(e, ErrorEvent)]
    assert [e.kind for e in errors] == [ErrorKind.FEED_FAILURE]
    assert errors[0].details["stage"] == "warmup"


def test_subscription_failure_only_stops_its_instance():
    candles = rising(50)
    received = []
    result = TradingEngine(
        cfg_obj=_cfg(["BTCUSDT"]),
        source=_DroppingFeed(candles=candles[30:], history=candles[:30]),
        on_event=lambda key, event: received.append(event),
    ).run()
    summary = result.summary["BTCUSDT@5m"]
    assert summary["failed"] is True
    assert summary["processed_candles"] == 0
    assert any(isinstance(e, ErrorEvent) and e.kind is ErrorKind.FEED_FAILURE for e in received)


def test_failing_consumer_does_not_stop_engine():
    candles = rising(50)

    def _boom(key, event):
        raise RuntimeError("consumer down")

    result = TradingEngine(
        cfg_obj=_cfg(["BTCUSDT"]),
        source=FakeMarketClient(candles=candles[30:], history=candles[:30]),
        on_event=_boom,
    ).run()
    assert result.summary["BTCUSDT@5m"]["processed_candles"] == 20


class _OneSymbolDown(FakeMarketClient):
    def __init__(self, down: str, **kwargs):
        super().__init__(**kwargs)
        self.down = down

    def subscribe_to_candles(self, symbol, interval, on_candle, on_error=None):
        if symbol != self.down:
            return super().subscribe_to_candles(symbol, interval, on_candle, on_error)
        return _DroppingFeed().subscribe_to_candles(symbol, interval, on_candle, on_error)


def test_feed_failure_is_isolated_to_its_instance():
    candles = rising(50)
    received = []
    result = TradingEngine(
        cfg_obj=_cfg(["BTCUSDT", "ETHUSDT"]),
        source=_OneSymbolDown("ETHUSDT", candles=candles[30:], history=candles[:30]),
        on_event=lambda key, event: received.append((key, event)),
    ).run()

    healthy = result.summary["BTCUSDT@5m"]
    broken = result.summary["ETHUSDT@5m"]
    assert (healthy["processed_candles"], healthy["failed"]) == (20, False)
    assert healthy["open_position"] == "long"
    assert (broken["processed_candles"], broken["failed"]) == (0, True)

    errors = [(k.symbol, e.kind) for k, e in received if isinstance(e, ErrorEvent)]
    assert errors == [("ETHUSDT", ErrorKind.FEED_FAILURE)]
