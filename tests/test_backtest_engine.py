import json
from pathlib import Path

import pandas as pd

from engine.backtest_engine import BacktestEngine
from market_data.loader import candles_to_frame
from shared.config.schema import BacktestConfig, MainConfig
from shared.models.models import Candle, ExitReason, Side

from candle_factory import candle, rise_then_fall, rising


def _write_csv(candles: list[Candle], path: Path) -> Path:
    df = candles_to_frame(candles)
    df["start_ts"] = df["start_ts"].map(lambda ts: ts.isoformat())
    df["end_ts"] = df["end_ts"].map(lambda ts: ts.isoformat())
    df.to_csv(path, index=False)
    return path


def _cfg(data_path: Path, out_dir: Path | None = None, flatten: bool = True) -> MainConfig:
    return MainConfig(
        symbol="BTCUSDT",
        timeframe="5m",
        backtest=BacktestConfig(
            data_path=str(data_path),
            symbol="BTCUSDT",
            interval="5m",
            flatten_on_end=flatten,
            output_dir=str(out_dir) if out_dir is not None else None,
        ),
    )


def test_backtest_reversal_and_flatten(tmp_path: Path):
    data = _write_csv(rise_then_fall(50, 50), tmp_path / "BTCUSDT_5m.csv")
    out_dir = tmp_path / "out"
    engine = BacktestEngine(cfg_obj=_cfg(data, out_dir))
    result = engine.run()

    trades = result.artifacts["trades"]
    assert [(t.side, t.exit_reason) for t in trades] == [
        (Side.LONG, ExitReason.SIGNAL),
        (Side.SHORT, ExitReason.MANUAL),
    ]
    long_trade, short_trade = trades
    assert long_trade.entry_price == 119.0 and long_trade.exit_price == 113.0
    assert abs(long_trade.pnl - (-20.0 * 6.0 / 11.25)) < 1e-9
    assert not long_trade.is_win
    # 反手后的风险按平仓后的资金计算
    assert abs(short_trade.risk_amount - 0.02 * (1000.0 + long_trade.pnl)) < 1e-9
    assert abs(short_trade.pnl - 0.8 * short_trade.risk_amount * 1.5) < 1e-9
    assert short_trade.is_win

    summary = result.summary
    assert summary["total_trades"] == 2
    assert summary["long_losses"] == 1 and summary["short_wins"] == 1
    assert summary["open_position"] is None
    assert summary["n_bars"] == 100
    assert summary["signals"] == 2
    assert summary["closed_events"] == 2
    assert summary["target_hit_events"] == 0
    assert abs(summary["current_capital"] - (1000.0 + long_trade.pnl + short_trade.pnl)) < 1e-9
    assert abs(summary["total_risked_amount"] - (20.0 + short_trade.risk_amount)) < 1e-9

    curve = result.artifacts["equity_curve"]
    assert len(curve) == 100
    assert curve[-1][1] == summary["current_capital"]
    timestamps = [ts for ts, _ in curve]
    assert timestamps == sorted(set(timestamps))

    trades_df = pd.read_csv(result.artifacts["trades_csv"])
    assert list(trades_df["position"]) == ["long", "short"]
    assert list(trades_df["exit_reason"]) == ["signal", "manual"]
    assert len(pd.read_csv(result.artifacts["equity_csv"])) == 100
    saved = json.loads(Path(result.artifacts["summary_json"]).read_text(encoding="utf-8"))
    assert saved["total_trades"] == 2
    assert saved["config"]["period"] == 16


def test_backtest_without_flatten_keeps_position_open(tmp_path: Path):
    data = _write_csv(rise_then_fall(50, 50), tmp_path / "BTCUSDT_5m.csv")
    result = BacktestEngine(cfg_obj=_cfg(data, flatten=False)).run()
    assert result.summary["total_trades"] == 1
    assert result.summary["open_position"] == "short"
    assert "trades_csv" not in result.artifacts


def test_backtest_skips_invalid_and_duplicate_candles(tmp_path: Path):
    candles = rising(45)
    bad = candle(45, 122.0, 121.0, 123.0, 122.5)
    engine = BacktestEngine(cfg_obj=_cfg(tmp_path / "unused.csv"), candles=candles + [candles[10], bad])
    result = engine.run()
    assert result.summary["skipped_invalid"] == 1
    assert result.summary["ignored_duplicates"] == 1
    assert result.summary["n_bars"] == 47
    assert engine.pipeline is not None
    assert engine.pipeline.indicators.bars_seen == 45
