from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any

import pandas as pd

import main as app_main
from market_data.loader import candles_to_frame

from candle_factory import rise_then_fall


def _write_csv(path: Path) -> Path:
    df = candles_to_frame(rise_then_fall(50, 50))
    df["start_ts"] = df["start_ts"].map(lambda ts: ts.isoformat())
    df["end_ts"] = df["end_ts"].map(lambda ts: ts.isoformat())
    df.to_csv(path, index=False)
    return path


def test_parse_args_defaults_and_config_after_subcommand():
    args = app_main.parse_args([])
    assert args.task == "runner"
    assert args.config == "config/config.yml"

    args = app_main.parse_args(["backtest", "--config", "config/other.yml", "--data", "bars.csv"])
    assert args.task == "backtest"
    assert args.config == "config/other.yml"
    assert args.data == "bars.csv"

    args = app_main.parse_args(["--config", "a.yml", "runner", "--max-candles", "12"])
    assert (args.config, args.max_candles) == ("a.yml", 12)


def test_main_runner_uses_trading_engine(monkeypatch):
    @dataclass
    class _Res:
        summary: dict[str, Any]

    class _FakeEngine:
        def __init__(self, *, cfg_path: str, max_candles: int | None = None, **_kwargs):
            self.cfg_path = cfg_path
            self.max_candles = max_candles

        def run(self):
            return _Res(summary={"BTCUSDT@5m": {"cfg_path": self.cfg_path, "max_candles": self.max_candles}})

    monkeypatch.setattr(app_main, "TradingEngine", _FakeEngine)
    monkeypatch.setattr(app_main, "print_summary", lambda *a, **k: None)
    res = app_main.main(["--config", "config/config.yml", "runner", "--max-candles", "12"])
    assert res == {"BTCUSDT@5m": {"cfg_path": "config/config.yml", "max_candles": 12}}


def test_main_backtest_with_data_override(tmp_path: Path):
    data = _write_csv(tmp_path / "bars.csv")
    out_dir = tmp_path / "out"
    summary = app_main.main(["backtest", "--data", str(data), "--output-dir", str(out_dir)])
    assert summary["symbol"] == "BTCUSDT"
    assert summary["n_bars"] == 100
    assert summary["total_trades"] == 1
    assert summary["open_position"] == "short"
    assert (out_dir / "trades.csv").exists()
    assert (out_dir / "summary.json").exists()


def test_main_indicators_writes_csv(tmp_path: Path):
    data = _write_csv(tmp_path / "bars.csv")
    out = tmp_path / "indicators.csv"
    df = app_main.main(["indicators", "--data", str(data), "--out", str(out)])
    assert out.exists()
    saved = pd.read_csv(out)
    assert len(saved) == len(df) == 100
    assert list(saved["signal"].dropna()) == ["long", "short"]


def test_console_entry_returns_zero_exit_code(tmp_path: Path, monkeypatch):
    monkeypatch.setattr(app_main, "print_summary", lambda *a, **k: None)
    data = _write_csv(tmp_path / "bars.csv")
    code = app_main.cli(["backtest", "--data", str(data), "--output-dir", str(tmp_path / "out")])
    assert code == 0
    assert (tmp_path / "out" / "summary.json").exists()


def test_console_entry_passes_through_pytest_exit_code(monkeypatch):
    import pytest

    monkeypatch.setattr(pytest, "main", lambda args: 3)
    assert app_main.cli(["test"]) == 3
