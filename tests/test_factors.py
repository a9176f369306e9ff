from __future__ import annotations

import math

import pandas as pd
import pytest

from algo.factors.atr import ATRFactor
from algo.factors.registry import apply_factors, build_factors, get_factor_cls
from algo.factors.trend_sniper import TrendSniperFactor
from algo.indicators.engine import IndicatorEngine
from market_data.loader import candles_to_frame
from shared.config.schema import SniperConfig

from candle_factory import rise_then_fall, rising


def test_atr_factor_seed_then_wilder():
    df = candles_to_frame(rising(30))
    out = ATRFactor(period=16).compute(df)
    atr = out["atr_16"]
    assert atr.iloc[:15].isna().all()
    assert abs(atr.iloc[15] - 1.25) < 1e-12
    assert abs(atr.iloc[-1] - 1.25) < 1e-12


def test_atr_factor_matches_incremental_engine():
    candles = rise_then_fall(40, 40)
    out = ATRFactor(period=16, out_col="atr").compute(candles_to_frame(candles))
    engine = IndicatorEngine(SniperConfig())
    for i, c in enumerate(candles):
        engine.update(c)
        if engine.state.atr is not None:
            assert abs(out["atr"].iloc[i] - engine.state.atr) < 1e-9


def test_atr_factor_requires_columns():
    with pytest.raises(ValueError):
        ATRFactor(period=5).compute(pd.DataFrame({"close": [1.0, 2.0]}))
    with pytest.raises(ValueError):
        ATRFactor(period=0)


def test_trend_sniper_factor_columns_and_signal():
    df = TrendSniperFactor().compute(candles_to_frame(rising(50)))
    for col in ("atr", "baseline", "trailing_stop", "trailing_stop_fast", "scalp_line", "signal"):
        assert col in df.columns

    warmup = SniperConfig().warmup_bars
    assert df["scalp_line"].iloc[: warmup - 1].isna().all()
    assert not math.isnan(df["scalp_line"].iloc[warmup - 1])

    signals = df["signal"].dropna()
    assert list(signals.index) == [38]
    assert signals.iloc[0] == "long"
    assert abs(df["trailing_stop"].iloc[38] - 107.75) < 1e-9


def test_registry_builds_and_applies():
    assert get_factor_cls("atr") is ATRFactor
    factors = build_factors(
        [
            {"name": "atr", "params": {"period": 14}},
            {"name": "trend_sniper", "prefix": "ts_", "length": 6},
        ]
    )
    assert [f.name for f in factors] == ["atr", "trend_sniper"]
    df = apply_factors(candles_to_frame(rising(45)), factors)
    assert "atr_14" in df.columns
    assert "ts_signal" in df.columns

    with pytest.raises(ValueError):
        build_factors([{"name": "nope"}])
    with pytest.raises(ValueError):
        build_factors([{"name": "trend_sniper", "fast_multiplier": 12.0}])


def test_registry_reports_known_factors():
    with pytest.raises(ValueError) as exc:
        get_factor_cls("ema")
    assert "atr" in str(exc.value) and "trend_sniper" in str(exc.value)
