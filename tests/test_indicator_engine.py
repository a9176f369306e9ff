import dataclasses
import random

import pandas as pd

from algo.factors.atr import ATRFactor
from algo.indicators.engine import IndicatorEngine, efficiency_ratio, trail_stop, true_range
from shared.config.schema import SniperConfig
from shared.models.models import IndicatorState

from candle_factory import candle, rising


def _random_walk(n: int, seed: int = 11):
    rng = random.Random(seed)
    price = 100.0
    out = []
    for i in range(n):
        open_ = price
        close = max(1.0, open_ + rng.gauss(0, 1.0))
        high = max(open_, close) + abs(rng.gauss(0, 0.4))
        low = min(open_, close) - abs(rng.gauss(0, 0.4))
        out.append(candle(i, open_, high, low, close))
        price = close
    return out


def test_true_range_uses_previous_close():
    assert true_range(10.0, 8.0, None) == 2.0
    assert true_range(10.0, 8.0, 12.0) == 4.0
    assert true_range(10.0, 8.0, 5.0) == 5.0


def test_efficiency_ratio_guards_flat_range():
    assert efficiency_ratio(100.0, 100.0, 100.0, 100.0) == 0.0
    assert abs(efficiency_ratio(100.0, 101.0, 99.0, 101.0) - 0.5) < 1e-12


def test_trail_stop_ratchets_and_flips():
    # 首次计算：落在 close + offset
    assert trail_stop(None, 100.0, None, 10.0) == 110.0
    # 多头同侧：只升不降
    assert trail_stop(90.0, 105.0, 104.0, 10.0) == 95.0
    assert trail_stop(96.0, 105.0, 104.0, 10.0) == 96.0
    # 空头同侧：只降不升
    assert trail_stop(110.0, 95.0, 96.0, 10.0) == 105.0
    assert trail_stop(104.0, 95.0, 96.0, 10.0) == 104.0
    # 穿越翻转
    assert trail_stop(100.0, 101.0, 99.0, 10.0) == 91.0
    assert trail_stop(100.0, 99.0, 101.0, 10.0) == 109.0


def test_engine_not_ready_until_warmup():
    cfg = SniperConfig()
    engine = IndicatorEngine(cfg)
    candles = rising(60)
    snapshots = [engine.update(c) for c in candles]
    first_ready = next(i for i, s in enumerate(snapshots) if s is not None)
    assert first_ready == cfg.warmup_bars - 1
    assert all(s is None for s in snapshots[:first_ready])
    assert all(s is not None for s in snapshots[first_ready:])
    assert engine.is_ready
    assert engine.bars_seen == 60


def test_engine_steady_state_on_linear_series():
    engine = IndicatorEngine(SniperConfig())
    snap = None
    for c in rising(50):
        snap = engine.update(c)
    assert snap is not None
    assert abs(snap.atr - 1.25) < 1e-12
    # lv = 0.2，斜率 0.5 时基线稳态滞后 2
    assert abs((snap.close - snap.baseline) - 2.0) < 1e-3
    assert abs(snap.trailing_stop - (snap.close - 9 * 1.25)) < 1e-9
    assert snap.trailing_stop < snap.trailing_stop_fast < snap.close


def test_atr_non_negative_and_matches_frame_factor():
    cfg = SniperConfig(period=14, length=5, scalp_period=10, multiplier=6.0, fast_multiplier=3.0)
    candles = _random_walk(300)
    engine = IndicatorEngine(cfg)
    atrs = []
    for c in candles:
        engine.update(c)
        atrs.append(engine.state.atr)

    df = pd.DataFrame({"high": [c.high for c in candles], "low": [c.low for c in candles], "close": [c.close for c in candles]})
    df = ATRFactor(period=14).compute(df)
    for i, atr in enumerate(atrs):
        if atr is None:
            assert pd.isna(df["atr_14"].iloc[i])
            continue
        assert atr >= 0
        assert abs(atr - df["atr_14"].iloc[i]) < 1e-9


def test_flat_candles_keep_baseline_constant():
    cfg = SniperConfig(period=3, length=3, scalp_period=3, multiplier=2.0, fast_multiplier=1.0)
    engine = IndicatorEngine(cfg)
    for i in range(3):
        engine.update(candle(i, 100.0, 100.0, 100.0, 100.0))
    baseline = engine.state.baseline
    for i in range(3, 10):
        engine.update(candle(i, 100.0, 100.0, 100.0, 100.0))
        assert engine.state.baseline == baseline
        assert engine.state.atr == 0.0


def test_state_holds_only_current_indicator_values():
    names = [f.name for f in dataclasses.fields(IndicatorState)]
    assert names == ["atr", "baseline", "trailing_stop", "trailing_stop_fast", "scalp_line"]
