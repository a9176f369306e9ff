"""趋势狙击指标因子：把增量引擎批量跑过一段 K 线，输出各指标列与信号列。

用于研究/导出（`main.py indicators`）；与实时路径共享同一份 `IndicatorEngine`，
保证两边数值一致。
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

import numpy as np
import pandas as pd

from algo.indicators.engine import IndicatorEngine
from algo.strategy.signals import detect_signal
from shared.config.schema import SniperConfig
from shared.models.models import Candle, IndicatorSnapshot

OUTPUT_COLUMNS = ("atr", "baseline", "trailing_stop", "trailing_stop_fast", "scalp_line")


@dataclass(frozen=True)
class TrendSniperFactor:
    length: int = 6
    period: int = 16
    multiplier: float = 9.0
    fast_multiplier: float = 5.1
    scalp_period: int = 21
    prefix: str = ""
    name: str = "trend_sniper"
    params: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        object.__setattr__(
            self,
            "params",
            {
                "length": self.length,
                "period": self.period,
                "multiplier": self.multiplier,
                "fast_multiplier": self.fast_multiplier,
                "scalp_period": self.scalp_period,
            },
        )
        SniperConfig(**self.params)

    def compute(self, df: pd.DataFrame) -> pd.DataFrame:
        for col in ("open", "high", "low", "close"):
            if col not in df.columns:
                raise ValueError(f"TrendSniperFactor requires column: {col}")

        engine = IndicatorEngine(SniperConfig(**self.params))
        values = {col: np.full(len(df), np.nan) for col in OUTPUT_COLUMNS}
        signals: list[str | None] = [None] * len(df)
        ts_col = df["start_ts"] if "start_ts" in df.columns else pd.Series(df.index, index=df.index)

        previous: IndicatorSnapshot | None = None
        for i, (o, h, l, c, ts) in enumerate(
            zip(df["open"], df["high"], df["low"], df["close"], ts_col)
        ):
            candle = Candle(
                symbol="",
                open=float(o),
                high=float(h),
                low=float(l),
                close=float(c),
                volume=0.0,
                start_ts=ts,
                end_ts=ts,
            )
            snapshot = engine.update(candle)
            if snapshot is None:
                continue
            for col in OUTPUT_COLUMNS:
                values[col][i] = getattr(snapshot, col)
            side = detect_signal(snapshot, previous)
            signals[i] = side.value if side is not None else None
            previous = snapshot

        for col in OUTPUT_COLUMNS:
            df[f"{self.prefix}{col}"] = values[col]
        df[f"{self.prefix}signal"] = signals
        return df
