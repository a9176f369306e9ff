"""ATR 因子（批量版）。

口径与增量引擎一致：前 `period` 根 TR 的简单均值作为种子，之后 Wilder 平滑
`atr = (atr_prev * (period - 1) + tr) / period`；种子之前为 NaN。
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

import numpy as np
import pandas as pd


def true_range_series(df: pd.DataFrame) -> np.ndarray:
    """逐行 TR；首行没有前收盘价，退化为 high - low。"""
    prev_close = df["close"].shift(1)
    ranges = pd.concat(
        [
            df["high"] - df["low"],
            (df["high"] - prev_close).abs(),
            (df["low"] - prev_close).abs(),
        ],
        axis=1,
    )
    return ranges.max(axis=1).to_numpy(dtype=float)


def wilder_atr(tr: np.ndarray, period: int) -> np.ndarray:
    out = np.full(len(tr), np.nan)
    if len(tr) < period:
        return out
    out[period - 1] = tr[:period].mean()
    for i in range(period, len(tr)):
        out[i] = (out[i - 1] * (period - 1) + tr[i]) / period
    return out


@dataclass(frozen=True)
class ATRFactor:
    period: int = 16
    out_col: str | None = None
    name: str = "atr"
    params: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if self.period <= 0:
            raise ValueError("ATR period must be > 0")
        object.__setattr__(self, "params", {"period": self.period, "out_col": self.out_col})

    def compute(self, df: pd.DataFrame) -> pd.DataFrame:
        missing = [c for c in ("high", "low", "close") if c not in df.columns]
        if missing:
            raise ValueError(f"ATRFactor requires columns: {missing}")
        df[self.out_col or f"atr_{self.period}"] = wilder_atr(true_range_series(df), self.period)
        return df
