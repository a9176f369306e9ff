"""批量指标因子接口。"""

from __future__ import annotations

from typing import Any, Mapping, Protocol

import pandas as pd


class Factor(Protocol):
    name: str
    params: Mapping[str, Any]

    def compute(self, df: pd.DataFrame) -> pd.DataFrame:
        """就地追加指标列并返回同一个 DataFrame（需含 high/low/close，部分因子还需 open）。"""
        ...
