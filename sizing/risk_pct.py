"""按当前资金百分比计算单笔风险：capital * risk_pct / 100（随盈亏复利）。"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class RiskPctSizer:
    risk_pct: float

    def __post_init__(self):
        if not 0 < self.risk_pct <= 100:
            raise ValueError(f"risk_pct must be in (0, 100], got {self.risk_pct}")

    def risk_amount(self, *, capital: float) -> float:
        if capital <= 0:
            return 0.0
        return capital * self.risk_pct / 100.0
