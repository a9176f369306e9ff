"""Sizer 抽象：根据当前资金给出单笔风险金额。"""

from __future__ import annotations

from typing import Protocol


class Sizer(Protocol):
    def risk_amount(self, *, capital: float) -> float: ...
