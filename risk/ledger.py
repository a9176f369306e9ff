"""资金账本（不可变值对象）。

每次开仓/平仓都由 `with_risk` / `with_close` 生成新账本，调用方整体替换，
因此账本要么完整更新、要么保持原样。
"""

from __future__ import annotations

from dataclasses import dataclass, replace

from shared.models.models import Side


@dataclass(frozen=True)
class CapitalLedger:
    initial_capital: float
    current_capital: float
    total_profit_loss: float = 0.0
    total_profit: float = 0.0
    total_loss: float = 0.0
    total_risked_amount: float = 0.0
    long_wins: int = 0
    long_losses: int = 0
    short_wins: int = 0
    short_losses: int = 0
    long_target_hits: int = 0
    short_target_hits: int = 0

    @classmethod
    def start(cls, initial_capital: float) -> "CapitalLedger":
        return cls(initial_capital=initial_capital, current_capital=initial_capital)

    @property
    def long_trades(self) -> int:
        return self.long_wins + self.long_losses

    @property
    def short_trades(self) -> int:
        return self.short_wins + self.short_losses

    @property
    def total_trades(self) -> int:
        return self.long_trades + self.short_trades

    @property
    def target_hits(self) -> int:
        return self.long_target_hits + self.short_target_hits

    def with_risk(self, risk_amount: float) -> "CapitalLedger":
        """开仓：累计已承担风险金额。"""
        return replace(self, total_risked_amount=self.total_risked_amount + risk_amount)

    def with_close(self, side: Side, pnl: float, is_win: bool, is_target_hit: bool) -> "CapitalLedger":
        """平仓：资金、盈亏汇总与分方向计数一次性更新。"""
        changes: dict[str, float | int] = {
            "current_capital": self.current_capital + pnl,
            "total_profit_loss": self.total_profit_loss + pnl,
        }
        if is_win:
            changes["total_profit"] = self.total_profit + pnl
        else:
            changes["total_loss"] = self.total_loss + abs(pnl)

        if side is Side.LONG:
            if is_win:
                changes["long_wins"] = self.long_wins + 1
            else:
                changes["long_losses"] = self.long_losses + 1
            if is_target_hit:
                changes["long_target_hits"] = self.long_target_hits + 1
        else:
            if is_win:
                changes["short_wins"] = self.short_wins + 1
            else:
                changes["short_losses"] = self.short_losses + 1
            if is_target_hit:
                changes["short_target_hits"] = self.short_target_hits + 1
        return replace(self, **changes)
