"""绩效统计：从资金账本、成交记录与权益曲线派生，不修改任何状态。"""

from __future__ import annotations

import math
from datetime import datetime
from statistics import mean, median, pstdev
from typing import Any, Sequence

from risk.ledger import CapitalLedger
from shared.models.models import Side, TradeRecord


def _ratio(numerator: float, denominator: float) -> float:
    return numerator / denominator if denominator else 0.0


def estimate_steps_per_year(equity_curve: Sequence[tuple[datetime, float]]) -> float:
    """按权益曲线相邻点时间间隔的中位数估计每年步数（加密市场按 365 天 7x24）。"""
    deltas = []
    for i in range(1, len(equity_curve)):
        dt = (equity_curve[i][0] - equity_curve[i - 1][0]).total_seconds()
        if dt > 0:
            deltas.append(dt)
    if not deltas:
        return 365.0
    return 365 * 86400 / median(deltas)


def max_drawdown_pct(equity_curve: Sequence[tuple[datetime, float]]) -> float:
    """最大回撤（百分比，正数）：max((peak - equity) / peak * 100)。"""
    if not equity_curve:
        return 0.0
    peak = equity_curve[0][1]
    max_dd = 0.0
    for _, eq in equity_curve:
        peak = max(peak, eq)
        if peak > 0:
            max_dd = max(max_dd, (peak - eq) / peak * 100)
    return max_dd


def sharpe_ratio(equity_curve: Sequence[tuple[datetime, float]], steps_per_year: float | None = None) -> float:
    """逐步权益收益率的 mean / pstdev，乘以 sqrt(steps_per_year) 年化。"""
    returns = []
    for i in range(1, len(equity_curve)):
        prev = equity_curve[i - 1][1]
        if prev > 0:
            returns.append(equity_curve[i][1] / prev - 1)
    if len(returns) < 2:
        return 0.0
    sigma = pstdev(returns)
    if not sigma:
        return 0.0
    if steps_per_year is None:
        steps_per_year = estimate_steps_per_year(equity_curve)
    return mean(returns) / sigma * math.sqrt(steps_per_year)


class StatisticsAggregator:
    """策略统计。

    Parameters
    ----------
    ledger:
        当前资金账本。
    trades:
        已完成交易（按平仓顺序）。
    equity_curve:
        `(ts, capital)` 序列，用于回撤与 Sharpe。
    steps_per_year:
        Sharpe 年化步数；None 时从权益曲线时间间隔估计。
    """

    def __init__(
        self,
        ledger: CapitalLedger,
        trades: Sequence[TradeRecord] = (),
        equity_curve: Sequence[tuple[datetime, float]] = (),
        steps_per_year: float | None = None,
    ):
        self.ledger = ledger
        self.trades = list(trades)
        self.equity_curve = sorted(equity_curve, key=lambda x: x[0])
        self.steps_per_year = steps_per_year

    def win_rate(self, side: Side | None = None) -> float:
        """胜率（0~1）；side 为 None 时统计全部交易。"""
        lg = self.ledger
        if side is Side.LONG:
            return _ratio(lg.long_wins, lg.long_trades)
        if side is Side.SHORT:
            return _ratio(lg.short_wins, lg.short_trades)
        return _ratio(lg.long_wins + lg.short_wins, lg.total_trades)

    def efficiency(self) -> float:
        """总盈亏 / 累计风险金额 * 100。"""
        return _ratio(self.ledger.total_profit_loss, self.ledger.total_risked_amount) * 100

    def profit_factor(self) -> float:
        if self.ledger.total_loss == 0:
            return self.ledger.total_profit
        return self.ledger.total_profit / self.ledger.total_loss

    def percent_gain(self) -> float:
        lg = self.ledger
        return _ratio(lg.current_capital - lg.initial_capital, lg.initial_capital) * 100

    def max_drawdown(self) -> float:
        return max_drawdown_pct(self.equity_curve)

    def sharpe(self) -> float:
        return sharpe_ratio(self.equity_curve, self.steps_per_year)

    def summary(self) -> dict[str, Any]:
        lg = self.ledger
        wins = [t.pnl for t in self.trades if t.is_win]
        losses = [t.pnl for t in self.trades if not t.is_win]
        return {
            "total_trades": lg.total_trades,
            "long_trades": lg.long_trades,
            "short_trades": lg.short_trades,
            "long_wins": lg.long_wins,
            "long_losses": lg.long_losses,
            "short_wins": lg.short_wins,
            "short_losses": lg.short_losses,
            "long_target_hits": lg.long_target_hits,
            "short_target_hits": lg.short_target_hits,
            "win_rate": self.win_rate(),
            "long_win_rate": self.win_rate(Side.LONG),
            "short_win_rate": self.win_rate(Side.SHORT),
            "initial_capital": lg.initial_capital,
            "current_capital": lg.current_capital,
            "total_profit_loss": lg.total_profit_loss,
            "total_profit": lg.total_profit,
            "total_loss": lg.total_loss,
            "total_risked_amount": lg.total_risked_amount,
            "efficiency": self.efficiency(),
            "profit_factor": self.profit_factor(),
            "percent_gain": self.percent_gain(),
            "avg_win": mean(wins) if wins else 0.0,
            "avg_loss": -mean(losses) if losses else 0.0,
            "expectancy": mean(t.pnl for t in self.trades) if self.trades else 0.0,
            "max_drawdown": self.max_drawdown(),
            "sharpe": self.sharpe(),
        }
