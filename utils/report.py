"""控制台统计报告（rich 表格）。"""

from __future__ import annotations

from typing import Any, Mapping

from rich import box
from rich.console import Console
from rich.table import Table

# (字段, 展示名, 格式)
_ROWS: tuple[tuple[str, str, str], ...] = (
    ("total_trades", "Total trades", "{:d}"),
    ("long_trades", "Long trades", "{:d}"),
    ("short_trades", "Short trades", "{:d}"),
    ("long_target_hits", "Long target hits", "{:d}"),
    ("short_target_hits", "Short target hits", "{:d}"),
    ("win_rate", "Win rate", "{:.2%}"),
    ("long_win_rate", "Long win rate", "{:.2%}"),
    ("short_win_rate", "Short win rate", "{:.2%}"),
    ("initial_capital", "Initial capital", "{:.2f}"),
    ("current_capital", "Current capital", "{:.2f}"),
    ("total_profit_loss", "Total P/L", "{:+.2f}"),
    ("percent_gain", "Gain", "{:+.2f}%"),
    ("efficiency", "Efficiency", "{:.2f}%"),
    ("profit_factor", "Profit factor", "{:.2f}"),
    ("max_drawdown", "Max drawdown", "{:.2f}%"),
    ("sharpe", "Sharpe", "{:.2f}"),
)


def build_stats_table(summary: Mapping[str, Any], title: str = "Trend Sniper") -> Table:
    table = Table(title=title, box=box.ROUNDED)
    table.add_column("Metric", style="cyan", no_wrap=True)
    table.add_column("Value", justify="right")
    for key, label, fmt in _ROWS:
        if key not in summary:
            continue
        value = summary[key]
        text = fmt.format(value)
        if key in ("total_profit_loss", "percent_gain"):
            text = f"[green]{text}[/green]" if value >= 0 else f"[red]{text}[/red]"
        table.add_row(label, text)
    return table


def print_summary(summary: Mapping[str, Any], title: str = "Trend Sniper", console: Console | None = None) -> None:
    (console or Console()).print(build_stats_table(summary, title))
