"""Trend Sniper 统一命令行入口。

子命令：

- `runner`：实时/干跑主循环。每个 symbol 一个实例，订阅已收盘 K 线。
- `backtest`：单次回测。回放历史 K 线并输出统计与产物。
- `indicators`：把指标与信号列批量算到 CSV 上，便于核对。
- `test`：运行 pytest。
"""

from __future__ import annotations

import argparse
from dataclasses import dataclass
from typing import Any

import pandas as pd

from algo.factors.registry import apply_factors, build_factors
from engine.backtest_engine import BacktestEngine
from engine.trading_engine import TradingEngine
from market_data.loader import candles_to_frame, load_candles_from_csv
from shared.config.config_loader import load_config
from shared.config.schema import BacktestConfig
from utils.report import print_summary


@dataclass
class CliArgs:
    """命令行参数。

    config: 配置文件路径
    task: runner / backtest / indicators / test
    """
    config: str
    task: str
    max_candles: int | None = None  # runner：每个实例处理多少根 K 线后退出
    data: str | None = None         # backtest/indicators：覆盖数据 CSV
    output_dir: str | None = None   # backtest：产物目录
    out: str | None = None          # indicators：输出 CSV


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="sniperalgo", description="Trend Sniper 统一入口")

    def _add_config_arg(p: argparse.ArgumentParser, *, default: Any) -> None:
        p.add_argument("--config", default=default, help="配置文件路径 (默认: config/config.yml)")

    _add_config_arg(parser, default="config/config.yml")
    sub = parser.add_subparsers(dest="task")

    p_runner = sub.add_parser("runner", help="实时/干跑主循环")
    _add_config_arg(p_runner, default=argparse.SUPPRESS)
    p_runner.add_argument("--max-candles", type=int, default=None, help="每个实例处理多少根已收盘 K 线后退出")

    p_backtest = sub.add_parser("backtest", help="单次回测")
    _add_config_arg(p_backtest, default=argparse.SUPPRESS)
    p_backtest.add_argument("--data", type=str, default=None, help="K 线 CSV（覆盖 backtest.data_path）")
    p_backtest.add_argument("--output-dir", type=str, default=None, help="产物目录（trades/equity/summary）")

    p_ind = sub.add_parser("indicators", help="批量计算指标列")
    _add_config_arg(p_ind, default=argparse.SUPPRESS)
    p_ind.add_argument("--data", type=str, required=True, help="K 线 CSV")
    p_ind.add_argument("--out", type=str, default=None, help="输出 CSV；不传则打印末尾几行")

    sub.add_parser("test", help="运行 pytest")
    return parser


def parse_args(argv: list[str] | None = None) -> CliArgs:
    ns = build_parser().parse_args(argv)
    return CliArgs(
        config=str(getattr(ns, "config", "config/config.yml")),
        task=ns.task or "runner",
        max_candles=getattr(ns, "max_candles", None),
        data=getattr(ns, "data", None),
        output_dir=getattr(ns, "output_dir", None),
        out=getattr(ns, "out", None),
    )


def run_backtest(args: CliArgs) -> dict[str, Any]:
    cfg = load_config(args.config)
    if args.data:
        bt = cfg.backtest or BacktestConfig()
        cfg = cfg.model_copy(update={"backtest": bt.model_copy(update={"data_path": args.data})})
    result = BacktestEngine(cfg_obj=cfg, artifacts_dir=args.output_dir).run()
    print_summary(result.summary, title=f"Backtest {result.summary['symbol']} {result.summary['interval']}")
    return result.summary


def run_indicators(args: CliArgs) -> pd.DataFrame:
    cfg = load_config(args.config)
    candles = list(load_candles_from_csv(args.data, symbol=cfg.symbol, interval=cfg.timeframe))
    params = cfg.strategy.model_dump(include={"length", "period", "multiplier", "fast_multiplier", "scalp_period"})
    df = apply_factors(candles_to_frame(candles), build_factors([{"name": "trend_sniper", **params}]))
    if args.out:
        df.to_csv(args.out, index=False)
    else:
        print(df.tail(10).to_string())
    return df


def main(argv: list[str] | None = None) -> Any:
    args = parse_args(argv)

    if args.task == "runner":
        result = TradingEngine(cfg_path=args.config, max_candles=args.max_candles).run()
        for key, summary in result.summary.items():
            print_summary(summary, title=key)
        return result.summary

    if args.task == "backtest":
        return run_backtest(args)

    if args.task == "indicators":
        return run_indicators(args)

    if args.task == "test":
        import pytest

        return int(pytest.main(["-q"]))

    raise ValueError(f"Unknown task: {args.task}")


def cli(argv: list[str] | None = None) -> int:
    """console script 入口：main() 返回的统计汇总不作为退出码。"""
    result = main(argv)
    return result if isinstance(result, int) else 0


if __name__ == "__main__":
    raise SystemExit(cli())
