"""单次回测引擎（BacktestEngine）。

流程：配置 → K 线（CSV/自动下载）→ 逐根回放管线 → 统计 → 产物（trades/equity/summary）。
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Sequence

import pandas as pd

from engine.base_engine import BaseEngine, EngineResult
from engine.events import Event, PositionClosedEvent, SignalEvent, TakeProfitHitEvent
from engine.signal_pipeline import TrendSniperPipeline
from market_data.loader import HistoricalDataLoader, load_candles_from_csv
from shared.config.config_loader import load_config
from shared.config.schema import BacktestConfig, MainConfig
from shared.models.models import Candle, CandleValidationError, TradeRecord
from shared.utils.logging import setup_logger
from utils.metrics import StatisticsAggregator


def parse_iso(val: str | None) -> datetime | None:
    """解析 ISO 时间字符串为 UTC datetime；None 原样返回。"""
    if val is None:
        return None
    dt = datetime.fromisoformat(val.replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _append_equity_point(equity_curve: list[tuple[datetime, float]], ts: datetime, equity: float) -> None:
    """同一 ts 重复写入时覆盖最后一个点。"""
    if equity_curve and equity_curve[-1][0] == ts:
        equity_curve[-1] = (ts, equity)
    else:
        equity_curve.append((ts, equity))


def _export_equity_csv(equity_curve: list[tuple[datetime, float]], path: Path) -> None:
    """导出权益曲线：ts, equity, drawdown, drawdown_pct（百分比）。"""
    path.parent.mkdir(parents=True, exist_ok=True)
    rows = []
    peak = None
    for ts, eq in equity_curve:
        peak = eq if peak is None else max(peak, eq)
        dd = peak - eq
        rows.append(
            {
                "ts": ts.isoformat(),
                "equity": eq,
                "drawdown": dd,
                "drawdown_pct": dd / peak * 100 if peak > 0 else 0.0,
            }
        )
    pd.DataFrame(rows, columns=["ts", "equity", "drawdown", "drawdown_pct"]).to_csv(path, index=False)


def _export_trades_csv(trades: Sequence[TradeRecord], path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    rows = [{"trade_number": i, **t.to_dict()} for i, t in enumerate(trades, start=1)]
    pd.DataFrame(rows).to_csv(path, index=False)


class BacktestEngine(BaseEngine):
    """单次回测引擎。

    Parameters
    ----------
    cfg_path:
        配置文件路径（未传 cfg_obj 时读取）。
    cfg_obj:
        已解析的 MainConfig。
    candles:
        直接给定的 K 线；不传则按 backtest 配置从 CSV 加载。
    artifacts_dir:
        产物目录；优先于 `backtest.output_dir`，两者都为空时不落盘。
    """

    def __init__(
        self,
        *,
        cfg_path: str = "config/config.yml",
        cfg_obj: MainConfig | None = None,
        candles: Sequence[Candle] | None = None,
        artifacts_dir: str | Path | None = None,
    ):
        self._cfg_path = cfg_path
        self._cfg_obj = cfg_obj
        self._candles = list(candles) if candles is not None else None
        self._artifacts_dir = artifacts_dir
        self.logger = setup_logger("backtest")

        self.pipeline: TrendSniperPipeline | None = None
        self.events: list[Event] = []

    def run(self) -> EngineResult:
        cfg = self._load_cfg()
        bt_cfg = cfg.backtest or BacktestConfig()
        symbol = bt_cfg.symbol or cfg.symbol

        candles = sorted(self._load_candles(cfg, bt_cfg), key=lambda c: c.start_ts)
        pipeline = TrendSniperPipeline(cfg.strategy, symbol=symbol)
        pipeline.bus.subscribe(self.events.append)
        self.pipeline = pipeline

        skipped = 0
        ignored = 0
        for candle in candles:
            try:
                step = pipeline.on_candle(candle)
            except CandleValidationError as exc:
                skipped += 1
                self.logger.warning(f"skip invalid candle: {exc}")
                continue
            if step.status in ("duplicate", "out_of_order"):
                ignored += 1

        if bt_cfg.flatten_on_end and candles and pipeline.positions.position is not None:
            last = candles[-1]
            pipeline.close_manual(last.close, last.start_ts)
            _append_equity_point(pipeline.equity_curve, last.start_ts, pipeline.positions.ledger.current_capital)

        stats = StatisticsAggregator(
            pipeline.positions.ledger,
            pipeline.positions.trades,
            pipeline.equity_curve,
            steps_per_year=bt_cfg.steps_per_year,
        )
        summary: dict[str, Any] = stats.summary()
        open_pos = pipeline.positions.position
        summary.update(
            {
                "symbol": symbol,
                "interval": bt_cfg.interval or cfg.timeframe,
                "n_bars": len(candles),
                "skipped_invalid": skipped,
                "ignored_duplicates": ignored,
                "signals": sum(isinstance(e, SignalEvent) for e in self.events),
                "target_hit_events": sum(isinstance(e, TakeProfitHitEvent) for e in self.events),
                "closed_events": sum(isinstance(e, PositionClosedEvent) for e in self.events),
                "open_position": open_pos.side.value if open_pos is not None else None,
                "config": cfg.strategy.model_dump(),
            }
        )

        artifacts = self._export_artifacts(bt_cfg, pipeline=pipeline, summary=summary)
        self.logger.info(
            f"Backtest {symbol}: trades={summary['total_trades']} pnl={summary['total_profit_loss']:.4f} "
            f"win_rate={summary['win_rate']:.2%} efficiency={summary['efficiency']:.2f}%"
        )
        return EngineResult(summary=summary, artifacts=artifacts)

    def _load_cfg(self) -> MainConfig:
        return self._cfg_obj or load_config(self._cfg_path, load_env=False, expand_env=False)

    def _load_candles(self, cfg: MainConfig, bt_cfg: BacktestConfig) -> list[Candle]:
        if self._candles is not None:
            return self._candles
        symbol = bt_cfg.symbol or cfg.symbol
        interval = bt_cfg.interval or cfg.timeframe
        if bt_cfg.data_path:
            path = Path(bt_cfg.data_path)
            if not path.exists():
                raise FileNotFoundError(f"Kline file not found: {path}")
            return list(load_candles_from_csv(path, symbol=symbol, interval=interval))
        loader = HistoricalDataLoader(bt_cfg.data_dir, market=cfg.exchange.market)
        return loader.load_klines_for_backtest(
            symbol=symbol,
            interval=interval,
            start=parse_iso(bt_cfg.start),
            end=parse_iso(bt_cfg.end),
            auto_download=bt_cfg.auto_download,
            force_download=bt_cfg.force_download,
        )

    def _export_artifacts(
        self,
        bt_cfg: BacktestConfig,
        *,
        pipeline: TrendSniperPipeline,
        summary: dict[str, Any],
    ) -> dict[str, Any]:
        out = self._artifacts_dir or bt_cfg.output_dir
        artifacts: dict[str, Any] = {
            "trades": list(pipeline.positions.trades),
            "equity_curve": list(pipeline.equity_curve),
        }
        if out is None:
            return artifacts

        out_dir = Path(out)
        out_dir.mkdir(parents=True, exist_ok=True)
        trades_path = out_dir / "trades.csv"
        equity_path = out_dir / "equity.csv"
        summary_path = out_dir / "summary.json"
        _export_trades_csv(pipeline.positions.trades, trades_path)
        _export_equity_csv(pipeline.equity_curve, equity_path)
        summary_path.write_text(json.dumps(summary, indent=2, ensure_ascii=False, default=str), encoding="utf-8")
        artifacts.update(
            {
                "trades_csv": str(trades_path),
                "equity_csv": str(equity_path),
                "summary_json": str(summary_path),
            }
        )
        return artifacts
