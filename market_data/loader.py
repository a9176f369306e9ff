"""历史数据加载与下载。

支持从 CSV 读取 Candle，并在需要时通过 Binance REST 补齐 K 线。
CSV 列：symbol,open,high,low,close,volume,start_ts,end_ts；
也接受只有 `date`（或 `timestamp`）一列时间的简化格式，此时 end_ts 由周期推算。
"""

from __future__ import annotations

import csv
import re
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Iterator, List, Sequence

import pandas as pd
import requests

from shared.models.models import Candle
from shared.utils.logging import setup_logger

_LOGGER = setup_logger("data-loader")

SPOT_KLINES_URL = "https://api.binance.com/api/v3/klines"
FUTURES_KLINES_URL = "https://fapi.binance.com/fapi/v1/klines"
CSV_COLUMNS = ["symbol", "open", "high", "low", "close", "volume", "start_ts", "end_ts"]

_INTERVAL_UNITS = {"s": "seconds", "m": "minutes", "h": "hours", "d": "days", "w": "weeks"}


def interval_to_timedelta(interval: str) -> timedelta:
    """"5m" / "1h" / "1d" -> timedelta。"""
    match = re.fullmatch(r"(\d+)([smhdw])", interval.strip())
    if not match:
        raise ValueError(f"Unsupported interval: {interval}")
    return timedelta(**{_INTERVAL_UNITS[match.group(2)]: int(match.group(1))})


def _parse_dt(val: Any) -> datetime:
    text = str(val).strip()
    try:
        if text.isdigit():
            ts_int = int(text)
            if ts_int > 1e12:
                return datetime.fromtimestamp(ts_int / 1000, tz=timezone.utc)
            return datetime.fromtimestamp(ts_int, tz=timezone.utc)
        dt = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError as exc:
        raise ValueError(f"Invalid datetime value: {val}") from exc
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def kline_row_to_candle(symbol: str, item: Sequence[Any], now: datetime | None = None) -> Candle:
    """Binance REST kline 数组 -> Candle。

    收盘时间晚于 `now` 的最后一根视为未收盘（is_final=False）。
    """
    start_ts = datetime.fromtimestamp(int(item[0]) / 1000, tz=timezone.utc)
    end_ts = datetime.fromtimestamp(int(item[6]) / 1000, tz=timezone.utc)
    return Candle(
        symbol=symbol,
        open=float(item[1]),
        high=float(item[2]),
        low=float(item[3]),
        close=float(item[4]),
        volume=float(item[5]),
        start_ts=start_ts,
        end_ts=end_ts,
        is_final=now is None or end_ts < now,
    )


def load_candles_from_csv(
    path: str | Path,
    symbol: str | None = None,
    interval: str | None = None,
) -> Iterator[Candle]:
    """从 CSV 读取 Candle 流。

    Parameters
    ----------
    path:
        CSV 文件路径。
    symbol:
        CSV 无 symbol 列时使用的交易对名称。
    interval:
        CSV 无 end_ts 列时用于推算收盘时间的周期（如 "5m"）。
    """
    step = interval_to_timedelta(interval) if interval else timedelta(0)
    with Path(path).open("r", newline="", encoding="utf-8") as f:
        reader = csv.DictReader(f)
        for row in reader:
            raw_start = row.get("start_ts") or row.get("date") or row.get("timestamp")
            if raw_start is None:
                raise ValueError(f"{path}: row has no start_ts/date/timestamp column")
            start_ts = _parse_dt(raw_start)
            end_ts = _parse_dt(row["end_ts"]) if row.get("end_ts") else start_ts + step
            yield Candle(
                symbol=row.get("symbol") or symbol or "",
                open=float(row["open"]),
                high=float(row["high"]),
                low=float(row["low"]),
                close=float(row["close"]),
                volume=float(row.get("volume", 0) or 0),
                start_ts=start_ts,
                end_ts=end_ts,
            )


def candles_to_frame(candles: Sequence[Candle]) -> pd.DataFrame:
    df = pd.DataFrame(
        [
            {
                "symbol": c.symbol,
                "open": c.open,
                "high": c.high,
                "low": c.low,
                "close": c.close,
                "volume": c.volume,
                "start_ts": c.start_ts,
                "end_ts": c.end_ts,
            }
            for c in candles
        ],
        columns=CSV_COLUMNS,
    )
    return df.sort_values("start_ts").reset_index(drop=True) if not df.empty else df


class HistoricalDataLoader:
    """历史 K 线数据管理器。"""

    def __init__(self, data_dir: str = "dataset/history", market: str = "spot", timeout: float = 10.0):
        self.data_dir = Path(data_dir)
        self.market = market
        self.timeout = timeout

    @property
    def klines_url(self) -> str:
        return FUTURES_KLINES_URL if self.market == "futures" else SPOT_KLINES_URL

    def klines_path(self, symbol: str, interval: str) -> Path:
        return self.data_dir / f"{symbol}_{interval}.csv"

    def _file_time_range(self, path: Path) -> tuple[datetime | None, datetime | None]:
        if not path.exists():
            return None, None
        df = pd.read_csv(path, usecols=["start_ts", "end_ts"])
        if df.empty:
            return None, None
        starts = pd.to_datetime(df["start_ts"], utc=True)
        ends = pd.to_datetime(df["end_ts"], utc=True)
        return starts.min().to_pydatetime(), ends.max().to_pydatetime()

    def load_klines(
        self,
        symbol: str,
        interval: str,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> List[Candle]:
        """从 CSV 读取一段时间的 K 线（按 start_ts 升序）。"""
        path = self.klines_path(symbol, interval)
        if not path.exists():
            raise FileNotFoundError(f"Kline file not found: {path}")
        candles = [
            c
            for c in load_candles_from_csv(path, symbol=symbol, interval=interval)
            if (start is None or c.end_ts >= start) and (end is None or c.start_ts <= end)
        ]
        candles.sort(key=lambda c: c.start_ts)
        return candles

    def load_klines_for_backtest(
        self,
        symbol: str,
        interval: str,
        start: datetime | None,
        end: datetime | None,
        auto_download: bool = False,
        force_download: bool = False,
    ) -> List[Candle]:
        """加载回测区间所需 K 线，并可自动补齐缺失数据（需要给出 start/end）。"""
        path = self.klines_path(symbol, interval)
        if (auto_download or force_download) and (start is None or end is None):
            raise ValueError("auto_download requires backtest.start and backtest.end")
        if force_download or (auto_download and not path.exists()):
            self.download_binance_klines(symbol, interval, start, end, path, overwrite=True)  # type: ignore[arg-type]
        elif auto_download:
            min_start, max_end = self._file_time_range(path)
            if min_start is None or max_end is None:
                self.download_binance_klines(symbol, interval, start, end, path, overwrite=True)  # type: ignore[arg-type]
            else:
                if min_start > start:  # type: ignore[operator]
                    self.download_binance_klines(symbol, interval, start, min_start, path)  # type: ignore[arg-type]
                if max_end < end:  # type: ignore[operator]
                    self.download_binance_klines(symbol, interval, max_end, end, path)  # type: ignore[arg-type]
        return self.load_klines(symbol, interval, start, end)

    def fetch_klines(self, symbol: str, interval: str, start: datetime, end: datetime) -> List[Candle]:
        """分批（每批 1000 根）拉取 [start, end] 区间的 K 线。"""
        start_ms = int(start.timestamp() * 1000)
        end_ms = int(end.timestamp() * 1000)
        now = datetime.now(timezone.utc)
        candles: list[Candle] = []
        cur = start_ms
        while cur < end_ms:
            params = {
                "symbol": symbol.upper(),
                "interval": interval,
                "startTime": cur,
                "endTime": end_ms,
                "limit": 1000,
            }
            resp = requests.get(self.klines_url, params=params, timeout=self.timeout)
            resp.raise_for_status()
            data = resp.json()
            if not data:
                break
            candles.extend(kline_row_to_candle(symbol, item, now) for item in data)
            cur = int(data[-1][6]) + 1
        _LOGGER.info(f"fetched {len(candles)} klines {symbol} {interval} {start} -> {end}")
        return candles

    def download_binance_klines(
        self,
        symbol: str,
        interval: str,
        start: datetime,
        end: datetime,
        dest_path: Path,
        overwrite: bool = False,
    ) -> None:
        """从 Binance REST 拉取历史 K 线并与已有 CSV 合并（按 start_ts 去重，只保留已收盘 K 线）。"""
        fetched = [c for c in self.fetch_klines(symbol, interval, start, end) if c.is_final]
        existing: list[Candle] = []
        if dest_path.exists() and not overwrite:
            existing = list(load_candles_from_csv(dest_path, symbol=symbol, interval=interval))

        dedup = {c.start_ts: c for c in existing + fetched}
        df = candles_to_frame(list(dedup.values()))
        if not df.empty:
            df["start_ts"] = df["start_ts"].map(lambda ts: ts.isoformat())
            df["end_ts"] = df["end_ts"].map(lambda ts: ts.isoformat())
        dest_path.parent.mkdir(parents=True, exist_ok=True)
        df.to_csv(dest_path, index=False)
