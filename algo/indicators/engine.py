"""趋势狙击指标引擎（增量版）。

每根已收盘 K 线按顺序更新：
1. 真实波幅 TR 与 ATR（前 `period` 根取简单均值作为种子，之后 Wilder 平滑）；
2. 自适应基线 a：效率比 lv = |SMA(close) - SMA(open)| / (SMA(high) - SMA(low))，
   a = lv * close + (1 - lv) * a_prev；
3. 慢速 / 快速跟踪止损线（ATR 倍数不同，规则相同，状态独立）；
4. scalp 线：止损线与基线中点的 SMA。

所有窗口均为定长环形缓冲，单根 K 线的更新成本与历史长度无关。
"""

from __future__ import annotations

from shared.models.models import Candle, IndicatorSnapshot, IndicatorState
from shared.config.schema import SniperConfig
from market_data.window import PriceWindow, RollingWindow

EPS = 1e-8


def true_range(high: float, low: float, prev_close: float | None) -> float:
    if prev_close is None:
        return high - low
    return max(high - low, abs(high - prev_close), abs(low - prev_close))


def efficiency_ratio(sma_open: float, sma_high: float, sma_low: float, sma_close: float) -> float:
    """基线平滑系数 lv；高低价均值区间过窄时返回 0（基线保持不动）。"""
    spread = sma_high - sma_low
    if abs(spread) <= EPS:
        return 0.0
    return abs(sma_close - sma_open) / spread


def trail_stop(prev_line: float | None, close: float, prev_close: float | None, offset: float) -> float:
    """跟踪止损线单步更新。

    Parameters
    ----------
    prev_line:
        上一根的止损线；None 表示首次计算，此时上一根止损线与上一根收盘价都按当前收盘价处理，
        结果落在 `close + offset`。
    close, prev_close:
        当前 / 上一根收盘价。
    offset:
        ATR * 倍数。

    Returns
    -------
    float
        同侧时只向有利方向移动（多头只升、空头只降）；价格穿越止损线时翻转到另一侧。
    """
    if prev_line is None:
        prev_line = close
        prev_close = close
    elif prev_close is None:
        prev_close = close

    if close > prev_line and prev_close > prev_line:
        return max(prev_line, close - offset)
    if close < prev_line and prev_close < prev_line:
        return min(prev_line, close + offset)
    if close > prev_line:
        return close - offset
    return close + offset


def scalp_midpoint(line: float, baseline: float) -> float:
    if line > baseline:
        return line - (line - baseline) / 2
    return line + (baseline - line) / 2


class IndicatorEngine:
    """按 K 线增量计算 ATR / 基线 / 跟踪止损 / scalp 线。

    `update()` 在指标未全部就绪前返回 None（NotReady），之后每根返回一个完整快照。
    调用方负责保证 K 线按时间递增且不重复。
    """

    def __init__(self, cfg: SniperConfig):
        self.cfg = cfg
        self.window = PriceWindow(max(cfg.length, cfg.period, cfg.scalp_period))
        self.state = IndicatorState()
        self.bars_seen = 0

        self._opens = RollingWindow(cfg.length)
        self._highs = RollingWindow(cfg.length)
        self._lows = RollingWindow(cfg.length)
        self._closes = RollingWindow(cfg.length)
        self._scalp_mid = RollingWindow(cfg.scalp_period)
        self._tr_seed = RollingWindow(cfg.period)

    @property
    def is_ready(self) -> bool:
        st = self.state
        return None not in (st.atr, st.baseline, st.trailing_stop, st.trailing_stop_fast, st.scalp_line)

    def update(self, candle: Candle) -> IndicatorSnapshot | None:
        prev = self.window.last
        prev_close = prev.close if prev is not None else None
        self.window.append(candle)
        self.bars_seen += 1

        st = self.state
        self._update_atr(true_range(candle.high, candle.low, prev_close))
        self._update_baseline(candle)

        if st.atr is not None and st.baseline is not None:
            st.trailing_stop = trail_stop(
                st.trailing_stop, candle.close, prev_close, self.cfg.multiplier * st.atr
            )
            st.trailing_stop_fast = trail_stop(
                st.trailing_stop_fast, candle.close, prev_close, self.cfg.fast_multiplier * st.atr
            )
            self._scalp_mid.push(scalp_midpoint(st.trailing_stop, st.baseline))
            st.scalp_line = self._scalp_mid.mean

        if not self.is_ready:
            return None
        return IndicatorSnapshot(
            ts=candle.start_ts,
            close=candle.close,
            atr=st.atr,
            baseline=st.baseline,
            trailing_stop=st.trailing_stop,
            trailing_stop_fast=st.trailing_stop_fast,
            scalp_line=st.scalp_line,
        )  # type: ignore[arg-type]

    def _update_atr(self, tr: float) -> None:
        st = self.state
        period = self.cfg.period
        if st.atr is not None:
            st.atr = (st.atr * (period - 1) + tr) / period
            return
        self._tr_seed.push(tr)
        if self._tr_seed.full:
            st.atr = self._tr_seed.mean

    def _update_baseline(self, candle: Candle) -> None:
        self._opens.push(candle.open)
        self._highs.push(candle.high)
        self._lows.push(candle.low)
        self._closes.push(candle.close)
        if not self._closes.full:
            return

        st = self.state
        if st.baseline is None:
            st.baseline = candle.close
            return
        lv = efficiency_ratio(self._opens.mean, self._highs.mean, self._lows.mean, self._closes.mean)  # type: ignore[arg-type]
        st.baseline = lv * candle.close + (1 - lv) * st.baseline
