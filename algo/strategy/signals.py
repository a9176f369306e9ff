"""基线 / 慢速跟踪止损线交叉信号。"""

from __future__ import annotations

from shared.models.models import IndicatorSnapshot, Side


def detect_signal(current: IndicatorSnapshot | None, previous: IndicatorSnapshot | None) -> Side | None:
    """
    根据相邻两根快照判断方向信号。

    - 多头：上一根 a <= 止损线，且当前 a > 止损线（上穿）
    - 空头：上一根 a >= 止损线，且当前 a < 止损线（下穿）

    任一快照缺失（指标未就绪）时返回 None；两个条件互斥，每根最多一个信号。
    """
    if current is None or previous is None:
        return None
    if previous.baseline <= previous.trailing_stop and current.baseline > current.trailing_stop:
        return Side.LONG
    if previous.baseline >= previous.trailing_stop and current.baseline < current.trailing_stop:
        return Side.SHORT
    return None


def reference_stop(snapshot: IndicatorSnapshot, use_scalp_mode: bool) -> float:
    """开仓参考止损：scalp 模式用 scalp 线，否则用慢速跟踪止损线。"""
    return snapshot.scalp_line if use_scalp_mode else snapshot.trailing_stop
