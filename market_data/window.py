"""滚动窗口：固定容量环形缓冲 + 运行和。

指标引擎的所有 SMA 都基于 `RollingWindow`，每根 K 线 O(1) 更新；
每绕回一圈用窗口内的值重新求和一次，限制浮点累积误差。
"""

from __future__ import annotations

from collections import deque
from typing import Iterator

from shared.models.models import Candle


class RollingWindow:
    """定长数值窗口，维护运行和以便 O(1) 取均值。"""

    def __init__(self, size: int):
        if size <= 0:
            raise ValueError(f"window size must be positive, got {size}")
        self.size = size
        self._buf: list[float] = [0.0] * size
        self._idx = 0
        self._count = 0
        self._sum = 0.0

    def __len__(self) -> int:
        return self._count

    @property
    def full(self) -> bool:
        return self._count == self.size

    @property
    def mean(self) -> float | None:
        if not self.full:
            return None
        return self._sum / self.size

    def push(self, value: float) -> None:
        if self.full:
            self._sum -= self._buf[self._idx]
        else:
            self._count += 1
        self._buf[self._idx] = value
        self._sum += value
        self._idx = (self._idx + 1) % self.size
        if self._idx == 0 and self.full:
            self._sum = sum(self._buf)

    def values(self) -> list[float]:
        """按写入顺序（旧 -> 新）返回窗口内的值。"""
        if not self.full:
            return self._buf[: self._count]
        return self._buf[self._idx:] + self._buf[: self._idx]


class PriceWindow:
    """最近 N 根已收盘 K 线（旧 -> 新）。"""

    def __init__(self, capacity: int):
        if capacity <= 0:
            raise ValueError(f"capacity must be positive, got {capacity}")
        self.capacity = capacity
        self._candles: deque[Candle] = deque(maxlen=capacity)

    def __len__(self) -> int:
        return len(self._candles)

    def __iter__(self) -> Iterator[Candle]:
        return iter(self._candles)

    def append(self, candle: Candle) -> None:
        self._candles.append(candle)

    @property
    def last(self) -> Candle | None:
        return self._candles[-1] if self._candles else None
