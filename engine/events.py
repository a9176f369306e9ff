"""引擎对外事件流：信号 / 开仓 / 平仓 / 目标位命中 / 错误。

事件在状态提交之后发布；订阅者抛出的异常只记录日志，不会回滚或中断核心状态。
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Union

from shared.models.models import ErrorKind, Position, Side, TradeRecord
from shared.utils.logging import setup_logger


@dataclass(frozen=True)
class SignalEvent:
    symbol: str
    direction: Side
    price: float
    ts: datetime


@dataclass(frozen=True)
class PositionOpenedEvent:
    symbol: str
    position: Position


@dataclass(frozen=True)
class PositionClosedEvent:
    symbol: str
    record: TradeRecord


@dataclass(frozen=True)
class TakeProfitHitEvent:
    symbol: str
    record: TradeRecord


@dataclass(frozen=True)
class ErrorEvent:
    symbol: str
    kind: ErrorKind
    details: dict[str, Any] = field(default_factory=dict)


Event = Union[SignalEvent, PositionOpenedEvent, PositionClosedEvent, TakeProfitHitEvent, ErrorEvent]
Subscriber = Callable[[Event], None]


class EventBus:
    """同步观察者列表。"""

    def __init__(self, name: str = "events"):
        self.logger = setup_logger(name)
        self._subscribers: list[Subscriber] = []

    def subscribe(self, fn: Subscriber) -> Callable[[], None]:
        """注册订阅者，返回取消订阅函数。"""
        self._subscribers.append(fn)

        def _unsubscribe() -> None:
            if fn in self._subscribers:
                self._subscribers.remove(fn)

        return _unsubscribe

    def publish(self, event: Event) -> None:
        for fn in list(self._subscribers):
            try:
                fn(event)
            except Exception:
                self.logger.exception(f"subscriber {fn!r} failed on {type(event).__name__}")
