"""引擎公共接口。

回测与实时（干跑/实盘）引擎共用同一条单实例管线，只在“K 线从哪来、
事件交给谁”上不同；两者都以 `EngineResult` 作为统一出口。
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any


@dataclass(frozen=True)
class EngineResult:
    """引擎运行结果：`summary` 为统计汇总，`artifacts` 为成交/权益曲线及落盘路径。"""

    summary: dict[str, Any]
    artifacts: dict[str, Any] | None = None


class BaseEngine(ABC):
    @abstractmethod
    def run(self) -> EngineResult:
        """同步运行至结束（回放完毕、达到上限或被停止）。"""
        raise NotImplementedError
