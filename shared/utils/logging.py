"""
轻量日志封装。

Notes
-----
同名 logger 只挂一个 StreamHandler；多实例/多次构造引擎时不会重复输出。
"""

from __future__ import annotations

import logging

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s - %(message)s"


def setup_logger(name: str = "sniper", level: int = logging.INFO) -> logging.Logger:
    """
    创建或获取命名 logger。

    Parameters
    ----------
    name:
        Logger 名称，建议按模块职责命名（如 "position"、"backtest"）。
    level:
        日志级别，默认 INFO。

    Returns
    -------
    logging.Logger
        已配置的 logger。
    """
    logger = logging.getLogger(name)
    logger.setLevel(level)
    logger.propagate = False

    if not any(isinstance(h, logging.StreamHandler) for h in logger.handlers):
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        logger.addHandler(handler)

    return logger
