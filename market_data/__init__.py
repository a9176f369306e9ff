"""行情数据模块（market_data）。

该包聚合：
- K 线行情源（Binance REST/WS、本地假数据）
- 历史 K 线加载与下载（CSV + REST 补齐）
- 指标引擎使用的滚动窗口
"""

from market_data.client import (
    BinanceMarketClient,
    FakeMarketClient,
    MarketDataError,
    MarketDataSource,
    SubscriptionHandle,
    get_market_client,
)
from market_data.loader import HistoricalDataLoader, load_candles_from_csv

__all__ = [
    "MarketDataSource",
    "MarketDataError",
    "SubscriptionHandle",
    "FakeMarketClient",
    "BinanceMarketClient",
    "get_market_client",
    "HistoricalDataLoader",
    "load_candles_from_csv",
]
