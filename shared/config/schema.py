"""配置架构定义（Pydantic Schema）。

目标：
- 让配置成为强类型的边界协议，启动阶段尽早失败；
- 策略参数（SniperConfig）在实例生命周期内不可变；
- 业务代码只读属性，不做 `cfg.get(...)` 式的深层字典索引。
"""

from __future__ import annotations

from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


class SniperConfig(BaseModel):
    """趋势狙击策略参数（每个运行实例一份，不可变）。

    - length:          自适应基线的 SMA 窗口
    - period:          ATR 周期（Wilder 平滑）
    - multiplier:      慢速跟踪止损线的 ATR 倍数
    - fast_multiplier: 快速跟踪止损线的 ATR 倍数（须小于 multiplier）
    - scalp_period:    scalp 线的 SMA 窗口
    - reward_multiple: 目标位 = 入场价 ± |入场价 - 参考止损| * reward_multiple
    - risk_per_trade:  每笔风险占当前资金的百分比 (0, 100]
    """

    length: int = Field(default=6, gt=0)
    period: int = Field(default=16, gt=0)
    multiplier: float = Field(default=9.0, gt=0)
    fast_multiplier: float = Field(default=5.1, gt=0)
    use_scalp_mode: bool = False
    scalp_period: int = Field(default=21, gt=0)
    reward_multiple: float = Field(default=1.5, gt=0)
    initial_capital: float = Field(default=1000.0, gt=0)
    risk_per_trade: float = Field(default=2.0, gt=0, le=100)
    use_leverage: bool = False
    leverage_amount: float = Field(default=2.0, gt=0)

    model_config = ConfigDict(extra="forbid", frozen=True)

    @model_validator(mode="after")
    def _check_multipliers(self) -> "SniperConfig":
        if self.fast_multiplier >= self.multiplier:
            raise ValueError(
                f"fast_multiplier ({self.fast_multiplier}) must be smaller than multiplier ({self.multiplier})"
            )
        return self

    @property
    def effective_leverage(self) -> float:
        return self.leverage_amount if self.use_leverage else 1.0

    @property
    def warmup_bars(self) -> int:
        """首个完整快照所需的最少 K 线数。"""
        return max(self.period, self.length) + self.scalp_period - 1


class ExchangeConfig(BaseModel):
    """交易所（行情源）配置，仅使用公开行情接口。"""

    name: str = "binance"
    market: Literal["spot", "futures"] = "spot"
    base_url: Optional[str] = None
    ws_url: Optional[str] = None

    # 行情源重连/重试：指数退避，封顶，连续失败 max_retries 次后上报致命错误
    max_retries: int = Field(default=5, ge=1)
    backoff_initial_secs: float = Field(default=1.0, gt=0)
    backoff_max_secs: float = Field(default=30.0, gt=0)
    backoff_factor: float = Field(default=2.0, ge=1)
    jitter_secs: float = Field(default=0.2, ge=0)
    request_timeout_secs: float = Field(default=10.0, gt=0)

    warmup_candles: int = Field(default=500, ge=0, le=1000)

    model_config = ConfigDict(extra="forbid")


class BacktestConfig(BaseModel):
    """回测配置。

    数据来源优先级：`data_path` > `data_dir/{symbol}_{interval}.csv`（可选自动下载）。
    """

    data_path: Optional[str] = None
    data_dir: str = "dataset/history"
    symbol: Optional[str] = None
    interval: Optional[str] = None
    start: Optional[str] = None
    end: Optional[str] = None

    auto_download: bool = False
    force_download: bool = False
    flatten_on_end: bool = False
    output_dir: Optional[str] = None
    steps_per_year: Optional[float] = Field(default=None, gt=0)

    model_config = ConfigDict(extra="forbid")


class MainConfig(BaseModel):
    """应用总配置。

    `symbols` 非空时 runner 为每个 symbol 启动一个独立实例；否则只跑 `symbol`。
    """

    symbol: str
    symbols: List[str] = Field(default_factory=list)
    timeframe: str = "5m"
    mode: Literal["backtest", "dry-run", "live"] = "backtest"

    exchange: ExchangeConfig = Field(default_factory=ExchangeConfig)
    strategy: SniperConfig = Field(default_factory=SniperConfig)
    backtest: Optional[BacktestConfig] = None

    model_config = ConfigDict(extra="forbid")

    @model_validator(mode="before")
    @classmethod
    def _normalize_mode(cls, data):
        if isinstance(data, dict) and isinstance(data.get("mode"), str):
            data = dict(data)
            data["mode"] = data["mode"].replace("_", "-").lower()
        return data

    @property
    def instance_symbols(self) -> list[str]:
        return list(self.symbols) if self.symbols else [self.symbol]
