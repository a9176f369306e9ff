"""单仓位状态机：开仓、目标位命中、反向信号平仓、手动平仓。

不设硬止损：持仓只会因目标位命中、反向信号或手动操作而平仓，
反向信号平仓的亏损按价格偏离参考止损的倍数线性放大，不封顶。
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from risk.ledger import CapitalLedger
from shared.config.schema import SniperConfig
from shared.models.models import ExitReason, Position, PositionState, Side, TradeRecord
from shared.utils.logging import setup_logger
from sizing.base import Sizer
from sizing.risk_pct import RiskPctSizer

_RATIO_EPS = 1e-12


def safe_ratio(numerator: float, denominator: float) -> float:
    """分母接近 0 时返回 0，避免 NaN/inf 进入资金账本。"""
    if abs(denominator) < _RATIO_EPS:
        return 0.0
    return numerator / denominator


@dataclass(frozen=True)
class CloseResult:
    record: TradeRecord | None

    @property
    def no_active_position(self) -> bool:
        return self.record is None


@dataclass(frozen=True)
class SignalOutcome:
    closed: TradeRecord | None = None
    opened: Position | None = None


class PositionManager:
    """仓位管理器。

    Parameters
    ----------
    cfg:
        策略参数（风险百分比、盈亏比、杠杆、初始资金）。
    sizer:
        风险金额计算器，默认按 `cfg.risk_per_trade` 的资金百分比。
    """

    def __init__(self, cfg: SniperConfig, sizer: Sizer | None = None):
        self.cfg = cfg
        self.sizer = sizer or RiskPctSizer(cfg.risk_per_trade)
        self.logger = setup_logger("position")
        self._position: Position | None = None
        self._ledger = CapitalLedger.start(cfg.initial_capital)
        self._trades: list[TradeRecord] = []

    @property
    def position(self) -> Position | None:
        return self._position

    @property
    def state(self) -> PositionState:
        if self._position is None:
            return PositionState.FLAT
        return PositionState.LONG_OPEN if self._position.side is Side.LONG else PositionState.SHORT_OPEN

    @property
    def ledger(self) -> CapitalLedger:
        return self._ledger

    @property
    def trades(self) -> tuple[TradeRecord, ...]:
        return tuple(self._trades)

    @property
    def effective_leverage(self) -> float:
        return self.cfg.effective_leverage

    def liquidation_level(self, side: Side, entry_price: float) -> float | None:
        """仅展示用的强平价；未启用杠杆或杠杆 <= 1 时为 None。"""
        lev = self.cfg.leverage_amount
        if not self.cfg.use_leverage or lev <= 1:
            return None
        if side is Side.LONG:
            return entry_price * (1 - 1 / lev)
        return entry_price * (1 + 1 / lev)

    def open_position(self, side: Side, entry_price: float, reference_stop: float, ts: datetime) -> Position | None:
        """开仓。已有持仓时不做任何改动并返回 None。

        风险金额按当前（已含历史盈亏的）资金计算；
        目标位 = 入场价 ± |入场价 - 参考止损| * reward_multiple。
        """
        if self._position is not None:
            self.logger.debug(f"open_position ignored: {self._position.side.value} already open")
            return None

        risk_amount = self.sizer.risk_amount(capital=self._ledger.current_capital)
        distance = abs(entry_price - reference_stop)
        if side is Side.LONG:
            target_level = entry_price + distance * self.cfg.reward_multiple
        else:
            target_level = entry_price - distance * self.cfg.reward_multiple

        position = Position(
            side=side,
            entry_price=entry_price,
            reference_stop=reference_stop,
            target_level=target_level,
            risk_amount=risk_amount,
            reward_amount=risk_amount * self.cfg.reward_multiple * self.effective_leverage,
            liquidation_level=self.liquidation_level(side, entry_price),
            opened_at=ts,
        )
        ledger = self._ledger.with_risk(risk_amount)

        self._ledger = ledger
        self._position = position
        self.logger.info(
            f"OPEN {side.value} @ {entry_price:.6f} ref={reference_stop:.6f} "
            f"target={target_level:.6f} risk={risk_amount:.4f}"
        )
        return position

    def check_target(self, high: float, low: float, ts: datetime) -> TradeRecord | None:
        """用区间高低价检查目标位；命中则按目标价平仓并返回成交记录。"""
        pos = self._position
        if pos is None:
            return None
        hit = high >= pos.target_level if pos.side is Side.LONG else low <= pos.target_level
        if not hit:
            return None
        return self._close(pos.target_level, ts, ExitReason.TARGET_HIT)

    def on_signal(self, side: Side, price: float, reference_stop: float, ts: datetime) -> SignalOutcome:
        """处理方向信号：同向忽略；反向先平仓再反手；空仓直接开仓。"""
        pos = self._position
        if pos is not None and pos.side is side:
            return SignalOutcome()
        closed = self._close(price, ts, ExitReason.SIGNAL) if pos is not None else None
        opened = self.open_position(side, price, reference_stop, ts)
        return SignalOutcome(closed=closed, opened=opened)

    def close_position(self, price: float, ts: datetime, reason: ExitReason = ExitReason.MANUAL) -> CloseResult:
        """按指定价格平仓；空仓时返回 `no_active_position` 结果而不是抛错。"""
        if self._position is None:
            return CloseResult(record=None)
        return CloseResult(record=self._close(price, ts, reason))

    def exit_pnl(self, position: Position, exit_price: float, reason: ExitReason) -> float:
        """计算平仓盈亏（已含杠杆）。

        - 目标位命中：完整 reward_amount；
        - 有利方向：按到目标位的进度比例计入盈利，最多 100%；
        - 不利方向（含持平）：亏损 = 偏离距离 / 参考止损距离 * risk_amount，不封顶。
        """
        if reason is ExitReason.TARGET_HIT:
            return position.reward_amount

        lev = self.effective_leverage
        if position.side is Side.LONG:
            move = exit_price - position.entry_price
        else:
            move = position.entry_price - exit_price

        if move > 0:
            progress = min(safe_ratio(move, abs(position.target_level - position.entry_price)), 1.0)
            return progress * position.risk_amount * self.cfg.reward_multiple * lev
        ratio = safe_ratio(abs(move), abs(position.entry_price - position.reference_stop))
        return -ratio * position.risk_amount * lev

    def _close(self, exit_price: float, ts: datetime, reason: ExitReason) -> TradeRecord:
        pos = self._position
        assert pos is not None
        pnl = self.exit_pnl(pos, exit_price, reason)
        is_target_hit = reason is ExitReason.TARGET_HIT
        is_win = True if is_target_hit else pnl > 0
        ledger = self._ledger.with_close(pos.side, pnl, is_win, is_target_hit)
        record = TradeRecord(
            side=pos.side,
            entry_price=pos.entry_price,
            exit_price=exit_price,
            pnl=pnl,
            is_win=is_win,
            is_target_hit=is_target_hit,
            exit_reason=reason,
            opened_at=pos.opened_at,
            closed_at=ts,
            risk_amount=pos.risk_amount,
            reference_stop=pos.reference_stop,
            target_level=pos.target_level,
            capital_after=ledger.current_capital,
        )

        self._ledger = ledger
        self._trades.append(record)
        self._position = None
        self.logger.info(
            f"CLOSE {pos.side.value} @ {exit_price:.6f} reason={reason.value} "
            f"pnl={pnl:.4f} capital={ledger.current_capital:.4f}"
        )
        return record
