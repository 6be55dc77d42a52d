"""DecisionContext: the serialized world view handed to the decision step.

Built once per cycle after reconciliation and risk enforcement, so every
position it describes is at most one reconciliation pass old.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING

from prism.store.models import AccountMetrics, Decision, Order, Position, Trade, utcnow

if TYPE_CHECKING:
    from prism.execution.market import MarketSnapshot

SYSTEM_PROMPT = """\
You are a disciplined perpetual-futures trader managing a USDT-margined account.

Each cycle you receive market snapshots, account metrics, open positions, active
exit orders, recent trades and your recent decisions. Respond with your analysis
and the actions to take now:

- open_position: symbol, side (long/short), leverage, quantity (margin in USDT),
  reason, exit_plan, and optional stop_loss / take_profit trigger prices.
  Every position needs a concrete exit plan naming its exit conditions
  (stop loss, take profit, trailing stop, support/resistance break, reversal,
  indicator signal, or time limit).
- close_position: symbol and reason. The reason must cite one of the conditions
  in the position's exit plan. Positions held under one hour may only be closed
  for a stop loss, trailing stop, or structure break.

Automated risk controls run before you and may already have closed positions.
Rejected actions come back with an error; correct the action or hold.
Holding is a valid decision. Set finished=true when no more actions are needed.
"""


@dataclass
class DecisionContext:
    """Everything the decision step may look at for one cycle."""

    iteration: int
    started_at: datetime
    account: AccountMetrics
    market: dict[str, MarketSnapshot]
    positions: list[Position]
    active_orders: list[Order] = field(default_factory=list)
    recent_trades: list[Trade] = field(default_factory=list)
    recent_decisions: list[Decision] = field(default_factory=list)
    now: datetime = field(default_factory=utcnow)

    @property
    def elapsed_minutes(self) -> float:
        return (self.now - self.started_at).total_seconds() / 60.0

    def to_dict(self) -> dict:
        m = self.account
        return {
            "iteration": self.iteration,
            "elapsed_minutes": round(self.elapsed_minutes, 1),
            "time": self.now.isoformat(),
            "account": {
                "total_balance": round(m.total_balance, 2),
                "available": round(m.available, 2),
                "unrealized_pnl": round(m.unrealized_pnl, 2),
                "initial_balance": round(m.initial_balance, 2),
                "peak_balance": round(m.peak_balance, 2),
                "return_percent": round(m.return_percent, 2),
                "drawdown_from_peak": round(m.drawdown_from_peak, 2),
                "drawdown_from_initial": round(m.drawdown_from_initial, 2),
                "sharpe_ratio": round(m.sharpe_ratio, 3),
            },
            "market": {
                symbol: {
                    "price": snap.price,
                    "funding_rate": snap.funding_rate,
                    "windows": {
                        interval: {
                            "last_close": s.last_close,
                            "change_percent": round(s.change_percent, 2),
                            "high": s.high,
                            "low": s.low,
                        }
                        for interval, s in snap.summaries.items()
                    },
                    "recent_closes": {
                        interval: [k.close for k in klines[-10:]]
                        for interval, klines in snap.klines.items()
                    },
                }
                for symbol, snap in self.market.items()
            },
            "positions": [
                {
                    "symbol": p.symbol,
                    "side": p.side.value,
                    "quantity": p.quantity,
                    "entry_price": p.entry_price,
                    "current_price": p.current_price,
                    "liquidation_price": p.liquidation_price,
                    "leverage": p.leverage,
                    "margin": round(p.margin, 2),
                    "unrealized_pnl": round(p.unrealized_pnl, 2),
                    "pnl_percent": round(p.pnl_percent(), 2),
                    "peak_pnl_percent": round(p.peak_pnl_percent, 2),
                    "holding_hours": round(p.holding_hours(self.now), 2),
                    "entry_reason": p.entry_reason,
                    "exit_plan": p.exit_plan,
                }
                for p in self.positions
            ],
            "active_orders": [
                {
                    "symbol": o.symbol,
                    "position_side": o.position_side.value,
                    "type": o.order_type.value,
                    "trigger_price": o.trigger_price,
                    "quantity": o.quantity,
                }
                for o in self.active_orders
            ],
            "recent_trades": [
                {
                    "symbol": t.symbol,
                    "type": t.trade_type.value,
                    "side": t.side.value,
                    "price": t.price,
                    "quantity": t.quantity,
                    "pnl": round(t.pnl, 2),
                    "reason": t.reason,
                    "time": t.executed_at.isoformat() if t.executed_at else None,
                }
                for t in self.recent_trades
            ],
            "recent_decisions": [
                {"iteration": d.iteration, "summary": d.content[-500:]}
                for d in self.recent_decisions
            ],
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), ensure_ascii=False, indent=2)
