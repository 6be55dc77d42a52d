"""ActionExecutor: policy-checked execution of decision-step proposals.

Every proposal becomes an ``ActionOutcome`` whose ``detail`` is fed back
to the decision step as a tool result. Policy violations and exchange
errors are reported there (``{"success": false, "error": ..., "code": ...}``)
and never propagate into the trading cycle.

Open checks, in order:
    symbol allowed -> leverage bounds -> minimum margin -> reason and exit
    plan present -> drawdown open-block and position cap -> exchange
    quantity rules and minimum notional

Close checks:
    live position exists -> DecisionValidationGate (exit plan, holding time)
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import structlog

from prism.agent.llm.schemas import ClosePositionAction, OpenPositionAction
from prism.agent.types import ActionOutcome
from prism.exchange.base import ExchangeError
from prism.exchange.types import MarginType
from prism.execution.validation import PolicyViolationError
from prism.store.ledger import PositionNotFoundError
from prism.store.models import PositionSide

if TYPE_CHECKING:
    from prism.config.settings import TradingConfig
    from prism.execution.account import AccountService
    from prism.execution.reconciler import PositionReconciler
    from prism.execution.validation import DecisionValidationGate
    from prism.risk.engine import RiskEngine

logger = structlog.get_logger(__name__)

# Binance: "No need to change margin type."
MARGIN_TYPE_UNCHANGED_CODE = -4046


class ActionExecutor:
    """Execute open/close proposals after policy checks.

    Parameters
    ----------
    reconciler : PositionReconciler
        Execution path for opens and closes.
    gate : DecisionValidationGate
        Exit-plan and holding-time validation for closes.
    risk_engine : RiskEngine
        Position-cap and drawdown open-block.
    account : AccountService
        Fresh metrics for the open-block check.
    config : TradingConfig
        Symbols, leverage bounds, minimum margin.
    """

    def __init__(
        self,
        reconciler: PositionReconciler,
        gate: DecisionValidationGate,
        risk_engine: RiskEngine,
        account: AccountService,
        config: TradingConfig,
    ) -> None:
        self._reconciler = reconciler
        self._gateway = reconciler.gateway
        self._ledger = reconciler.ledger
        self._gate = gate
        self._risk = risk_engine
        self._account = account
        self._config = config

    async def execute(self, action: OpenPositionAction | ClosePositionAction) -> ActionOutcome:
        if isinstance(action, OpenPositionAction):
            return await self.open_position(action)
        return await self.close_position(action)

    async def open_position(self, action: OpenPositionAction) -> ActionOutcome:
        symbol = action.symbol.strip().upper()
        log = logger.bind(action="open_position", symbol=symbol, side=action.side)
        try:
            quantity, price = await self._check_open(symbol, action)
            await self._ensure_isolated(symbol)
            position = await self._reconciler.open_position(
                symbol,
                PositionSide(action.side),
                quantity,
                action.leverage,
                entry_reason=action.reason,
                exit_plan=action.exit_plan,
                stop_loss=action.stop_loss,
                take_profit=action.take_profit,
            )
        except PolicyViolationError as exc:
            log.info("open_rejected", code=exc.code, error=exc.message)
            return _rejected("open_position", symbol, exc)
        except ExchangeError as exc:
            log.warning("open_failed", error=str(exc))
            return _failed("open_position", symbol, exc)

        detail = {
            "success": True,
            "symbol": symbol,
            "side": action.side,
            "quantity": quantity,
            "price": price,
            "leverage": action.leverage,
            "margin": action.quantity,
        }
        if position is not None:
            detail["entry_price"] = position.entry_price
        log.info("open_executed", quantity=quantity, price=price, leverage=action.leverage)
        return ActionOutcome("open_position", symbol, True, detail)

    async def close_position(self, action: ClosePositionAction) -> ActionOutcome:
        symbol = action.symbol.strip().upper()
        log = logger.bind(action="close_position", symbol=symbol)
        try:
            position = self._ledger.find_position(symbol)
            validation = self._gate.validate_position(position, action.reason)
            if not validation.allow:
                raise PolicyViolationError(validation.code, validation.message)
            trade = await self._reconciler.close_position(position, action.reason)
        except PositionNotFoundError as exc:
            log.info("close_rejected", code="position_not_found")
            return _rejected(
                "close_position", symbol, PolicyViolationError("position_not_found", str(exc))
            )
        except PolicyViolationError as exc:
            log.info("close_rejected", code=exc.code)
            return _rejected("close_position", symbol, exc)
        except ExchangeError as exc:
            log.warning("close_failed", error=str(exc))
            return _failed("close_position", symbol, exc)

        try:
            await self._reconciler.sync()
        except ExchangeError as exc:
            log.warning("post_close_sync_failed", error=str(exc))

        log.info(
            "close_executed",
            matched_type=validation.matched_type.value if validation.matched_type else None,
            pnl=trade.pnl,
        )
        return ActionOutcome(
            "close_position",
            symbol,
            True,
            {
                "success": True,
                "symbol": symbol,
                "side": position.side.value,
                "price": trade.price,
                "quantity": trade.quantity,
                "pnl": trade.pnl,
                "matched_condition": (
                    validation.matched_type.value if validation.matched_type else None
                ),
            },
        )

    async def _check_open(self, symbol: str, action: OpenPositionAction) -> tuple[float, float]:
        """Run the open policy checks. Returns (quantity, price)."""
        cfg = self._config
        if symbol not in cfg.symbols:
            raise PolicyViolationError(
                "symbol_not_allowed", f"{symbol} is not tradable; allowed: {', '.join(cfg.symbols)}"
            )
        if not cfg.min_leverage <= action.leverage <= cfg.max_leverage:
            raise PolicyViolationError(
                "leverage_out_of_range",
                f"Leverage {action.leverage}x outside allowed range "
                f"{cfg.min_leverage}x-{cfg.max_leverage}x",
            )
        if action.quantity < cfg.min_margin:
            raise PolicyViolationError(
                "margin_below_minimum",
                f"Margin {action.quantity:.2f} USDT below minimum {cfg.min_margin:.2f} USDT",
            )
        if not action.reason.strip():
            raise PolicyViolationError("missing_reason", "An entry reason is required")
        if not action.exit_plan.strip():
            raise PolicyViolationError("missing_exit_plan", "An exit plan is required")

        metrics = await self._account.get_metrics()
        block = self._risk.open_block(metrics)
        if block is not None:
            raise PolicyViolationError(*block)

        price = await self._gateway.get_current_price(symbol)
        notional = action.quantity * action.leverage
        try:
            quantity = await self._gateway.format_quantity(symbol, notional / price)
        except ExchangeError as exc:
            raise PolicyViolationError("quantity_invalid", str(exc)) from exc

        info = await self._gateway.get_symbol_info(symbol)
        if quantity * price < info.min_notional:
            raise PolicyViolationError(
                "below_min_notional",
                f"Order notional {quantity * price:.2f} USDT below exchange minimum "
                f"{info.min_notional:.2f} USDT",
            )
        return quantity, price

    async def _ensure_isolated(self, symbol: str) -> None:
        try:
            await self._gateway.set_margin_type(symbol, MarginType.ISOLATED)
        except ExchangeError as exc:
            if exc.code == MARGIN_TYPE_UNCHANGED_CODE or "no need to change" in str(exc).lower():
                return
            raise


def _rejected(action: str, symbol: str, exc: PolicyViolationError) -> ActionOutcome:
    return ActionOutcome(
        action, symbol, False, {"success": False, "error": exc.message, "code": exc.code}
    )


def _failed(action: str, symbol: str, exc: ExchangeError) -> ActionOutcome:
    return ActionOutcome(
        action,
        symbol,
        False,
        {"success": False, "error": str(exc), "code": "exchange_error"},
    )
