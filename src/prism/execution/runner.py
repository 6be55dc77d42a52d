"""TradingCycleOrchestrator: scheduled trading cycle with APScheduler.

Orchestrates one trading cycle every N minutes on the clock:
    1. Collect market data for all configured symbols
    2. Fetch account metrics
    3. Reconcile positions and conditional orders with the exchange
    4. Account-level gates, then per-position risk gates; refresh metrics
    5. Hand the decision context to the decision step (closes validated,
       opens policy-checked by the ActionExecutor)
    6. Reconcile again, persist the account snapshot, log the cycle summary

Steps 1-3 abort the cycle on failure (``CycleStepError``). A failing
decision step is logged and the cycle still finishes steps 5-6 so the
ledger and the snapshot stay current. Account breaches (stop-loss,
take-profit, max drawdown) close everything and stop the orchestrator;
they are the only failures that end the loop.

Cycles are single-flight: a tick that arrives while a cycle is running is
skipped. ``stop()`` waits for the in-flight cycle before flipping state.

Live mode requires explicit ``PRISM_LIVE_CONFIRMED=true`` env var.
"""

from __future__ import annotations

import asyncio
import os
import time
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from prism.agent.context import DecisionContext
from prism.config.settings import TradingConfig
from prism.risk.rules import AccountBreachError
from prism.store.models import Decision, utcnow

if TYPE_CHECKING:
    from prism.agent.types import DecisionStep
    from prism.execution.account import AccountService
    from prism.execution.market import MarketDataCollector
    from prism.execution.reconciler import PositionReconciler
    from prism.risk.engine import RiskEngine
    from prism.store.models import AccountMetrics

logger = structlog.get_logger(__name__)


class AlreadyRunningError(RuntimeError):
    """start() was called while the orchestrator is running."""


class CycleStepError(Exception):
    """A required cycle step failed; the cycle was aborted.

    Parameters
    ----------
    step : str
        Name of the failing step.
    cause : Exception
        The underlying error.
    """

    def __init__(self, step: str, cause: Exception) -> None:
        self.step = step
        self.cause = cause
        super().__init__(f"{step} failed: {cause}")


def require_live_confirmation() -> None:
    """Raise ValueError unless PRISM_LIVE_CONFIRMED=true is set."""
    if os.environ.get("PRISM_LIVE_CONFIRMED", "").lower() != "true":
        raise ValueError(
            "Live trading requires PRISM_LIVE_CONFIRMED=true env var. "
            "Set it explicitly to confirm live trading intent."
        )


@dataclass
class LoopState:
    """Mutable orchestrator state, changed only through start/stop/run_cycle."""

    is_running: bool = False
    iteration: int = 0
    started_at: datetime | None = None
    last_cycle_at: datetime | None = None
    last_error: str | None = None
    cycles_completed: int = 0


class TradingCycleOrchestrator:
    """Runs the trading cycle on a fixed-minute schedule.

    All dependencies are injected for testability.

    Parameters
    ----------
    reconciler : PositionReconciler
        Single-flight position/order reconciliation and execution path.
    risk_engine : RiskEngine
        Account and per-position risk enforcement.
    account : AccountService
        Account metrics and snapshot persistence.
    market : MarketDataCollector
        Per-symbol market snapshots.
    decision_step : DecisionStep | None
        Proposes and executes actions. If None, cycles run risk control
        and reconciliation only.
    config : TradingConfig | None
        Symbols, interval, and limits. Defaults if None.
    live : bool
        True when trading against a real exchange account.
    """

    JOB_ID = "trading_cycle"

    def __init__(
        self,
        reconciler: PositionReconciler,
        risk_engine: RiskEngine,
        account: AccountService,
        market: MarketDataCollector,
        decision_step: DecisionStep | None = None,
        config: TradingConfig | None = None,
        live: bool = False,
    ) -> None:
        self._reconciler = reconciler
        self._ledger = reconciler.ledger
        self._risk = risk_engine
        self._account = account
        self._market = market
        self._decision_step = decision_step
        self._config = config or TradingConfig()
        self._live = live

        self._state = LoopState(iteration=self._ledger.latest_iteration())
        self._scheduler: AsyncIOScheduler | None = None
        self._cycle_lock = asyncio.Lock()
        self._stop_signal = asyncio.Event()
        self._stopping = False
        self._fatal: AccountBreachError | None = None
        self._first_cycle: asyncio.Task | None = None

    @property
    def state(self) -> LoopState:
        return self._state

    @property
    def scheduler(self) -> AsyncIOScheduler | None:
        return self._scheduler

    async def start(self) -> None:
        """Start the schedule.

        1. Refuse if already running (live additionally requires
           PRISM_LIVE_CONFIRMED=true).
        2. Resume the iteration counter from the last persisted decision.
        3. Schedule the cycle every ``interval_minutes`` on the clock.
        4. Optionally run one cycle immediately.

        Raises
        ------
        AlreadyRunningError
            If the orchestrator is already running.
        ValueError
            If live mode is not confirmed.
        """
        if self._state.is_running:
            raise AlreadyRunningError("Trading loop is already running")

        if self._live:
            require_live_confirmation()

        self._state = LoopState(
            is_running=True,
            iteration=self._ledger.latest_iteration(),
            started_at=utcnow(),
        )
        self._stopping = False
        self._fatal = None
        self._stop_signal = asyncio.Event()

        interval = self._config.interval_minutes
        self._scheduler = AsyncIOScheduler(timezone="UTC")
        self._scheduler.add_job(
            self._scheduled_cycle,
            trigger=CronTrigger(minute=f"*/{interval}", timezone="UTC"),
            id=self.JOB_ID,
            name="Prism Trading Cycle",
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        self._scheduler.start()

        logger.info(
            "trading_loop_started",
            mode="live" if self._live else "paper",
            interval_minutes=interval,
            symbols=self._config.symbols,
            resume_iteration=self._state.iteration,
        )

        if self._config.run_immediately:
            self._first_cycle = asyncio.create_task(self._scheduled_cycle())

    async def stop(self) -> None:
        """Stop the schedule after any in-flight cycle finishes.

        The immediate first cycle, if one was started, is awaited too.
        Idempotent; the stop signal is set exactly once.
        """
        if not self._state.is_running:
            return
        self._stopping = True

        first, self._first_cycle = self._first_cycle, None
        if first is not None and first is not asyncio.current_task():
            await first

        async with self._cycle_lock:
            if not self._state.is_running:
                return
            if self._scheduler is not None:
                self._scheduler.shutdown(wait=False)
                self._scheduler = None
            self._state.is_running = False

        if not self._stop_signal.is_set():
            self._stop_signal.set()
        logger.info(
            "trading_loop_stopped",
            iteration=self._state.iteration,
            cycles_completed=self._state.cycles_completed,
        )

    async def run_forever(self) -> None:
        """Block until stopped; cancellation stops the orchestrator cleanly.

        Raises
        ------
        AccountBreachError
            If the loop stopped because of an account-level breach.
        """
        try:
            await self._stop_signal.wait()
        except asyncio.CancelledError:
            await self.stop()
            raise
        if self._fatal is not None:
            raise self._fatal

    def get_status(self) -> dict:
        """Read-only view of the loop state."""
        s = self._state
        elapsed = (utcnow() - s.started_at).total_seconds() / 3600 if s.started_at else 0.0
        return {
            "is_running": s.is_running,
            "iteration": s.iteration,
            "started_at": s.started_at.isoformat() if s.started_at else None,
            "elapsed_hours": round(elapsed, 2),
            "symbols": list(self._config.symbols),
            "interval_minutes": self._config.interval_minutes,
            "last_cycle_at": s.last_cycle_at.isoformat() if s.last_cycle_at else None,
            "last_error": s.last_error,
            "cycles_completed": s.cycles_completed,
        }

    async def _scheduled_cycle(self) -> None:
        """Scheduler entry point: run a cycle, stop on an account breach."""
        if self._stopping or not self._state.is_running:
            return
        try:
            await self.run_cycle()
        except AccountBreachError as exc:
            self._fatal = exc
            self._state.last_error = str(exc)
            logger.error("trading_loop_fatal", kind=exc.kind, error=str(exc))
            await self.stop()
        except CycleStepError:
            pass
        except Exception as exc:
            self._state.last_error = f"cycle failed: {exc}"
            logger.error("trading_cycle_failed", iteration=self._state.iteration, error=str(exc))

    async def run_cycle(self) -> dict | None:
        """Execute one complete trading cycle.

        Returns
        -------
        dict | None
            Cycle summary, or None if another cycle was in flight.

        Raises
        ------
        CycleStepError
            If market data, account metrics, or reconciliation fail.
        AccountBreachError
            If an account-level gate fires (all positions were closed).
        """
        if self._cycle_lock.locked():
            logger.warning("cycle_skipped_in_flight", iteration=self._state.iteration)
            return None

        async with self._cycle_lock:
            if self._stopping:
                return None
            self._state.iteration += 1
            try:
                summary = await self._cycle_body(self._state.iteration)
            except CycleStepError as exc:
                self._state.last_error = str(exc)
                raise
            self._state.last_cycle_at = utcnow()
            self._state.cycles_completed += 1
            return summary

    async def _step(self, name: str, coro, log):
        try:
            return await coro
        except AccountBreachError:
            raise
        except Exception as exc:
            log.error("cycle_step_failed", step=name, error=str(exc))
            raise CycleStepError(name, exc) from exc

    async def _cycle_body(self, iteration: int) -> dict:
        log = logger.bind(iteration=iteration)
        t0 = time.monotonic()
        log.info("trading_cycle_started")

        # ------------------------------------------------------------------
        # 1-3. Market data, account, reconciliation (required)
        # ------------------------------------------------------------------
        market = await self._step(
            "collect_market_data", self._market.collect(self._config.symbols), log
        )
        metrics = await self._step("fetch_account", self._account.get_metrics(), log)
        await self._step("reconcile", self._reconciler.sync(), log)

        # ------------------------------------------------------------------
        # 4. Risk gates: account first, then per position
        # ------------------------------------------------------------------
        await self._risk.enforce_account(metrics)
        forced = await self._risk.check_all()
        metrics = await self._step("refresh_account", self._account.get_metrics(), log)

        # ------------------------------------------------------------------
        # 5. Decision step
        # ------------------------------------------------------------------
        context = DecisionContext(
            iteration=iteration,
            started_at=self._state.started_at or utcnow(),
            account=metrics,
            market=market,
            positions=self._ledger.get_positions(),
            active_orders=self._ledger.find_active_orders(),
            recent_trades=self._ledger.get_trades(limit=10),
            recent_decisions=self._ledger.get_decisions(limit=3),
        )
        content, prompt_tokens, completion_tokens, model = "", 0, 0, ""
        n_actions = n_rejected = 0
        if self._decision_step is None:
            content = "No decision step configured; risk control only."
        else:
            try:
                result = await self._decision_step.decide(context)
                content = result.content
                prompt_tokens = result.prompt_tokens
                completion_tokens = result.completion_tokens
                model = result.model
                n_actions = len(result.outcomes)
                n_rejected = sum(1 for o in result.outcomes if not o.success)
                if result.error:
                    log.warning("decision_incomplete", error=result.error)
                    self._state.last_error = result.error
            except Exception as exc:
                log.error("cycle_step_failed", step="decision", error=str(exc))
                self._state.last_error = f"decision failed: {exc}"
                content = f"Decision step failed: {exc}"

        # ------------------------------------------------------------------
        # 6. Re-reconcile, persist, summarize
        # ------------------------------------------------------------------
        try:
            await self._reconciler.sync()
        except Exception as exc:
            log.warning("post_decision_sync_failed", error=str(exc))
        try:
            metrics = await self._account.get_metrics()
        except Exception as exc:
            log.warning("final_account_fetch_failed", error=str(exc))

        positions = self._ledger.get_positions()
        self._ledger.record_decision(
            Decision(
                iteration=iteration,
                account_value=metrics.total_balance,
                position_count=len(positions),
                content=content,
                prompt_tokens=prompt_tokens,
                completion_tokens=completion_tokens,
                model=model,
            )
        )
        self._account.save_snapshot(metrics, iteration)

        summary = self._summarize(iteration, metrics, positions, time.monotonic() - t0)
        summary.update(
            forced_closes=[f.symbol for f in forced if f.closed],
            actions=n_actions,
            rejected=n_rejected,
        )
        log.info("trading_cycle_complete", **summary)
        return summary

    def _summarize(
        self,
        iteration: int,
        metrics: AccountMetrics,
        positions: list,
        duration: float,
    ) -> dict:
        now = utcnow()
        return {
            "iteration": iteration,
            "duration_seconds": round(duration, 2),
            "total_balance": round(metrics.total_balance, 2),
            "return_percent": round(metrics.return_percent, 2),
            "unrealized_pnl": round(metrics.unrealized_pnl, 2),
            "positions": [
                {
                    "symbol": p.symbol,
                    "side": p.side.value,
                    "leverage": p.leverage,
                    "pnl_percent": round(p.pnl_percent(), 2),
                    "holding_hours": round(p.holding_hours(now), 2),
                }
                for p in positions
            ],
        }
