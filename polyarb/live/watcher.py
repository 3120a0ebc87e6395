"""Per-block orchestration of discovery, simulation, selection and execution.

Blocks are enqueued by the polling loop (or by ``process_block``) and
drained by a single worker task, so at most one block is in flight and all
writes to risk, nonce and pending-transaction state happen from that task.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Iterable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Protocol

import structlog

from polyarb.core import amm
from polyarb.core.execution import ExecutionResult
from polyarb.core.types import ArbitragePath, PathKind, RankedOpportunity, SimulationResult
from polyarb.utils.resilience import BoundedGather, with_timeout

if TYPE_CHECKING:
    from polyarb.arb.pathfinder import Pathfinder
    from polyarb.arb.simulator import Simulator
    from polyarb.arb.strategy import Strategy
    from polyarb.core.risk import RiskManager
    from polyarb.live.chain import ChainClient
    from polyarb.live.executor import Executor
    from polyarb.live.gas_manager import GasManager
    from polyarb.live.ledger import LedgerSink

log = structlog.get_logger()


@dataclass
class WatcherConfig:
    poll_interval_seconds: float = 1.0
    slow_block_ms: float = 1000.0
    max_paths: int = 100
    # Input sizes in whole units of the path's start token
    triangular_input_tokens: float = 1000.0
    cross_dex_input_tokens: float = 5000.0
    slippage_bps: int = 50
    enable_flash_loans: bool = False
    flash_loan_provider: str = "aave"
    enable_mev_protection: bool = False
    graph_refresh_blocks: int = 50
    call_timeout: float = 10.0
    identity: str = ""


class WatcherObserver(Protocol):
    """Pipeline event callbacks; exceptions raised here are logged and ignored."""

    def on_opportunity(self, opportunity: RankedOpportunity) -> None: ...

    def on_execution(self, opportunity: RankedOpportunity, result: ExecutionResult) -> None: ...

    def on_block_processed(self, block_number: int, duration_ms: float) -> None: ...

    def on_paused(self, reason: str) -> None: ...

    def on_error(self, error: BaseException) -> None: ...


class Watcher:
    """Drives Pathfinder -> Simulator -> Strategy -> RiskManager -> Executor once per block."""

    def __init__(
        self,
        *,
        pathfinder: Pathfinder,
        simulator: Simulator,
        strategy: Strategy,
        risk: RiskManager,
        executor: Executor,
        chain: ChainClient,
        gas: GasManager | None = None,
        ledger: LedgerSink | None = None,
        config: WatcherConfig | None = None,
        observers: Iterable[WatcherObserver] = (),
    ) -> None:
        self.pathfinder = pathfinder
        self.simulator = simulator
        self.strategy = strategy
        self.risk = risk
        self.executor = executor
        self.chain = chain
        self.gas = gas
        self.ledger = ledger
        self.config = config or WatcherConfig()
        self.observers: list[WatcherObserver] = list(observers)

        self._queue: asyncio.Queue[int] = asyncio.Queue()
        self._active = asyncio.Event()
        self._worker: asyncio.Task[None] | None = None
        self._poller: asyncio.Task[None] | None = None
        self._ledger_tasks: set[asyncio.Task[None]] = set()

        self.running = False
        self.paused = False
        self.pause_reason: str | None = None
        self.started_at: float | None = None
        self.last_block_seen: int | None = None
        self.last_block_processed: int | None = None
        self.blocks_processed = 0
        self.total_processing_ms = 0.0
        self.opportunities_found = 0
        self.trades_executed = 0
        self.trades_succeeded = 0
        self.total_profit_usd = 0.0
        self.errors = 0

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        if self.running:
            log.warning("watcher.already_running")
            return
        log.info("watcher.starting")
        await self.pathfinder.build()
        self.last_block_seen = await with_timeout(
            self.chain.get_block_number(), self.config.call_timeout, "block number fetch timed out"
        )
        self.running = True
        self.paused = False
        self.started_at = time.monotonic()
        self._active.set()
        self._worker = asyncio.create_task(self._worker_loop(), name="watcher-worker")
        self._poller = asyncio.create_task(self._poll_loop(), name="watcher-poller")
        log.info("watcher.started", block=self.last_block_seen)

    async def stop(self) -> None:
        if not self.running:
            return
        self.running = False
        for task in (self._poller, self._worker):
            if task is None:
                continue
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._poller = None
        self._worker = None
        if self._ledger_tasks:
            await asyncio.gather(*self._ledger_tasks, return_exceptions=True)
        log.info("watcher.stopped", blocks_processed=self.blocks_processed)

    def pause(self, reason: str = "manual") -> None:
        """Stop polling and hold queued blocks; connector and graph state are kept."""
        if self.paused:
            return
        self.paused = True
        self.pause_reason = reason
        self._active.clear()
        if self._poller is not None:
            self._poller.cancel()
            self._poller = None
        log.warning("watcher.paused", reason=reason, queued=self._queue.qsize())
        self._notify("on_paused", reason)

    def resume(self) -> None:
        if not self.running:
            log.warning("watcher.resume_not_running")
            return
        if not self.paused:
            return
        self.paused = False
        self.pause_reason = None
        self._active.set()
        if self._poller is None:
            self._poller = asyncio.create_task(self._poll_loop(), name="watcher-poller")
        log.info("watcher.resumed", queued=self._queue.qsize())

    def emergency_stop(self, reason: str = "manual emergency stop") -> None:
        self.risk.emergency_stop(reason)
        self.pause(reason)

    # ------------------------------------------------------------------
    # Block intake
    # ------------------------------------------------------------------

    def process_block(self, block_number: int) -> None:
        """Enqueue a block; it is processed after every block queued before it."""
        self._queue.put_nowait(block_number)
        if self._queue.qsize() > 1:
            log.debug("watcher.block_queued", block=block_number, queued=self._queue.qsize())

    async def _poll_loop(self) -> None:
        while True:
            try:
                block = await with_timeout(
                    self.chain.get_block_number(), self.config.call_timeout, "block number fetch timed out"
                )
                if self.last_block_seen is None or block > self.last_block_seen:
                    self.last_block_seen = block
                    self.process_block(block)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.errors += 1
                log.warning("watcher.poll_failed", error=str(e))
                self._notify("on_error", e)
            await asyncio.sleep(self.config.poll_interval_seconds)

    async def _worker_loop(self) -> None:
        while True:
            block = await self._queue.get()
            try:
                await self._active.wait()
                await self.run_block(block)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.errors += 1
                log.error("watcher.block_failed", block=block, error=str(e))
                self._notify("on_error", e)
            finally:
                self._queue.task_done()

    async def drain(self) -> None:
        """Wait until every queued block has been processed."""
        await self._queue.join()

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    async def run_block(self, block_number: int) -> None:
        """Process one block end to end. Callers must not run two of these at once."""
        started = time.monotonic()

        allowed, reason = self.risk.is_trading_allowed()
        if not allowed:
            self.pause(reason or "trading not allowed")
            return

        if (
            self.config.graph_refresh_blocks
            and self.blocks_processed
            and self.blocks_processed % self.config.graph_refresh_blocks == 0
        ):
            await self.pathfinder.build()

        if self.gas is not None:
            self.strategy.adjust_for_market_conditions(self.gas.current_fee_per_gas() / 10**9)

        opportunities = await self.find_opportunities()
        executed, profit = await self.execute_opportunities(opportunities)

        duration_ms = (time.monotonic() - started) * 1000
        self.blocks_processed += 1
        self.total_processing_ms += duration_ms
        self.last_block_processed = block_number
        if duration_ms > self.config.slow_block_ms:
            log.warning("watcher.block_slow", block=block_number, duration_ms=round(duration_ms, 1))
        log.info(
            "watcher.block_processed",
            block=block_number,
            opportunities=len(opportunities),
            executed=executed,
            profit_usd=round(profit, 4),
            duration_ms=round(duration_ms, 1),
        )
        self._notify("on_block_processed", block_number, duration_ms)

    def _input_amount(self, path: ArbitragePath) -> int:
        tokens = (
            self.config.triangular_input_tokens
            if path.kind is PathKind.TRIANGULAR
            else self.config.cross_dex_input_tokens
        )
        return amm.to_wei(tokens, path.start_token.decimals)

    async def _simulate(self, paths: list[ArbitragePath]) -> list[SimulationResult]:
        cfg = self.config
        plain = [p for p in paths if not p.requires_flash_loan]
        flash = [p for p in paths if p.requires_flash_loan]
        if flash and not cfg.enable_flash_loans:
            # No standing inventory: these paths only settle inside a flash loan.
            log.debug("watcher.flash_paths_skipped", count=len(flash))
            flash = []

        results = await self.simulator.batch_simulate(
            plain,
            [self._input_amount(p) for p in plain],
            cfg.slippage_bps,
            mev_protection=cfg.enable_mev_protection,
        )
        if flash:
            pool = BoundedGather(self.simulator.config.max_concurrent_simulations)
            flash_results = await pool.map(
                lambda p: self.simulator.simulate_flash_loan(
                    p, self._input_amount(p), cfg.flash_loan_provider, cfg.slippage_bps
                ),
                flash,
            )
            for path, result in zip(flash, flash_results, strict=True):
                if isinstance(result, BaseException):
                    log.debug("watcher.flash_simulation_failed", path=path.id, error=str(result))
                    continue
                results.append(result)
        return results

    async def find_opportunities(self) -> list[RankedOpportunity]:
        paths = self.pathfinder.enumerate_paths(self.config.max_paths)
        if not paths:
            return []

        simulations = await self._simulate(paths)
        profitable = [s for s in simulations if s.is_profitable]
        log.debug("watcher.simulated", paths=len(paths), profitable=len(profitable))
        if not profitable:
            return []

        opportunities = await self.strategy.select_top_opportunities(profitable)
        for opportunity in opportunities:
            self.opportunities_found += 1
            log.info(
                "watcher.opportunity_found",
                path=opportunity.path.id,
                net_profit_usd=round(opportunity.simulation.net_profit_usd, 4),
                risk=str(opportunity.risk_level),
                priority=str(opportunity.priority),
            )
            self._notify("on_opportunity", opportunity)
        return opportunities

    async def execute_opportunities(self, opportunities: list[RankedOpportunity]) -> tuple[int, float]:
        """Run each selected opportunity; one failure never affects its siblings."""
        executed = 0
        profit = 0.0
        for opportunity in opportunities:
            if self.paused:
                break
            path_id = opportunity.path.id
            registered = False
            try:
                assessment = self.risk.check_risk(opportunity)
                if not assessment.approved:
                    log.warning(
                        "watcher.risk_rejected",
                        path=path_id,
                        score=round(assessment.risk_score, 1),
                        violations=assessment.violations,
                    )
                    continue
                if not self.strategy.should_execute(opportunity):
                    continue

                self.strategy.register_active(path_id)
                registered = True
                if opportunity.path.requires_flash_loan:
                    result = await self.executor.execute_with_flash_loan(
                        opportunity, self.config.flash_loan_provider
                    )
                else:
                    result = await self.executor.execute(opportunity)
                self.risk.update_post_trade(opportunity, result)
                self._record_ledger(opportunity.simulation, result)

                self.trades_executed += 1
                if result.success:
                    executed += 1
                    self.trades_succeeded += 1
                    profit += result.actual_profit_usd
                    self.total_profit_usd += result.actual_profit_usd
                else:
                    log.error("watcher.trade_failed", path=path_id, state=str(result.state), error=result.error)
                self._notify("on_execution", opportunity, result)
            except Exception as e:
                self.errors += 1
                log.error("watcher.opportunity_failed", path=path_id, error=str(e))
                self._notify("on_error", e)
            finally:
                if registered:
                    self.strategy.unregister_active(path_id)

            if self.risk.circuit_breaker_active:
                self.pause(f"circuit breaker: {self.risk.metrics.trip_reason}")
        return executed, profit

    # ------------------------------------------------------------------
    # Side channels
    # ------------------------------------------------------------------

    def _record_ledger(self, simulation: SimulationResult, result: ExecutionResult) -> None:
        if self.ledger is None:
            return
        task = asyncio.create_task(self._safe_record(simulation, result))
        self._ledger_tasks.add(task)
        task.add_done_callback(self._ledger_tasks.discard)

    async def _safe_record(self, simulation: SimulationResult, result: ExecutionResult) -> None:
        assert self.ledger is not None
        try:
            await self.ledger.record(simulation, result, self.config.identity or self.chain.address)
        except Exception as e:
            log.warning("watcher.ledger_failed", execution_id=result.execution_id, error=str(e))

    def add_observer(self, observer: WatcherObserver) -> None:
        self.observers.append(observer)

    def _notify(self, event: str, *args: Any) -> None:
        for observer in self.observers:
            callback = getattr(observer, event, None)
            if callback is None:
                continue
            try:
                callback(*args)
            except Exception as e:
                log.warning("watcher.observer_failed", observer_event=event, error=str(e))

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    def status(self) -> dict[str, Any]:
        uptime = time.monotonic() - self.started_at if self.started_at and self.running else 0.0
        return {
            "running": self.running,
            "paused": self.paused,
            "pause_reason": self.pause_reason,
            "last_block_seen": self.last_block_seen,
            "last_block_processed": self.last_block_processed,
            "queued_blocks": self._queue.qsize(),
            "opportunities_found": self.opportunities_found,
            "trades_executed": self.trades_executed,
            "total_profit_usd": self.total_profit_usd,
            "uptime_seconds": uptime,
            "risk": self.risk.get_risk_report(),
            "executor": self.executor.get_status(),
        }

    def performance_metrics(self) -> dict[str, Any]:
        return {
            "blocks_processed": self.blocks_processed,
            "average_processing_ms": self.total_processing_ms / self.blocks_processed
            if self.blocks_processed
            else 0.0,
            "opportunities_found": self.opportunities_found,
            "trades_executed": self.trades_executed,
            "trades_succeeded": self.trades_succeeded,
            "success_rate": self.trades_succeeded / self.trades_executed if self.trades_executed else 0.0,
            "total_profit_usd": self.total_profit_usd,
            "errors": self.errors,
            "queued_blocks": self._queue.qsize(),
            "strategy": self.strategy.get_metrics(),
        }
