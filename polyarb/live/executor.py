"""Transaction lifecycle for approved opportunities.

Each attempt moves Building -> Validating -> Submitted -> one terminal state
(Confirmed, Reverted, TimedOut, Failed). Retryable errors loop with a fresh
nonce up to ``max_retries``; the execution id stays the same across retries.

A transaction that was handed to the network but never confirmed is never
resubmitted under a new nonce. It is evicted with a same-nonce cancellation
instead, and the nonce ledger is resynced from the chain.
"""

from __future__ import annotations

import asyncio
import hashlib
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Protocol

import msgspec
import structlog

from polyarb.core import amm
from polyarb.core.errors import ErrorKind, ExecutionError, classify_error
from polyarb.core.execution import (
    ExecutionResult,
    ExecutionState,
    PendingTransaction,
    TxHandle,
    TxRequest,
    Urgency,
)
from polyarb.core.types import ExecutionPriority, RankedOpportunity, SimulationResult
from polyarb.live.chain import ChainClient
from polyarb.live.gas_manager import GWEI, GasManager
from polyarb.live.nonce import NonceAllocator
from polyarb.utils.resilience import with_timeout

log = structlog.get_logger()

CANCEL_GAS_LIMIT = 21_000
CANCEL_FEE_BUMP = 1.1

PRIORITY_URGENCY: dict[ExecutionPriority, Urgency] = {
    ExecutionPriority.HIGH: Urgency.HIGH,
    ExecutionPriority.MEDIUM: Urgency.STANDARD,
    ExecutionPriority.LOW: Urgency.LOW,
}

# Chain state moved underneath the ledger; the next nonce must come from a resync.
RESYNC_KINDS = {ErrorKind.NONCE_TOO_LOW, ErrorKind.UNDERPRICED, ErrorKind.TIMEOUT}


class TransactionBuilder(Protocol):
    async def build(self, simulation: SimulationResult) -> TxRequest: ...

    async def build_flash_loan(self, simulation: SimulationResult, provider: str = "aave") -> TxRequest: ...


@dataclass
class ExecutorConfig:
    dry_run: bool = True
    max_retries: int = 3
    retry_delay_seconds: float = 5.0
    confirmations: int = 2
    confirmation_timeout_seconds: float = 60.0
    gas_wait_ceiling_gwei: float = 100.0
    gas_wait_timeout_seconds: float = 30.0
    default_gas_limit: int = 200_000
    call_timeout: float = 10.0
    chain_id: int = 137
    flash_loan_provider: str = "aave"


class Executor:
    """Builds, submits, confirms, retries and cancels arbitrage transactions.

    The executor only reads the opportunity; post-trade risk accounting is
    left to the caller so risk state keeps a single writer.
    """

    def __init__(
        self,
        builder: TransactionBuilder,
        chain: ChainClient,
        nonces: NonceAllocator,
        gas: GasManager,
        config: ExecutorConfig | None = None,
    ) -> None:
        self.builder = builder
        self.chain = chain
        self.nonces = nonces
        self.gas = gas
        self.config = config or ExecutorConfig()

        self.pending: dict[str, PendingTransaction] = {}
        self.completed = 0
        self.failed = 0
        self.total_profit_usd = 0.0
        self.total_gas_used = 0

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def execute(
        self, opportunity: RankedOpportunity, dry_run: bool | None = None
    ) -> ExecutionResult:
        """Run one opportunity to a terminal state.

        Args:
            opportunity: Ranked, risk-approved opportunity
            dry_run: Override ``config.dry_run`` for this call

        Returns:
            Terminal ExecutionResult; failures are reported, never raised
        """
        return await self._execute(opportunity, dry_run=dry_run, flash_provider=None)

    async def execute_with_flash_loan(
        self,
        opportunity: RankedOpportunity,
        provider: str | None = None,
        dry_run: bool | None = None,
    ) -> ExecutionResult:
        """Same lifecycle, with the path wrapped in a flash loan from ``provider``."""
        return await self._execute(
            opportunity,
            dry_run=dry_run,
            flash_provider=provider or self.config.flash_loan_provider,
        )

    async def _execute(
        self,
        opportunity: RankedOpportunity,
        *,
        dry_run: bool | None,
        flash_provider: str | None,
    ) -> ExecutionResult:
        dry_run = self.config.dry_run if dry_run is None else dry_run
        execution_id = uuid.uuid4().hex
        started = time.monotonic()
        sim = opportunity.simulation
        urgency = PRIORITY_URGENCY[opportunity.priority]
        bound = log.bind(execution_id=execution_id, path=sim.path.id)

        def finish(state: ExecutionState, **fields: Any) -> ExecutionResult:
            result = ExecutionResult(
                execution_id=execution_id,
                state=state,
                success=state is ExecutionState.CONFIRMED,
                dry_run=dry_run,
                duration_ms=(time.monotonic() - started) * 1000,
                **fields,
            )
            self._record(result)
            return result

        state = ExecutionState.BUILDING
        try:
            if flash_provider:
                tx = await with_timeout(
                    self.builder.build_flash_loan(sim, flash_provider),
                    self.config.call_timeout,
                    "flash loan transaction build timed out",
                )
            else:
                tx = await with_timeout(
                    self.builder.build(sim), self.config.call_timeout, "transaction build timed out"
                )

            state = ExecutionState.VALIDATING
            self._validate(tx)
            operation = "flash_loan" if flash_provider else "multi_swap"
            gas_limit = await self.gas.estimate_gas(tx, operation)
            tx = msgspec.structs.replace(
                tx,
                gas_limit=gas_limit or self.config.default_gas_limit,
                chain_id=self.config.chain_id,
                from_address=tx.from_address or self.chain.address,
            )
            if not await self._gas_gate(sim, tx.gas_limit, urgency, opportunity.priority):
                bound.info("executor.gas_rejected", gas_limit=tx.gas_limit, urgency=str(urgency))
                return finish(ExecutionState.FAILED, error="Gas cost too high relative to profit")
        except Exception as e:
            bound.error("executor.preparation_failed", state=str(state), error=str(e))
            return finish(ExecutionState.FAILED, error=str(e))

        if dry_run:
            fee = self.gas.get_fee_hint(urgency).fee_per_gas
            bound.info("executor.dry_run", gas_limit=tx.gas_limit, estimated_profit_usd=sim.net_profit_usd)
            return finish(
                ExecutionState.CONFIRMED,
                tx_hash=simulated_tx_hash(sim),
                gas_used=tx.gas_limit,
                effective_gas_price=fee,
                actual_profit_usd=sim.net_profit_usd,
            )

        return await self._submit_with_retries(tx, opportunity, urgency, execution_id, finish)

    # ------------------------------------------------------------------
    # Live submission
    # ------------------------------------------------------------------

    async def _submit_with_retries(
        self,
        tx: TxRequest,
        opportunity: RankedOpportunity,
        urgency: Urgency,
        execution_id: str,
        finish: Callable[..., ExecutionResult],
    ) -> ExecutionResult:
        sim = opportunity.simulation
        cfg = self.config
        retries = 0

        while True:
            nonce = await self.nonces.next_nonce()
            request = self.gas.get_fee_hint(urgency).apply(tx.with_nonce(nonce))
            pending = PendingTransaction(
                execution_id=execution_id,
                nonce=nonce,
                request=request,
                path=sim.path,
                estimated_profit_usd=sim.net_profit_usd,
                retry_count=retries,
            )
            self.pending[execution_id] = pending

            try:
                handle = await with_timeout(
                    self.chain.submit(request), cfg.call_timeout, "transaction submission timed out"
                )
            except Exception as e:
                self.pending.pop(execution_id, None)
                kind = classify_error(e)
                self.nonces.release(nonce)
                if kind in RESYNC_KINDS:
                    self.nonces.invalidate()

                if kind is ErrorKind.TERMINAL or retries >= cfg.max_retries:
                    log.error(
                        "executor.submit_failed",
                        execution_id=execution_id,
                        nonce=nonce,
                        kind=str(kind),
                        retries=retries,
                        error=str(e),
                    )
                    return finish(ExecutionState.FAILED, nonce=nonce, retries=retries, error=str(e))

                retries += 1
                log.warning(
                    "executor.retrying",
                    execution_id=execution_id,
                    kind=str(kind),
                    attempt=retries,
                    max_retries=cfg.max_retries,
                    error=str(e),
                )
                await asyncio.sleep(cfg.retry_delay_seconds)
                continue

            pending.tx_hash = handle
            log.info(
                "executor.submitted",
                execution_id=execution_id,
                tx_hash=handle,
                nonce=nonce,
                fee_gwei=request.fee_per_gas / GWEI,
            )
            return await self._confirm(pending, opportunity, finish)

    async def _confirm(
        self,
        pending: PendingTransaction,
        opportunity: RankedOpportunity,
        finish: Callable[..., ExecutionResult],
    ) -> ExecutionResult:
        cfg = self.config
        sim = opportunity.simulation
        handle = pending.tx_hash
        assert handle is not None

        try:
            receipt = await with_timeout(
                self.chain.await_confirmation(handle, cfg.confirmations, cfg.confirmation_timeout_seconds),
                cfg.confirmation_timeout_seconds + cfg.call_timeout,
                "confirmation wait timed out",
            )
        except Exception as e:
            log.warning("executor.confirmation_error", tx_hash=handle, error=str(e))
            receipt = None

        if receipt is None:
            self.pending.pop(pending.execution_id, None)
            log.error(
                "executor.confirmation_timeout",
                execution_id=pending.execution_id,
                tx_hash=handle,
                nonce=pending.nonce,
            )
            await self.cancel_transaction(pending.nonce, pending.request.fee_per_gas)
            self.nonces.invalidate()
            return finish(
                ExecutionState.TIMED_OUT,
                tx_hash=handle,
                nonce=pending.nonce,
                retries=pending.retry_count,
                error="Transaction confirmation timed out",
            )

        self.pending.pop(pending.execution_id, None)
        self.nonces.confirm(pending.nonce)
        gas_cost = amm.gas_cost_usd(receipt.gas_used, receipt.effective_gas_price, sim.native_price_usd)

        if not receipt.succeeded:
            log.error(
                "executor.reverted",
                execution_id=pending.execution_id,
                tx_hash=handle,
                gas_used=receipt.gas_used,
            )
            return finish(
                ExecutionState.REVERTED,
                tx_hash=handle,
                nonce=pending.nonce,
                gas_used=receipt.gas_used,
                effective_gas_price=receipt.effective_gas_price,
                actual_profit_usd=-gas_cost,
                retries=pending.retry_count,
                error="Transaction reverted",
            )

        actual_profit = sim.gross_profit_usd - gas_cost
        log.info(
            "executor.confirmed",
            execution_id=pending.execution_id,
            tx_hash=handle,
            block=receipt.block_number,
            gas_used=receipt.gas_used,
            actual_profit_usd=round(actual_profit, 4),
        )
        return finish(
            ExecutionState.CONFIRMED,
            tx_hash=handle,
            nonce=pending.nonce,
            gas_used=receipt.gas_used,
            effective_gas_price=receipt.effective_gas_price,
            actual_profit_usd=actual_profit,
            retries=pending.retry_count,
        )

    async def cancel_transaction(self, nonce: int, min_fee_per_gas: int = 0) -> TxHandle | None:
        """Evict a stuck transaction with a zero-value self-transfer at the same nonce.

        Args:
            nonce: Nonce of the transaction to replace
            min_fee_per_gas: Fee of the stuck transaction; the replacement pays at least 10% more

        Returns:
            Handle of the cancellation, or None when it could not be sent
        """
        hint = self.gas.get_fee_hint(Urgency.HIGH)
        floor = int(min_fee_per_gas * CANCEL_FEE_BUMP)
        if hint.eip1559:
            max_fee = max(hint.max_fee_per_gas or 0, floor)
            priority = max(hint.max_priority_fee_per_gas or 0, int(max_fee * 0.1))
            fees: dict[str, int | None] = {"max_fee_per_gas": max_fee, "max_priority_fee_per_gas": priority}
        else:
            fees = {"gas_price": max(hint.gas_price or 0, floor)}

        cancel = TxRequest(
            to=self.chain.address,
            value=0,
            gas_limit=CANCEL_GAS_LIMIT,
            nonce=nonce,
            from_address=self.chain.address,
            chain_id=self.config.chain_id,
            **fees,
        )
        try:
            handle = await with_timeout(
                self.chain.submit(cancel), self.config.call_timeout, "cancellation submission timed out"
            )
        except Exception as e:
            log.error("executor.cancel_failed", nonce=nonce, error=str(e))
            return None
        log.warning("executor.cancel_submitted", nonce=nonce, tx_hash=handle, fee_gwei=cancel.fee_per_gas / GWEI)
        return handle

    # ------------------------------------------------------------------
    # Checks and bookkeeping
    # ------------------------------------------------------------------

    @staticmethod
    def _validate(tx: TxRequest) -> None:
        if not tx.to:
            raise ExecutionError("Transaction has no destination")
        if not tx.data or tx.data == "0x":
            raise ExecutionError("Transaction has no calldata")
        if tx.value < 0:
            raise ExecutionError("Transaction value is negative")

    async def _gas_gate(
        self,
        sim: SimulationResult,
        gas_limit: int,
        urgency: Urgency,
        priority: ExecutionPriority,
    ) -> bool:
        """Gas acceptability; non-urgent trades may wait for cheaper fees."""
        if sim.native_price_usd <= 0:
            return False
        profit_wei = amm.usd_to_token_amount(sim.gross_profit_usd, sim.native_price_usd, 18)
        if self.gas.is_acceptable(profit_wei, gas_limit, urgency):
            return True
        if priority is ExecutionPriority.HIGH:
            return False

        ceiling = int(self.config.gas_wait_ceiling_gwei * GWEI)
        if not await self.gas.wait_for_lower_fee(ceiling, self.config.gas_wait_timeout_seconds):
            return False
        return self.gas.is_acceptable(profit_wei, gas_limit, urgency)

    def _record(self, result: ExecutionResult) -> None:
        if result.success:
            self.completed += 1
            self.total_profit_usd += result.actual_profit_usd
        else:
            self.failed += 1
        self.total_gas_used += result.gas_used

    def get_status(self) -> dict[str, Any]:
        finished = self.completed + self.failed
        return {
            "pending": len(self.pending),
            "pending_nonces": sorted(p.nonce for p in self.pending.values()),
            "completed": self.completed,
            "failed": self.failed,
            "success_rate": self.completed / finished if finished else 0.0,
            "total_profit_usd": self.total_profit_usd,
            "total_gas_used": self.total_gas_used,
            "dry_run": self.config.dry_run,
        }


def simulated_tx_hash(simulation: SimulationResult) -> TxHandle:
    """Placeholder hash for a dry run, stable for the same path and input."""
    digest = hashlib.sha256(f"{simulation.path.id}:{simulation.input_amount}".encode()).hexdigest()
    return "0x" + digest
