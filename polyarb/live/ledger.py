"""Trade outcome sink."""

from __future__ import annotations

from typing import Protocol

import structlog

from polyarb.core.execution import ExecutionResult
from polyarb.core.types import SimulationResult

log = structlog.get_logger()


class LedgerSink(Protocol):
    """Fire-and-forget recorder of trade outcomes."""

    async def record(self, simulation: SimulationResult, execution: ExecutionResult, identity: str) -> None: ...


class StructlogLedger:
    """Writes each outcome as one structured log event."""

    def __init__(self, event: str = "ledger.trade_recorded") -> None:
        self.event = event
        self.recorded = 0

    async def record(self, simulation: SimulationResult, execution: ExecutionResult, identity: str) -> None:
        self.recorded += 1
        log.info(
            self.event,
            identity=identity,
            execution_id=execution.execution_id,
            path=simulation.path.id,
            kind=str(simulation.path.kind),
            state=str(execution.state),
            success=execution.success,
            dry_run=execution.dry_run,
            tx_hash=execution.tx_hash,
            input_amount=str(simulation.input_amount),
            estimated_profit_usd=simulation.net_profit_usd,
            actual_profit_usd=execution.actual_profit_usd,
            gas_used=execution.gas_used,
            retries=execution.retries,
            error=execution.error,
        )
