"""Execution layer types: transaction requests, receipts and attempt outcomes.

Requests and results are msgspec Structs; ``PendingTransaction`` is the one
mutable record and is owned by the Executor until a terminal outcome.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import StrEnum

import msgspec

from polyarb.core.types import ArbitragePath

type TxHandle = str  # transaction hash


class ExecutionState(StrEnum):
    """Attempt lifecycle. The last four are terminal."""

    BUILDING = "building"
    VALIDATING = "validating"
    SUBMITTED = "submitted"
    CONFIRMED = "confirmed"
    REVERTED = "reverted"
    TIMED_OUT = "timed_out"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in {
            ExecutionState.CONFIRMED,
            ExecutionState.REVERTED,
            ExecutionState.TIMED_OUT,
            ExecutionState.FAILED,
        }


class Urgency(StrEnum):
    """Fee urgency tier."""

    LOW = "low"
    STANDARD = "standard"
    HIGH = "high"


class TxRequest(msgspec.Struct, frozen=True, kw_only=True):
    """Unsigned transaction.

    Fee fields follow EIP-1559 when ``max_fee_per_gas`` is set and fall back
    to legacy ``gas_price`` otherwise.
    """

    to: str
    data: str = "0x"
    value: int = 0
    gas_limit: int = 0
    nonce: int | None = None
    from_address: str | None = None
    chain_id: int | None = None
    max_fee_per_gas: int | None = None
    max_priority_fee_per_gas: int | None = None
    gas_price: int | None = None

    @property
    def fee_per_gas(self) -> int:
        return self.max_fee_per_gas or self.gas_price or 0

    def with_nonce(self, nonce: int) -> TxRequest:
        return msgspec.structs.replace(self, nonce=nonce)


class Receipt(msgspec.Struct, frozen=True, kw_only=True):
    """Mined transaction receipt."""

    tx_hash: TxHandle
    status: int
    gas_used: int
    effective_gas_price: int
    block_number: int | None = None

    @property
    def succeeded(self) -> bool:
        return self.status == 1


class ExecutionResult(msgspec.Struct, frozen=True, kw_only=True):
    """Outcome of one Executor.execute call.

    ``execution_id`` is stable across retries even though the nonce changes.
    """

    execution_id: str
    state: ExecutionState
    success: bool
    tx_hash: TxHandle | None = None
    nonce: int | None = None
    gas_used: int = 0
    effective_gas_price: int = 0
    actual_profit_usd: float = 0.0
    retries: int = 0
    error: str | None = None
    dry_run: bool = False
    duration_ms: float = 0.0


@dataclass
class PendingTransaction:
    """In-flight transaction tracked by the Executor."""

    execution_id: str
    nonce: int
    request: TxRequest
    path: ArbitragePath
    estimated_profit_usd: float
    retry_count: int = 0
    submitted_at: float = field(default_factory=time.monotonic)
    tx_hash: TxHandle | None = None
