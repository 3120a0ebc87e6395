"""Fee-market tracking and urgency-tiered fee recommendations.

Keeps a bounded rolling history of observed fees, refreshed periodically
from the chain client, and turns the latest observation into EIP-1559 (or
legacy) fee hints:

    hint = latest x strategy x urgency x global multiplier, clamped to ceiling
"""

from __future__ import annotations

import asyncio
import statistics
import time
from collections import deque
from dataclasses import dataclass
from enum import StrEnum
from typing import Any, Literal

import msgspec
import structlog

from polyarb.core.execution import TxRequest, Urgency
from polyarb.live.chain import ChainClient
from polyarb.utils.resilience import with_timeout

log = structlog.get_logger()

GWEI = 10**9


class GasStrategy(StrEnum):
    CONSERVATIVE = "conservative"
    STANDARD = "standard"
    AGGRESSIVE = "aggressive"


# strategy -> (priority multiplier, base multiplier for max fee)
STRATEGY_MULTIPLIERS: dict[GasStrategy, tuple[float, float]] = {
    GasStrategy.CONSERVATIVE: (0.8, 1.0),
    GasStrategy.STANDARD: (1.1, 1.5),
    GasStrategy.AGGRESSIVE: (1.5, 2.0),
}

# urgency -> (priority multiplier, max fee multiplier)
URGENCY_MULTIPLIERS: dict[Urgency, tuple[float, float]] = {
    Urgency.LOW: (0.7, 0.9),
    Urgency.STANDARD: (1.0, 1.0),
    Urgency.HIGH: (1.5, 1.3),
}

RECOMMENDED_GAS_LIMITS: dict[str, int] = {
    "approve": 50_000,
    "swap": 150_000,
    "multi_swap": 300_000,
    "flash_loan": 500_000,
}

GAS_BUDGETS: dict[str, int] = {
    "simple": 100_000,
    "medium": 200_000,
    "complex": 400_000,
}


@dataclass
class GasConfig:
    strategy: GasStrategy = GasStrategy.STANDARD
    max_gas_gwei: float = 500.0
    gas_multiplier: float = 1.2
    profit_threshold_multiplier: float = 2.0
    refresh_interval_seconds: float = 15.0
    history_size: int = 100
    spike_ratio: float = 1.5
    spike_min_samples: int = 10
    poll_interval_seconds: float = 5.0
    estimate_buffer: float = 1.2
    max_gas_per_block: int = 30_000_000
    call_timeout: float = 10.0


@dataclass
class GasObservation:
    """Observed fee market in wei."""

    base_fee: int
    priority_fee: int
    eip1559: bool
    source: str
    timestamp: float

    @property
    def total(self) -> int:
        return self.base_fee + self.priority_fee


class FeeHint(msgspec.Struct, frozen=True, kw_only=True):
    """Fee recommendation in wei."""

    urgency: Urgency
    eip1559: bool
    max_fee_per_gas: int | None = None
    max_priority_fee_per_gas: int | None = None
    gas_price: int | None = None

    @property
    def fee_per_gas(self) -> int:
        return self.max_fee_per_gas or self.gas_price or 0

    def apply(self, tx: TxRequest) -> TxRequest:
        if self.eip1559:
            return msgspec.structs.replace(
                tx,
                max_fee_per_gas=self.max_fee_per_gas,
                max_priority_fee_per_gas=self.max_priority_fee_per_gas,
                gas_price=None,
            )
        return msgspec.structs.replace(
            tx, gas_price=self.gas_price, max_fee_per_gas=None, max_priority_fee_per_gas=None
        )


class GasManager:
    """Rolling fee history and fee-hint policy."""

    def __init__(self, chain: ChainClient, config: GasConfig | None = None) -> None:
        self.chain = chain
        self.config = config or GasConfig()
        self.history: deque[GasObservation] = deque(maxlen=self.config.history_size)
        self._outage: GasObservation | None = None
        self._refresh_task: asyncio.Task[None] | None = None

    # ------------------------------------------------------------------
    # Observation
    # ------------------------------------------------------------------

    @property
    def latest(self) -> GasObservation:
        """Most recent fee; the ceiling fallback while the fee source is down."""
        if self._outage is not None:
            return self._outage
        if self.history:
            return self.history[-1]
        return self._fallback()

    def _fallback(self) -> GasObservation:
        # Unknown fees are priced at the ceiling.
        return GasObservation(
            base_fee=int(self.config.max_gas_gwei * GWEI),
            priority_fee=0,
            eip1559=True,
            source="hardcoded_fallback",
            timestamp=time.time(),
        )

    async def refresh(self) -> GasObservation:
        """Fetch the current fee market and append it to the history.

        A failed fetch is not recorded; the ceiling fallback stands in until
        the next successful one.
        """
        try:
            fee = await with_timeout(self.chain.get_fee_estimate(), self.config.call_timeout)
            observation = GasObservation(
                base_fee=fee.base_fee,
                priority_fee=fee.priority_fee,
                eip1559=fee.eip1559,
                source="rpc",
                timestamp=time.time(),
            )
        except Exception as e:
            self._outage = self._fallback()
            log.warning(
                "gas_manager.using_fallback",
                error=str(e),
                gwei=self._outage.total / GWEI,
            )
            return self._outage

        self._outage = None
        self.history.append(observation)
        if self.is_spike():
            log.warning(
                "gas_manager.fee_spike",
                current_gwei=observation.total / GWEI,
                average_gwei=self._average() / GWEI,
            )
        else:
            log.debug("gas_manager.fetched", gwei=observation.total / GWEI, source=observation.source)
        return observation

    async def _refresh_loop(self) -> None:
        while True:
            await self.refresh()
            await asyncio.sleep(self.config.refresh_interval_seconds)

    def start(self) -> None:
        if self._refresh_task is None or self._refresh_task.done():
            self._refresh_task = asyncio.create_task(self._refresh_loop(), name="gas-refresh")

    async def stop(self) -> None:
        if self._refresh_task is None:
            return
        self._refresh_task.cancel()
        try:
            await self._refresh_task
        except asyncio.CancelledError:
            pass
        self._refresh_task = None

    # ------------------------------------------------------------------
    # Policy
    # ------------------------------------------------------------------

    def get_fee_hint(self, urgency: Urgency = Urgency.STANDARD) -> FeeHint:
        obs = self.latest
        cfg = self.config
        ceiling = int(cfg.max_gas_gwei * GWEI)
        priority_mult, base_mult = STRATEGY_MULTIPLIERS[cfg.strategy]
        urgency_priority, urgency_max = URGENCY_MULTIPLIERS[urgency]

        if not obs.eip1559:
            gas_price = obs.base_fee * priority_mult * urgency_max * cfg.gas_multiplier
            return FeeHint(urgency=urgency, eip1559=False, gas_price=min(int(gas_price), ceiling))

        priority = obs.priority_fee * priority_mult
        max_fee = obs.base_fee * base_mult + priority
        priority *= urgency_priority
        max_fee *= urgency_max
        priority *= cfg.gas_multiplier
        max_fee *= cfg.gas_multiplier

        max_fee_wei = min(int(max_fee), ceiling)
        priority_wei = min(int(priority), max_fee_wei)
        return FeeHint(
            urgency=urgency,
            eip1559=True,
            max_fee_per_gas=max_fee_wei,
            max_priority_fee_per_gas=priority_wei,
        )

    def current_fee_per_gas(self) -> int:
        return self.latest.total

    def is_acceptable(
        self,
        expected_profit_wei: int,
        gas_limit: int,
        urgency: Urgency = Urgency.STANDARD,
    ) -> bool:
        """Profit must exceed the gas cost by profit_threshold_multiplier."""
        fee = self.get_fee_hint(urgency).fee_per_gas
        required = gas_limit * fee * self.config.profit_threshold_multiplier
        if required > expected_profit_wei:
            log.info(
                "gas_manager.unacceptable",
                gas_cost_gwei_total=gas_limit * fee / GWEI,
                expected_profit_wei=expected_profit_wei,
                multiplier=self.config.profit_threshold_multiplier,
            )
            return False
        return True

    def _average(self) -> float:
        if not self.history:
            return 0.0
        return statistics.fmean(o.total for o in self.history)

    def is_spike(self) -> bool:
        """Current fee > spike_ratio x rolling average, given enough samples."""
        if len(self.history) < self.config.spike_min_samples:
            return False
        return self.history[-1].total > self.config.spike_ratio * self._average()

    async def wait_for_lower_fee(self, ceiling_wei: int, timeout: float) -> bool:
        """Poll until the fee is at or below ``ceiling_wei``.

        Returns:
            True to proceed, False when the timeout elapsed first
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            observation = await self.refresh()
            if observation.total <= ceiling_wei:
                log.info("gas_manager.fee_cleared", gwei=observation.total / GWEI)
                return True
            remaining = deadline - loop.time()
            if remaining <= 0:
                log.info("gas_manager.wait_timeout", ceiling_gwei=ceiling_wei / GWEI)
                return False
            await asyncio.sleep(min(self.config.poll_interval_seconds, remaining))

    # ------------------------------------------------------------------
    # Limits and costs
    # ------------------------------------------------------------------

    async def estimate_gas(self, tx: TxRequest, operation: str = "swap") -> int:
        """Chain estimate plus buffer, capped at the block gas limit."""
        try:
            estimate = await with_timeout(self.chain.estimate_gas(tx), self.config.call_timeout)
        except Exception as e:
            log.debug("gas_manager.estimate_failed", error=str(e), operation=operation)
            return self.recommended_gas_limit(operation)
        return min(int(estimate * self.config.estimate_buffer), self.config.max_gas_per_block)

    @staticmethod
    def recommended_gas_limit(operation: str) -> int:
        return RECOMMENDED_GAS_LIMITS.get(operation, RECOMMENDED_GAS_LIMITS["swap"])

    @staticmethod
    def gas_budget(complexity: Literal["simple", "medium", "complex"]) -> int:
        return GAS_BUDGETS[complexity]

    def gas_cost(
        self, gas_limit: int, urgency: Urgency = Urgency.STANDARD
    ) -> tuple[int, Literal["high", "medium", "low"]]:
        """Worst-case cost in wei with a confidence label for the fee input."""
        cost = gas_limit * self.get_fee_hint(urgency).fee_per_gas
        if len(self.history) >= self.config.spike_min_samples and not self.is_spike():
            confidence: Literal["high", "medium", "low"] = "high"
        elif self.history:
            confidence = "medium"
        else:
            confidence = "low"
        return cost, confidence

    def history_stats(self) -> dict[str, Any]:
        values = [o.total / GWEI for o in self.history]
        if not values:
            return {"samples": 0, "average_gwei": 0.0, "min_gwei": 0.0, "max_gwei": 0.0, "volatility": 0.0}
        average = statistics.fmean(values)
        stdev = statistics.pstdev(values) if len(values) > 1 else 0.0
        return {
            "samples": len(values),
            "average_gwei": average,
            "min_gwei": min(values),
            "max_gwei": max(values),
            "volatility": stdev / average if average else 0.0,
        }
