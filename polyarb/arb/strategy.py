"""Opportunity admission, ranking and fractional-Kelly sizing."""

from __future__ import annotations

from collections import Counter
from collections.abc import Iterable
from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING, Any

import structlog

from polyarb.core import amm
from polyarb.core.sizing import fractional_kelly
from polyarb.core.types import ExecutionPriority, RankedOpportunity, RiskLevel, SimulationResult

if TYPE_CHECKING:
    from polyarb.arb.simulator import Simulator
    from polyarb.core.risk import RiskManager

log = structlog.get_logger()

GWEI = 10**9


class RejectionReason(StrEnum):
    """Why an opportunity was not admitted, in check order."""

    NOT_PROFITABLE = "not_profitable"
    BELOW_MIN_PROFIT = "below_min_profit"
    PRICE_IMPACT_TOO_HIGH = "price_impact_too_high"
    LOW_CONFIDENCE = "low_confidence"
    GAS_TOO_EXPENSIVE = "gas_too_expensive"
    TRADE_ALREADY_ACTIVE = "trade_already_active"
    MAX_CONCURRENT_TRADES = "max_concurrent_trades"
    EXCEEDS_TRADE_CAP = "exceeds_trade_cap"


@dataclass
class StrategyConfig:
    """Admission constraints and sizing parameters."""

    min_profit_usd: float = 0.1
    max_trade_usd: float = 50_000.0
    max_price_impact_pct: float = 5.0
    min_confidence: float = 0.6
    max_gas_gwei: float = 500.0
    max_concurrent_trades: int = 3
    kelly_fraction: float = 0.3
    min_trade_usd: float = 100.0
    # Relative size change below which a trade is not re-simulated
    resize_tolerance: float = 0.01
    slippage_bps: int = 50


def score_simulation(sim: SimulationResult) -> float:
    """netProfitUsd x confidence x (1 - impact/100) x (1 + (1 - gasCostRatio))."""
    gas_ratio = min(1.0, sim.gas_cost_ratio)
    return (
        sim.net_profit_usd
        * sim.confidence
        * (1 - sim.price_impact_pct / 100)
        * (1 + (1 - gas_ratio))
    )


def execution_priority(sim: SimulationResult) -> ExecutionPriority:
    if sim.net_profit_usd > 100 and sim.confidence > 0.8:
        return ExecutionPriority.HIGH
    if sim.net_profit_usd < 20 or sim.confidence < 0.6:
        return ExecutionPriority.LOW
    return ExecutionPriority.MEDIUM


def risk_level(sim: SimulationResult) -> RiskLevel:
    if sim.price_impact_pct < 1 and sim.confidence > 0.8:
        return RiskLevel.LOW
    if sim.price_impact_pct > 3 or sim.confidence < 0.6:
        return RiskLevel.HIGH
    return RiskLevel.MEDIUM


def rank(sim: SimulationResult) -> RankedOpportunity:
    return RankedOpportunity(
        simulation=sim,
        score=score_simulation(sim),
        priority=execution_priority(sim),
        risk_level=risk_level(sim),
    )


class Strategy:
    """Decides which simulated opportunities are worth executing, and at what size."""

    def __init__(
        self,
        simulator: Simulator,
        config: StrategyConfig | None = None,
        *,
        risk_manager: RiskManager | None = None,
    ) -> None:
        self.simulator = simulator
        self.config = config or StrategyConfig()
        self.risk_manager = risk_manager
        self._base_min_profit_usd = self.config.min_profit_usd
        self._base_max_price_impact_pct = self.config.max_price_impact_pct

        self.active_trades: set[str] = set()
        self.rejections: Counter[RejectionReason] = Counter()
        self.evaluated = 0
        self.selected = 0
        self.average_profit_usd = 0.0
        self.average_confidence = 0.0

    # ------------------------------------------------------------------
    # Admission
    # ------------------------------------------------------------------

    def _reject(self, reason: RejectionReason) -> tuple[bool, RejectionReason]:
        self.rejections[reason] += 1
        return False, reason

    def is_admissible(self, sim: SimulationResult) -> tuple[bool, RejectionReason | None]:
        """Run admission checks in order, stopping at the first failure."""
        cfg = self.config
        self.evaluated += 1
        if not sim.is_profitable:
            return self._reject(RejectionReason.NOT_PROFITABLE)
        if sim.net_profit_usd < cfg.min_profit_usd:
            return self._reject(RejectionReason.BELOW_MIN_PROFIT)
        if sim.price_impact_pct > cfg.max_price_impact_pct:
            return self._reject(RejectionReason.PRICE_IMPACT_TOO_HIGH)
        if sim.confidence < cfg.min_confidence:
            return self._reject(RejectionReason.LOW_CONFIDENCE)
        if sim.gas_price > cfg.max_gas_gwei * GWEI:
            return self._reject(RejectionReason.GAS_TOO_EXPENSIVE)
        if sim.path.id in self.active_trades:
            return self._reject(RejectionReason.TRADE_ALREADY_ACTIVE)
        if len(self.active_trades) >= cfg.max_concurrent_trades:
            return self._reject(RejectionReason.MAX_CONCURRENT_TRADES)
        return True, None

    # ------------------------------------------------------------------
    # Selection
    # ------------------------------------------------------------------

    async def select_top_opportunities(
        self, simulations: Iterable[SimulationResult]
    ) -> list[RankedOpportunity]:
        """Admit, rank, size, cap and sort; at most the free concurrency slots."""
        admitted = [sim for sim in simulations if self.is_admissible(sim)[0]]

        sized: list[RankedOpportunity] = []
        for sim in admitted:
            opportunity = await self._size(rank(sim))
            if opportunity is not None:
                sized.append(opportunity)

        # Sizing can push a trade over the cap; filter again after resizing.
        capped: list[RankedOpportunity] = []
        for opportunity in sized:
            if opportunity.trade_usd > self.config.max_trade_usd:
                self.rejections[RejectionReason.EXCEEDS_TRADE_CAP] += 1
                log.debug(
                    "strategy.over_cap_after_sizing",
                    path=opportunity.path.id,
                    trade_usd=opportunity.trade_usd,
                )
                continue
            capped.append(opportunity)

        capped.sort(key=lambda o: o.score, reverse=True)
        slots = max(0, self.config.max_concurrent_trades - len(self.active_trades))
        selected = capped[:slots]

        self._update_metrics(selected)
        log.info(
            "strategy.selected",
            candidates=len(admitted),
            selected=len(selected),
            top_score=round(selected[0].score, 4) if selected else None,
        )
        return selected

    async def _size(self, opportunity: RankedOpportunity) -> RankedOpportunity | None:
        """Resize with fractional Kelly and re-simulate when the size changes materially."""
        sim = opportunity.simulation
        token = sim.path.start_token
        price = sim.token_price_usd
        current_usd = opportunity.trade_usd
        if not price or current_usd <= 0:
            return opportunity

        fraction = fractional_kelly(
            sim.confidence,
            sim.net_profit_usd / current_usd,
            fraction=self.config.kelly_fraction,
        )
        target_usd = min(current_usd * fraction, self.config.max_trade_usd)
        target_usd = max(target_usd, self.config.min_trade_usd)
        if opportunity.risk_level is RiskLevel.HIGH:
            target_usd *= 0.5
        elif opportunity.risk_level is RiskLevel.LOW:
            target_usd *= 1.2

        new_amount = amm.usd_to_token_amount(target_usd, price, token.decimals)
        change = abs(new_amount - sim.input_amount) / sim.input_amount
        if new_amount <= 0 or change <= self.config.resize_tolerance:
            return opportunity

        log.debug(
            "strategy.resizing",
            path=sim.path.id,
            from_usd=round(current_usd, 2),
            to_usd=round(target_usd, 2),
            kelly=round(fraction, 4),
        )
        resized = await self.simulator.simulate(sim.path, new_amount, self.config.slippage_bps)
        if not resized.is_profitable:
            self.rejections[RejectionReason.NOT_PROFITABLE] += 1
            return None
        return rank(resized)

    def _update_metrics(self, selected: list[RankedOpportunity]) -> None:
        self.selected += len(selected)
        if not selected:
            return
        self.average_profit_usd = sum(o.simulation.net_profit_usd for o in selected) / len(selected)
        self.average_confidence = sum(o.simulation.confidence for o in selected) / len(selected)

    # ------------------------------------------------------------------
    # Final gate and bookkeeping
    # ------------------------------------------------------------------

    def should_execute(self, opportunity: RankedOpportunity) -> bool:
        """Last check right before execution."""
        sim = opportunity.simulation
        if not sim.is_profitable:
            log.warning("strategy.no_longer_profitable", path=sim.path.id)
            return False
        if sim.confidence < 0.5:
            log.warning("strategy.confidence_dropped", path=sim.path.id, confidence=sim.confidence)
            return False
        if opportunity.risk_level is RiskLevel.HIGH and self.active_trades - {sim.path.id}:
            log.info("strategy.high_risk_deferred", path=sim.path.id, active=len(self.active_trades))
            return False
        if self.risk_manager is not None and self.risk_manager.daily_loss_limit_hit():
            log.warning("strategy.daily_loss_limit_hit", path=sim.path.id)
            return False
        return True

    def register_active(self, path_id: str) -> None:
        self.active_trades.add(path_id)

    def unregister_active(self, path_id: str) -> None:
        self.active_trades.discard(path_id)

    def adjust_for_market_conditions(self, gas_price_gwei: float) -> None:
        """Scale the profit floor with gas and tighten impact after repeated impact rejections."""
        if gas_price_gwei > 100:
            self.config.min_profit_usd = self._base_min_profit_usd * 2
        elif gas_price_gwei < 30:
            self.config.min_profit_usd = self._base_min_profit_usd * 0.7
        else:
            self.config.min_profit_usd = self._base_min_profit_usd

        if self.rejections[RejectionReason.PRICE_IMPACT_TOO_HIGH] > 10:
            self.config.max_price_impact_pct = min(3.0, self._base_max_price_impact_pct)

        log.info(
            "strategy.adjusted",
            gas_gwei=round(gas_price_gwei, 2),
            min_profit_usd=self.config.min_profit_usd,
            max_price_impact_pct=self.config.max_price_impact_pct,
        )

    def get_metrics(self) -> dict[str, Any]:
        return {
            "evaluated": self.evaluated,
            "selected": self.selected,
            "active_trades": len(self.active_trades),
            "average_profit_usd": self.average_profit_usd,
            "average_confidence": self.average_confidence,
            "rejections": {str(reason): count for reason, count in self.rejections.items()},
        }
