"""Risk gate and circuit breaker.

The RiskManager is the independent second gate after Strategy. It owns
RiskMetrics and is its only writer; callers hand it opportunities and
execution outcomes and read back assessments.

State machine:
    NORMAL -> CIRCUIT_BREAKER_ACTIVE  on daily loss >= limit, consecutive
                                      failures >= limit, or a manual trigger
    CIRCUIT_BREAKER_ACTIVE -> NORMAL  once the cooldown elapses (clears the
                                      failure count, keeps PnL and exposure)
"""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, date, datetime
from enum import StrEnum
from typing import Any

import structlog

from polyarb.core.execution import ExecutionResult
from polyarb.core.types import RankedOpportunity
from polyarb.dex.tokens import STABLECOINS

log = structlog.get_logger()


class RiskState(StrEnum):
    NORMAL = "normal"
    CIRCUIT_BREAKER_ACTIVE = "circuit_breaker_active"


@dataclass
class RiskConfig:
    """Risk limits. USD unless noted."""

    daily_loss_limit_usd: float = 500.0
    max_consecutive_failures: int = 5
    circuit_breaker_cooldown_seconds: float = 60.0
    max_exposure_per_trade_usd: float = 25_000.0
    max_daily_exposure_usd: float = 100_000.0
    # token address (lowercase) -> USD ceiling
    max_token_exposure_usd: dict[str, float] = field(default_factory=dict)
    max_concentration_pct: float = 30.0
    max_daily_trades: int = 100
    max_price_impact_pct: float = 5.0
    max_slippage_pct: float = 1.0
    max_gas_cost_ratio: float = 0.5
    min_confidence: float = 0.8
    min_pool_liquidity_usd: float = 10_000.0
    critical_risk_score: float = 75.0


@dataclass
class RiskMetrics:
    """Process-wide risk counters."""

    day: date
    daily_loss_usd: float = 0.0
    daily_profit_usd: float = 0.0
    daily_trade_count: int = 0
    consecutive_failures: int = 0
    total_exposure_usd: float = 0.0
    token_exposure_usd: dict[str, float] = field(default_factory=dict)
    circuit_breaker_active: bool = False
    last_trip_time: float | None = None
    trip_reason: str | None = None
    trip_count: int = 0


@dataclass
class RiskAssessment:
    """Outcome of a pre-trade risk check."""

    approved: bool
    risk_score: float
    critical: bool = False
    violations: list[str] = field(default_factory=list)
    components: dict[str, float] = field(default_factory=dict)
    cooldown_remaining_seconds: float = 0.0


class RiskManager:
    """Exposure, loss and failure tracking with a timed circuit breaker."""

    # Composite score weights
    WEIGHTS = {
        "market": 0.30,
        "liquidity": 0.20,
        "concentration": 0.20,
        "historical": 0.20,
        "technical": 0.10,
    }

    def __init__(
        self,
        config: RiskConfig | None = None,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize risk manager.

        Args:
            config: Risk limits
            clock: Epoch-seconds source; injectable for tests
        """
        self.config = config or RiskConfig()
        self.clock = clock
        self.metrics = RiskMetrics(day=self._today())
        self.emergency_stopped = False

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    def _today(self) -> date:
        return datetime.fromtimestamp(self.clock(), UTC).date()

    @property
    def state(self) -> RiskState:
        self._maybe_reset_breaker()
        if self.metrics.circuit_breaker_active:
            return RiskState.CIRCUIT_BREAKER_ACTIVE
        return RiskState.NORMAL

    @property
    def circuit_breaker_active(self) -> bool:
        return self.state is RiskState.CIRCUIT_BREAKER_ACTIVE

    def cooldown_remaining(self) -> float:
        m = self.metrics
        if not m.circuit_breaker_active or m.last_trip_time is None:
            return 0.0
        elapsed = self.clock() - m.last_trip_time
        return max(0.0, self.config.circuit_breaker_cooldown_seconds - elapsed)

    def _roll_day(self) -> None:
        """Reset daily counters at UTC midnight; failures and breaker persist."""
        today = self._today()
        if today == self.metrics.day:
            return
        m = self.metrics
        log.info(
            "risk.daily_reset",
            previous_day=m.day.isoformat(),
            daily_loss=m.daily_loss_usd,
            daily_profit=m.daily_profit_usd,
            trades=m.daily_trade_count,
        )
        m.day = today
        m.daily_loss_usd = 0.0
        m.daily_profit_usd = 0.0
        m.daily_trade_count = 0
        m.total_exposure_usd = 0.0
        m.token_exposure_usd = {}

    def _maybe_reset_breaker(self) -> None:
        m = self.metrics
        if m.circuit_breaker_active and self.cooldown_remaining() <= 0:
            m.circuit_breaker_active = False
            m.consecutive_failures = 0
            log.info("risk.circuit_breaker_reset", reason=m.trip_reason)

    def trigger_circuit_breaker(self, reason: str) -> None:
        """Trip the breaker (also the manual trigger). Restarts the cooldown."""
        m = self.metrics
        m.circuit_breaker_active = True
        m.last_trip_time = self.clock()
        m.trip_reason = reason
        m.trip_count += 1
        log.error(
            "risk.circuit_breaker_tripped",
            reason=reason,
            cooldown_seconds=self.config.circuit_breaker_cooldown_seconds,
            consecutive_failures=m.consecutive_failures,
            daily_loss=m.daily_loss_usd,
        )

    def _check_triggers(self) -> None:
        m = self.metrics
        if m.circuit_breaker_active:
            return
        if m.daily_loss_usd >= self.config.daily_loss_limit_usd:
            self.trigger_circuit_breaker(
                f"Daily loss limit reached: ${m.daily_loss_usd:.2f} >= ${self.config.daily_loss_limit_usd:.2f}"
            )
        elif m.consecutive_failures >= self.config.max_consecutive_failures:
            self.trigger_circuit_breaker(
                f"Consecutive failures: {m.consecutive_failures} >= {self.config.max_consecutive_failures}"
            )

    def daily_loss_limit_hit(self) -> bool:
        self._roll_day()
        return self.metrics.daily_loss_usd >= self.config.daily_loss_limit_usd

    def is_trading_allowed(self) -> tuple[bool, str | None]:
        """Check if trading is allowed.

        Returns:
            Tuple of (allowed, reason_if_blocked)
        """
        self._roll_day()
        if self.emergency_stopped:
            return False, "Emergency stop engaged"
        if self.circuit_breaker_active:
            return False, f"Circuit breaker active: {self.metrics.trip_reason}"
        return True, None

    def emergency_stop(self, reason: str = "manual emergency stop") -> None:
        """Halt trading until ``clear_emergency_stop``; no timed reset."""
        self.emergency_stopped = True
        self.trigger_circuit_breaker(reason)
        log.critical("risk.emergency_stop", reason=reason)

    def clear_emergency_stop(self) -> None:
        self.emergency_stopped = False
        log.warning("risk.emergency_stop_cleared")

    # ------------------------------------------------------------------
    # Pre-trade check
    # ------------------------------------------------------------------

    def check_risk(self, opportunity: RankedOpportunity) -> RiskAssessment:
        """Assess an opportunity against every limit.

        While the breaker is active every opportunity is refused. Otherwise
        all limit violations are collected, and a critical composite score
        refuses the trade on its own.
        """
        self._roll_day()
        self._check_triggers()

        if self.emergency_stopped:
            return RiskAssessment(
                approved=False,
                risk_score=100.0,
                critical=True,
                violations=["Emergency stop engaged"],
            )
        if self.circuit_breaker_active:
            remaining = self.cooldown_remaining()
            return RiskAssessment(
                approved=False,
                risk_score=100.0,
                critical=True,
                violations=[f"Circuit breaker active: {remaining:.0f}s cooldown remaining"],
                cooldown_remaining_seconds=remaining,
            )

        cfg = self.config
        m = self.metrics
        sim = opportunity.simulation
        token_key = sim.path.start_token.key
        trade_usd = opportunity.trade_usd
        violations: list[str] = []

        if m.daily_trade_count >= cfg.max_daily_trades:
            violations.append(f"Daily trade limit reached: {m.daily_trade_count}")
        if trade_usd > cfg.max_exposure_per_trade_usd:
            violations.append(
                f"Trade size ${trade_usd:.2f} exceeds per-trade limit ${cfg.max_exposure_per_trade_usd:.2f}"
            )
        if m.total_exposure_usd + trade_usd > cfg.max_daily_exposure_usd:
            violations.append(
                f"Daily exposure would reach ${m.total_exposure_usd + trade_usd:.2f}"
            )

        token_exposure_after = m.token_exposure_usd.get(token_key, 0.0) + trade_usd
        token_limit = cfg.max_token_exposure_usd.get(token_key)
        if token_limit is not None and token_exposure_after > token_limit:
            violations.append(
                f"{sim.path.start_token.symbol} exposure ${token_exposure_after:.2f} exceeds ${token_limit:.2f}"
            )
        concentration_cap = cfg.max_daily_exposure_usd * cfg.max_concentration_pct / 100
        if token_exposure_after > concentration_cap:
            violations.append(
                f"{sim.path.start_token.symbol} concentration ${token_exposure_after:.2f} exceeds "
                f"{cfg.max_concentration_pct:.0f}% of exposure ceiling"
            )

        if sim.price_impact_pct > cfg.max_price_impact_pct:
            violations.append(f"Price impact {sim.price_impact_pct:.2f}% exceeds {cfg.max_price_impact_pct}%")
        if sim.slippage_pct > cfg.max_slippage_pct:
            violations.append(f"Slippage {sim.slippage_pct:.2f}% exceeds {cfg.max_slippage_pct}%")
        if sim.gas_cost_ratio > cfg.max_gas_cost_ratio:
            violations.append(f"Gas cost ratio {sim.gas_cost_ratio:.2f} exceeds {cfg.max_gas_cost_ratio}")
        if sim.confidence < cfg.min_confidence:
            violations.append(f"Confidence {sim.confidence:.2f} below {cfg.min_confidence}")

        liquidity_usd = self._min_pool_liquidity_usd(opportunity)
        if liquidity_usd is not None and liquidity_usd < cfg.min_pool_liquidity_usd:
            violations.append(f"Pool liquidity ${liquidity_usd:.2f} below ${cfg.min_pool_liquidity_usd:.2f}")

        components = self._score_components(opportunity, token_exposure_after, liquidity_usd)
        score = sum(components[name] * weight for name, weight in self.WEIGHTS.items())
        critical = score >= cfg.critical_risk_score
        if critical:
            violations.append(f"Risk score critical: {score:.1f}")

        assessment = RiskAssessment(
            approved=not violations,
            risk_score=score,
            critical=critical,
            violations=violations,
            components=components,
        )
        if violations:
            log.info("risk.rejected", path=sim.path.id, score=round(score, 1), violations=violations)
        else:
            log.debug("risk.approved", path=sim.path.id, score=round(score, 1))
        return assessment

    def _min_pool_liquidity_usd(self, opportunity: RankedOpportunity) -> float | None:
        """Smallest USD depth among the path's pools that can be priced.

        A pool is priced from its stablecoin side or its start-token side;
        pools with neither are skipped.
        """
        sim = opportunity.simulation
        start = sim.path.start_token
        price = sim.token_price_usd
        depths: list[float] = []
        for pair in sim.path.pairs:
            if pair.reserves is None:
                continue
            for token, reserve in (
                (pair.token_a, pair.reserves.reserve_a),
                (pair.token_b, pair.reserves.reserve_b),
            ):
                if token.key in STABLECOINS:
                    depths.append(2 * reserve / 10**token.decimals)
                    break
                if token.key == start.key and price:
                    depths.append(2 * reserve / 10**token.decimals * price)
                    break
        return min(depths) if depths else None

    def _score_components(
        self,
        opportunity: RankedOpportunity,
        token_exposure_after: float,
        liquidity_usd: float | None,
    ) -> dict[str, float]:
        cfg = self.config
        m = self.metrics
        sim = opportunity.simulation

        def pct(value: float) -> float:
            return max(0.0, min(100.0, value * 100))

        market = pct(sim.price_impact_pct / cfg.max_price_impact_pct) if cfg.max_price_impact_pct else 0.0
        if liquidity_usd is None:
            liquidity = 50.0
        elif liquidity_usd <= 0:
            liquidity = 100.0
        else:
            # Share of the thinnest pool this trade would consume, 10% ~ maximal risk
            liquidity = pct(opportunity.trade_usd / liquidity_usd * 10)
        concentration_cap = cfg.max_daily_exposure_usd * cfg.max_concentration_pct / 100
        concentration = pct(token_exposure_after / concentration_cap) if concentration_cap else 100.0
        historical = pct(
            0.5 * m.consecutive_failures / max(1, cfg.max_consecutive_failures)
            + 0.5 * m.daily_loss_usd / max(1e-9, cfg.daily_loss_limit_usd)
        )
        technical = pct(0.5 * min(1.0, sim.gas_cost_ratio) + 0.5 * (1 - sim.confidence))
        return {
            "market": market,
            "liquidity": liquidity,
            "concentration": concentration,
            "historical": historical,
            "technical": technical,
        }

    # ------------------------------------------------------------------
    # Post-trade
    # ------------------------------------------------------------------

    def update_post_trade(self, opportunity: RankedOpportunity, result: ExecutionResult) -> None:
        """Fold an execution outcome into the metrics; may trip the breaker."""
        self._roll_day()
        m = self.metrics
        sim = opportunity.simulation
        m.daily_trade_count += 1

        if result.success:
            m.consecutive_failures = 0
            trade_usd = opportunity.trade_usd
            token_key = sim.path.start_token.key
            m.total_exposure_usd += trade_usd
            m.token_exposure_usd[token_key] = m.token_exposure_usd.get(token_key, 0.0) + trade_usd
            if result.actual_profit_usd >= 0:
                m.daily_profit_usd += result.actual_profit_usd
            else:
                m.daily_loss_usd += -result.actual_profit_usd
            log.info(
                "risk.trade_recorded",
                path=sim.path.id,
                profit_usd=result.actual_profit_usd,
                daily_profit=m.daily_profit_usd,
            )
        else:
            m.consecutive_failures += 1
            # A mined-but-failed transaction still burns its gas.
            estimated_loss = max(0.0, -result.actual_profit_usd)
            if estimated_loss == 0.0 and result.tx_hash:
                estimated_loss = sim.gas_cost_usd
            m.daily_loss_usd += estimated_loss
            log.warning(
                "risk.trade_failed",
                path=sim.path.id,
                consecutive_failures=m.consecutive_failures,
                estimated_loss=estimated_loss,
                error=result.error,
            )

        self._check_triggers()

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    def get_risk_report(self) -> dict[str, Any]:
        self._roll_day()
        m = self.metrics
        cfg = self.config
        return {
            "state": str(self.state),
            "emergency_stopped": self.emergency_stopped,
            "circuit_breaker": {
                "active": m.circuit_breaker_active,
                "reason": m.trip_reason,
                "trip_count": m.trip_count,
                "cooldown_remaining_seconds": self.cooldown_remaining(),
            },
            "daily": {
                "day": m.day.isoformat(),
                "loss_usd": m.daily_loss_usd,
                "profit_usd": m.daily_profit_usd,
                "net_usd": m.daily_profit_usd - m.daily_loss_usd,
                "trades": m.daily_trade_count,
                "loss_limit_utilization": m.daily_loss_usd / cfg.daily_loss_limit_usd
                if cfg.daily_loss_limit_usd
                else 0.0,
            },
            "exposure": {
                "total_usd": m.total_exposure_usd,
                "by_token_usd": dict(m.token_exposure_usd),
                "utilization": m.total_exposure_usd / cfg.max_daily_exposure_usd
                if cfg.max_daily_exposure_usd
                else 0.0,
            },
            "consecutive_failures": m.consecutive_failures,
        }
