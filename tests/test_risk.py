"""Tests for the risk gate and circuit breaker."""

import msgspec
import pytest

from polyarb.core.execution import ExecutionResult, ExecutionState
from polyarb.core.risk import RiskConfig, RiskManager, RiskState
from polyarb.core.types import Reserves
from polyarb.dex.tokens import WMATIC
from tests.conftest import E6, E18, make_opportunity, make_simulation

DAY = 86_400.0


class FakeClock:
    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def failed(tx_hash: str | None = None) -> ExecutionResult:
    return ExecutionResult(
        execution_id="e1", state=ExecutionState.FAILED, success=False, tx_hash=tx_hash, error="reverted"
    )


def confirmed(profit_usd: float) -> ExecutionResult:
    return ExecutionResult(
        execution_id="e2",
        state=ExecutionState.CONFIRMED,
        success=True,
        tx_hash="0xabc",
        actual_profit_usd=profit_usd,
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def risk(clock: FakeClock) -> RiskManager:
    return RiskManager(RiskConfig(max_consecutive_failures=3, circuit_breaker_cooldown_seconds=60), clock=clock)


class TestCheckRisk:
    def test_clean_opportunity_approved(self, risk: RiskManager) -> None:
        assessment = risk.check_risk(make_opportunity())
        assert assessment.approved
        assert not assessment.critical
        assert assessment.violations == []
        assert set(assessment.components) == set(RiskManager.WEIGHTS)
        assert 0 <= assessment.risk_score < 75

    def test_collects_every_violation(self, risk: RiskManager) -> None:
        opportunity = make_opportunity(make_simulation(price_impact_pct=6.0, confidence=0.5, slippage_pct=2.0))
        assessment = risk.check_risk(opportunity)
        assert not assessment.approved
        assert len(assessment.violations) == 3

    def test_token_exposure_ceiling(self, clock: FakeClock) -> None:
        risk = RiskManager(RiskConfig(max_token_exposure_usd={WMATIC.key: 1_000.0}), clock=clock)
        assessment = risk.check_risk(make_opportunity())
        assert not assessment.approved
        assert "WMATIC exposure" in assessment.violations[0]

    def test_thin_pool_rejected(self, risk: RiskManager) -> None:
        sim = make_simulation()
        thin = msgspec.structs.replace(
            sim.path.pairs[0], reserves=Reserves(reserve_a=200 * E18, reserve_b=1_000 * E6)
        )
        path = msgspec.structs.replace(sim.path, pairs=(thin, *sim.path.pairs[1:]))
        opportunity = make_opportunity(msgspec.structs.replace(sim, path=path))

        assessment = risk.check_risk(opportunity)
        assert not assessment.approved
        assert any("Pool liquidity" in v for v in assessment.violations)
        assert assessment.components["liquidity"] == 100.0

    def test_critical_score_refuses_alone(self, clock: FakeClock) -> None:
        risk = RiskManager(RiskConfig(critical_risk_score=10.0), clock=clock)
        assessment = risk.check_risk(make_opportunity())
        assert assessment.critical
        assert not assessment.approved
        assert assessment.violations[0].startswith("Risk score critical")


class TestCircuitBreaker:
    def test_consecutive_failures_trip_and_refuse(self, risk: RiskManager) -> None:
        opportunity = make_opportunity()
        for _ in range(3):
            risk.update_post_trade(opportunity, failed())

        assert risk.state is RiskState.CIRCUIT_BREAKER_ACTIVE
        assert risk.is_trading_allowed() == (False, "Circuit breaker active: Consecutive failures: 3 >= 3")
        assessment = risk.check_risk(opportunity)
        assert not assessment.approved
        assert assessment.cooldown_remaining_seconds == pytest.approx(60.0)

    def test_cooldown_resets_failures_only(self, risk: RiskManager, clock: FakeClock) -> None:
        opportunity = make_opportunity()
        risk.update_post_trade(opportunity, confirmed(-10.0))
        for _ in range(3):
            risk.update_post_trade(opportunity, failed())

        clock.advance(30)
        assert risk.circuit_breaker_active
        assert risk.cooldown_remaining() == pytest.approx(30.0)

        clock.advance(31)
        assert risk.state is RiskState.NORMAL
        assert risk.metrics.consecutive_failures == 0
        assert risk.metrics.daily_loss_usd == pytest.approx(10.0)
        assert risk.check_risk(opportunity).approved

    def test_success_resets_failure_streak(self, risk: RiskManager) -> None:
        opportunity = make_opportunity()
        risk.update_post_trade(opportunity, failed())
        risk.update_post_trade(opportunity, failed())
        risk.update_post_trade(opportunity, confirmed(12.0))
        assert risk.metrics.consecutive_failures == 0
        assert risk.metrics.daily_profit_usd == pytest.approx(12.0)
        assert risk.metrics.total_exposure_usd == pytest.approx(5_000.0)
        assert risk.metrics.token_exposure_usd == {WMATIC.key: pytest.approx(5_000.0)}
        assert risk.state is RiskState.NORMAL

    def test_mined_failure_charges_estimated_gas(self, risk: RiskManager) -> None:
        risk.update_post_trade(make_opportunity(make_simulation(gas_cost_usd=0.75)), failed(tx_hash="0xdead"))
        assert risk.metrics.daily_loss_usd == pytest.approx(0.75)
        risk.update_post_trade(make_opportunity(), failed())
        assert risk.metrics.daily_loss_usd == pytest.approx(0.75)

    def test_daily_loss_limit_trips_and_rolls_over(self, risk: RiskManager, clock: FakeClock) -> None:
        opportunity = make_opportunity()
        risk.update_post_trade(opportunity, confirmed(-600.0))

        assert risk.daily_loss_limit_hit()
        assert risk.circuit_breaker_active
        assert "Daily loss limit" in risk.metrics.trip_reason

        clock.advance(DAY)
        assert not risk.daily_loss_limit_hit()
        assert risk.metrics.daily_loss_usd == 0.0
        assert risk.metrics.daily_trade_count == 0
        assert risk.is_trading_allowed() == (True, None)

    def test_manual_trigger(self, risk: RiskManager) -> None:
        risk.trigger_circuit_breaker("oracle divergence")
        allowed, reason = risk.is_trading_allowed()
        assert not allowed
        assert "oracle divergence" in reason
        assert risk.metrics.trip_count == 1


class TestEmergencyStop:
    def test_no_timed_reset(self, risk: RiskManager, clock: FakeClock) -> None:
        risk.emergency_stop("operator halt")
        clock.advance(3_600)

        assert risk.state is RiskState.NORMAL
        assert risk.is_trading_allowed() == (False, "Emergency stop engaged")
        assessment = risk.check_risk(make_opportunity())
        assert assessment.violations == ["Emergency stop engaged"]

        risk.clear_emergency_stop()
        assert risk.is_trading_allowed() == (True, None)


def test_risk_report(risk: RiskManager) -> None:
    risk.update_post_trade(make_opportunity(), confirmed(20.0))
    report = risk.get_risk_report()
    assert report["state"] == "normal"
    assert report["daily"]["trades"] == 1
    assert report["daily"]["net_usd"] == pytest.approx(20.0)
    assert report["exposure"]["by_token_usd"] == {WMATIC.key: pytest.approx(5_000.0)}
