"""Tests for path simulation."""

import pytest

from polyarb.arb.simulator import Simulator, SimulatorConfig, confidence_score, validate_simulation
from polyarb.core import amm
from polyarb.core.errors import ChainError
from polyarb.dex.connector import ConnectorRegistry
from polyarb.dex.tokens import USDC
from polyarb.live.chain import FeeEstimate
from tests.conftest import GWEI, FakeChain, FakeConnector, FakeOracle, loop_path, make_simulation

THOUSAND_WMATIC = amm.to_wei(1000, 18)


class FeeOutageChain(FakeChain):
    async def get_fee_estimate(self) -> FeeEstimate:
        raise ChainError("eth_feeHistory unavailable")


class TestConfidence:
    def test_clean_large_profit_is_full_confidence(self) -> None:
        assert confidence_score(0.5, 50.0, 0) == 1.0

    def test_impact_tiers_compound(self) -> None:
        assert confidence_score(2.5, 50.0, 0) == pytest.approx(0.9 * 0.8)
        assert confidence_score(6.0, 50.0, 0) == pytest.approx(0.9 * 0.8 * 0.7 * 0.5)

    def test_small_profit_and_warnings_penalized(self) -> None:
        assert confidence_score(0.5, 4.0, 1) == pytest.approx(0.8 * 0.6 * 0.9)


class TestSimulate:
    @pytest.mark.asyncio
    async def test_three_venue_loop_is_profitable(
        self, registry: ConnectorRegistry, oracle: FakeOracle, chain: FakeChain
    ) -> None:
        simulator = Simulator(registry, oracle, chain)
        result = await simulator.simulate(loop_path(), THOUSAND_WMATIC)

        assert result.is_profitable
        assert result.net_profit_usd > 0
        assert result.net_profit > 0
        assert len(result.breakdown) == 3
        assert [hop.step for hop in result.breakdown] == [1, 2, 3]
        assert [hop.exchange for hop in result.breakdown] == ["quickswap", "sushiswap", "apeswap"]
        for before, after in zip(result.breakdown, result.breakdown[1:]):
            assert after.amount_in == before.amount_out
        assert result.output_amount == result.breakdown[-1].amount_out
        assert result.min_output == amm.min_output(result.output_amount, 50)
        assert result.total_gas == 300_000
        assert result.gas_price == 30 * GWEI
        assert result.price_impact_pct == pytest.approx(0.3)
        assert result.confidence == 1.0
        assert result.warnings == ()

    @pytest.mark.asyncio
    async def test_full_slippage_zeroes_profit(
        self, registry: ConnectorRegistry, oracle: FakeOracle, chain: FakeChain
    ) -> None:
        simulator = Simulator(registry, oracle, chain)
        result = await simulator.simulate(loop_path(), THOUSAND_WMATIC, slippage_bps=10_000)

        assert result.min_output == 0
        assert result.gross_profit == 0
        assert result.gross_profit_usd == 0.0
        assert not result.is_profitable

    @pytest.mark.asyncio
    async def test_hop_failure_becomes_zero_confidence_result(
        self,
        venues: list[FakeConnector],
        registry: ConnectorRegistry,
        oracle: FakeOracle,
        chain: FakeChain,
    ) -> None:
        venues[1].fail_quotes = True
        simulator = Simulator(registry, oracle, chain)
        result = await simulator.simulate(loop_path(), THOUSAND_WMATIC)

        assert result.output_amount == 0
        assert result.confidence == 0.0
        assert not result.is_profitable
        assert result.warnings[0].startswith("Simulation error")
        assert "sushiswap quote failed" in result.warnings[0]

    @pytest.mark.asyncio
    async def test_impact_above_two_percent_warns(self, registry: ConnectorRegistry, chain: FakeChain) -> None:
        from tests.conftest import PRICES

        simulator = Simulator(registry, FakeOracle(dict(PRICES), impact=2.5), chain)
        result = await simulator.simulate(loop_path(), THOUSAND_WMATIC)

        assert len(result.warnings) == 3
        assert result.price_impact_pct == pytest.approx(7.5)
        assert result.confidence < 0.5
        assert not result.is_profitable

    @pytest.mark.asyncio
    async def test_gas_price_falls_back_when_fee_estimate_fails(
        self, registry: ConnectorRegistry, oracle: FakeOracle
    ) -> None:
        simulator = Simulator(registry, oracle, FeeOutageChain())
        result = await simulator.simulate(loop_path(), THOUSAND_WMATIC)
        assert result.gas_price == 500 * GWEI
        assert result.gas_cost == 300_000 * 500 * GWEI

    @pytest.mark.asyncio
    async def test_missing_prices(self, registry: ConnectorRegistry, chain: FakeChain) -> None:
        simulator = Simulator(registry, FakeOracle({USDC.key: 1.0}), chain)
        result = await simulator.simulate(loop_path(), THOUSAND_WMATIC)

        assert result.native_price_usd == 0.8
        assert result.token_price_usd is None
        assert "No USD price for WMATIC" in result.warnings
        assert not result.is_profitable

    @pytest.mark.asyncio
    async def test_profit_floor(self, registry: ConnectorRegistry, oracle: FakeOracle, chain: FakeChain) -> None:
        simulator = Simulator(registry, oracle, chain, SimulatorConfig(min_profit_usd=1_000.0))
        result = await simulator.simulate(loop_path(), THOUSAND_WMATIC)
        assert result.net_profit_usd > 0
        assert not result.is_profitable


class TestVariants:
    @pytest.mark.asyncio
    async def test_flash_loan_repays_principal_and_fee(
        self, registry: ConnectorRegistry, oracle: FakeOracle, chain: FakeChain
    ) -> None:
        simulator = Simulator(registry, oracle, chain)
        plain = await simulator.simulate(loop_path(), THOUSAND_WMATIC)
        flash = await simulator.simulate_flash_loan(loop_path(), THOUSAND_WMATIC, "aave")

        fee = THOUSAND_WMATIC * 9 // 10_000
        assert flash.flash_loan_fee == fee
        assert flash.gross_profit == plain.gross_profit - fee

        balancer = await simulator.simulate_flash_loan(loop_path(), THOUSAND_WMATIC, "balancer")
        assert balancer.flash_loan_fee == 0
        assert balancer.gross_profit == plain.gross_profit

    @pytest.mark.asyncio
    async def test_flash_loan_unknown_provider(
        self, registry: ConnectorRegistry, oracle: FakeOracle, chain: FakeChain
    ) -> None:
        simulator = Simulator(registry, oracle, chain)
        with pytest.raises(ValueError, match="Unknown flash loan provider"):
            await simulator.simulate_flash_loan(loop_path(), THOUSAND_WMATIC, "compound")

    @pytest.mark.asyncio
    async def test_mev_protection_budgets_more_gas(
        self, registry: ConnectorRegistry, oracle: FakeOracle, chain: FakeChain
    ) -> None:
        simulator = Simulator(registry, oracle, chain)
        result = await simulator.simulate_with_mev_protection(loop_path(), THOUSAND_WMATIC)
        assert result.total_gas == 360_000
        assert any("MEV" in w for w in result.warnings)

        (batched,) = await simulator.batch_simulate([loop_path()], [THOUSAND_WMATIC], mev_protection=True)
        assert batched.total_gas == 360_000

    @pytest.mark.asyncio
    async def test_batch_preserves_order_and_isolates_failures(
        self,
        venues: list[FakeConnector],
        registry: ConnectorRegistry,
        oracle: FakeOracle,
        chain: FakeChain,
    ) -> None:
        simulator = Simulator(registry, oracle, chain)
        results = await simulator.batch_simulate(
            [loop_path(), loop_path()], [THOUSAND_WMATIC, THOUSAND_WMATIC // 2]
        )
        assert [r.input_amount for r in results] == [THOUSAND_WMATIC, THOUSAND_WMATIC // 2]
        assert all(r.is_profitable for r in results)

        venues[0].fail_quotes = True
        results = await simulator.batch_simulate([loop_path()], [THOUSAND_WMATIC])
        assert results[0].confidence == 0.0


class TestValidateSimulation:
    def test_clean_simulation_passes(self) -> None:
        assert validate_simulation(make_simulation()) == (True, [])

    def test_reports_every_issue(self) -> None:
        valid, issues = validate_simulation(
            make_simulation(price_impact_pct=12.0, confidence=0.4, gas_cost_usd=40.0, net_profit_usd=10.0)
        )
        assert not valid
        assert len(issues) == 3
