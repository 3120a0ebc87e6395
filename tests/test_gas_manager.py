"""Tests for fee tracking and fee hints."""

import pytest

from polyarb.core.errors import ChainError
from polyarb.core.execution import TxRequest, Urgency
from polyarb.live.chain import FeeEstimate
from polyarb.live.gas_manager import GasConfig, GasManager, GasStrategy
from tests.conftest import GWEI, FakeChain

TX = TxRequest(to="0x" + "22" * 20, data="0xdeadbeef")


class FeeOutageChain(FakeChain):
    async def get_fee_estimate(self) -> FeeEstimate:
        raise ChainError("rpc down")

    async def estimate_gas(self, tx: TxRequest) -> int:
        raise ChainError("execution reverted")


class FlakyFeeChain(FakeChain):
    def __init__(self) -> None:
        super().__init__()
        self.down = False

    async def get_fee_estimate(self) -> FeeEstimate:
        if self.down:
            raise ChainError("rpc down")
        return self.fee


class FallingFeeChain(FakeChain):
    """Fee drops to 20 gwei after the first two polls."""

    def __init__(self) -> None:
        super().__init__(base_fee_gwei=150, priority_fee_gwei=10)
        self.polls = 0

    async def get_fee_estimate(self) -> FeeEstimate:
        self.polls += 1
        if self.polls > 2:
            return FeeEstimate(base_fee=15 * GWEI, priority_fee=5 * GWEI)
        return self.fee


class TestFeeHints:
    @pytest.mark.asyncio
    async def test_standard_hint(self) -> None:
        gas = GasManager(FakeChain())
        await gas.refresh()
        hint = gas.get_fee_hint()

        # priority 5 x 1.1, max fee 25 x 1.5 + priority, both x 1.2
        assert hint.eip1559
        assert hint.max_priority_fee_per_gas == pytest.approx(6.6 * GWEI, rel=1e-9)
        assert hint.max_fee_per_gas == pytest.approx(51.6 * GWEI, rel=1e-9)

    @pytest.mark.asyncio
    async def test_urgency_orders_fees(self) -> None:
        gas = GasManager(FakeChain())
        await gas.refresh()
        low, standard, high = (gas.get_fee_hint(u).fee_per_gas for u in Urgency)
        assert low < standard < high

    @pytest.mark.asyncio
    async def test_strategy_changes_fees(self) -> None:
        conservative = GasManager(FakeChain(), GasConfig(strategy=GasStrategy.CONSERVATIVE))
        aggressive = GasManager(FakeChain(), GasConfig(strategy=GasStrategy.AGGRESSIVE))
        await conservative.refresh()
        await aggressive.refresh()
        assert conservative.get_fee_hint().fee_per_gas < aggressive.get_fee_hint().fee_per_gas

    @pytest.mark.asyncio
    async def test_clamped_to_ceiling(self) -> None:
        gas = GasManager(FakeChain(base_fee_gwei=1_000, priority_fee_gwei=400))
        await gas.refresh()
        hint = gas.get_fee_hint(Urgency.HIGH)
        assert hint.max_fee_per_gas == 500 * GWEI
        assert hint.max_priority_fee_per_gas <= hint.max_fee_per_gas

    @pytest.mark.asyncio
    async def test_legacy_hint(self) -> None:
        chain = FakeChain()
        chain.fee = FeeEstimate(base_fee=40 * GWEI, eip1559=False)
        gas = GasManager(chain)
        await gas.refresh()

        hint = gas.get_fee_hint()
        assert not hint.eip1559
        assert hint.max_fee_per_gas is None
        assert hint.gas_price == pytest.approx(40 * 1.1 * 1.2 * GWEI, rel=1e-9)

        applied = hint.apply(TX)
        assert applied.gas_price == hint.gas_price
        assert applied.max_fee_per_gas is None

    @pytest.mark.asyncio
    async def test_fallback_when_rpc_fails(self) -> None:
        gas = GasManager(FeeOutageChain())
        observation = await gas.refresh()
        assert observation.source == "hardcoded_fallback"
        assert gas.current_fee_per_gas() == 500 * GWEI
        assert gas.get_fee_hint().max_fee_per_gas == 500 * GWEI
        assert len(gas.history) == 0

    @pytest.mark.asyncio
    async def test_outage_overrides_history_until_recovery(self) -> None:
        chain = FlakyFeeChain()
        gas = GasManager(chain)
        await gas.refresh()

        chain.down = True
        await gas.refresh()
        assert gas.current_fee_per_gas() == 500 * GWEI
        assert [o.total for o in gas.history] == [30 * GWEI]

        chain.down = False
        await gas.refresh()
        assert gas.current_fee_per_gas() == 30 * GWEI
        assert len(gas.history) == 2


class TestAcceptability:
    @pytest.mark.asyncio
    async def test_profit_must_cover_gas_twice(self) -> None:
        gas = GasManager(FakeChain())
        await gas.refresh()
        fee = gas.get_fee_hint().fee_per_gas
        required = 300_000 * fee * 2

        assert gas.is_acceptable(required + 1, 300_000)
        assert not gas.is_acceptable(required - 10**9, 300_000)

    @pytest.mark.asyncio
    async def test_spike_detection(self) -> None:
        chain = FakeChain()
        gas = GasManager(chain)
        for _ in range(10):
            await gas.refresh()
        assert not gas.is_spike()

        chain.fee = FeeEstimate(base_fee=90 * GWEI, priority_fee=10 * GWEI)
        await gas.refresh()
        assert gas.is_spike()
        assert gas.gas_cost(300_000)[1] == "medium"

    def test_cost_confidence_without_history(self) -> None:
        cost, confidence = GasManager(FakeChain()).gas_cost(100_000)
        assert confidence == "low"
        assert cost > 0


class TestWaitForLowerFee:
    @pytest.mark.asyncio
    async def test_returns_once_fee_clears(self) -> None:
        chain = FallingFeeChain()
        gas = GasManager(chain, GasConfig(poll_interval_seconds=0.01))
        assert await gas.wait_for_lower_fee(50 * GWEI, timeout=5.0)
        assert chain.polls == 3

    @pytest.mark.asyncio
    async def test_gives_up_after_timeout(self) -> None:
        gas = GasManager(FakeChain(base_fee_gwei=200), GasConfig(poll_interval_seconds=0.01))
        assert not await gas.wait_for_lower_fee(50 * GWEI, timeout=0.05)

    @pytest.mark.asyncio
    async def test_unknown_fee_never_clears(self) -> None:
        gas = GasManager(FeeOutageChain(), GasConfig(poll_interval_seconds=0.01))
        assert not await gas.wait_for_lower_fee(100 * GWEI, timeout=0.05)
        assert not gas.is_acceptable(10**15, 300_000)


class TestGasLimits:
    @pytest.mark.asyncio
    async def test_estimate_is_buffered(self) -> None:
        gas = GasManager(FakeChain())
        assert await gas.estimate_gas(TX) == 120_000

    @pytest.mark.asyncio
    async def test_estimate_capped_at_block_limit(self) -> None:
        chain = FakeChain()
        chain.gas_estimate = 40_000_000
        assert await GasManager(chain).estimate_gas(TX) == 30_000_000

    @pytest.mark.asyncio
    async def test_estimate_failure_uses_recommended_limit(self) -> None:
        gas = GasManager(FeeOutageChain())
        assert await gas.estimate_gas(TX, "flash_loan") == 500_000
        assert await gas.estimate_gas(TX, "unknown") == 150_000

    def test_budgets(self) -> None:
        assert GasManager.gas_budget("complex") == 400_000
        assert GasManager.recommended_gas_limit("approve") == 50_000

    @pytest.mark.asyncio
    async def test_history_stats(self) -> None:
        gas = GasManager(FakeChain())
        assert gas.history_stats()["samples"] == 0
        await gas.refresh()
        await gas.refresh()
        stats = gas.history_stats()
        assert stats["samples"] == 2
        assert stats["average_gwei"] == pytest.approx(30.0)
        assert stats["volatility"] == 0.0
