"""Shared fakes for connector, oracle and chain collaborators."""

from __future__ import annotations

from collections.abc import Sequence

import pytest

from polyarb.core import amm
from polyarb.core.errors import ConnectorError
from polyarb.core.execution import Receipt, TxRequest
from polyarb.core.types import (
    ArbitragePath,
    ExecutionPriority,
    PathKind,
    RankedOpportunity,
    Reserves,
    RiskLevel,
    SimulationResult,
    Token,
    TradingPair,
)
from polyarb.dex.connector import ConnectorRegistry, SwapParams, VenueKind
from polyarb.dex.tokens import USDC, WETH, WMATIC
from polyarb.live.chain import FeeEstimate

GWEI = 10**9
E18 = 10**18
E6 = 10**6


class FakeConnector:
    """Constant-product venue over in-memory reserves."""

    kind = VenueKind.CONSTANT_PRODUCT

    def __init__(self, name: str, router: str, fee_bps: int = 30) -> None:
        self.name = name
        self.router = router
        self.fee_bps = fee_bps
        self.pools: dict[tuple[str, str], tuple[int, int]] = {}
        self.fail_quotes = False
        self.fail_probes = False
        self.built: list[SwapParams] = []

    def add_pool(self, token_a: Token, token_b: Token, reserve_a: int, reserve_b: int) -> None:
        self.pools[(token_a.key, token_b.key)] = (reserve_a, reserve_b)

    def _oriented(self, token_in: str, token_out: str) -> tuple[int, int] | None:
        a, b = token_in.lower(), token_out.lower()
        if (a, b) in self.pools:
            return self.pools[(a, b)]
        if (b, a) in self.pools:
            r_b, r_a = self.pools[(b, a)]
            return r_a, r_b
        return None

    async def quote_out(self, path: Sequence[str], amount_in: int) -> list[int]:
        if self.fail_quotes:
            raise ConnectorError(f"{self.name} quote failed")
        amounts = [amount_in]
        for token_in, token_out in zip(path, path[1:]):
            reserves = self._oriented(token_in, token_out)
            if reserves is None:
                raise ConnectorError(f"{self.name} has no pool")
            amounts.append(amm.get_amount_out(amounts[-1], *reserves, self.fee_bps))
        return amounts

    async def quote_in(self, path: Sequence[str], amount_out: int) -> list[int]:
        amounts = [amount_out]
        for token_in, token_out in reversed(list(zip(path, path[1:]))):
            reserves = self._oriented(token_in, token_out)
            if reserves is None:
                raise ConnectorError(f"{self.name} has no pool")
            amounts.insert(0, amm.get_amount_in(amounts[0], *reserves, self.fee_bps))
        return amounts

    async def build_swap_tx(self, params: SwapParams) -> TxRequest:
        self.built.append(params)
        return TxRequest(to=self.router, data="0x38ed1739" + "00" * 32, value=0)

    async def get_reserves(self, token_a: str, token_b: str) -> Reserves | None:
        if self.fail_probes:
            raise ConnectorError(f"{self.name} unreachable")
        reserves = self._oriented(token_a, token_b)
        if reserves is None:
            return None
        return Reserves(reserve_a=reserves[0], reserve_b=reserves[1])

    async def pair_exists(self, token_a: str, token_b: str) -> bool:
        if self.fail_probes:
            raise ConnectorError(f"{self.name} unreachable")
        return self._oriented(token_a, token_b) is not None


class FakeOracle:
    def __init__(self, prices: dict[str, float], impact: float = 0.1) -> None:
        self.prices = prices
        self.impact = impact

    async def get_usd_price(self, token: Token) -> float | None:
        return self.prices.get(token.key)

    async def get_price_impact(
        self, token_in: Token, token_out: Token, amount_in: int, venue: str | None = None
    ) -> float:
        return self.impact


class FakeChain:
    """Scriptable chain client."""

    def __init__(self, *, base_fee_gwei: float = 25, priority_fee_gwei: float = 5) -> None:
        self.address = "0x" + "11" * 20
        self.fee = FeeEstimate(
            base_fee=int(base_fee_gwei * GWEI), priority_fee=int(priority_fee_gwei * GWEI)
        )
        self.chain_nonce = 0
        self.block = 100
        self.gas_estimate = 100_000
        self.submit_errors: list[Exception] = []
        self.submitted: list[TxRequest] = []
        self.confirm_status = 1
        self.confirm_none = False
        self.gas_used = 150_000
        self.nonce_calls = 0

    async def get_fee_estimate(self) -> FeeEstimate:
        return self.fee

    async def get_nonce(self, address: str) -> int:
        self.nonce_calls += 1
        return self.chain_nonce

    async def submit(self, tx: TxRequest) -> str:
        if self.submit_errors:
            raise self.submit_errors.pop(0)
        self.submitted.append(tx)
        return "0x" + f"{len(self.submitted):064x}"

    async def await_confirmation(self, handle: str, confirmations: int, timeout: float) -> Receipt | None:
        if self.confirm_none:
            return None
        return Receipt(
            tx_hash=handle,
            status=self.confirm_status,
            gas_used=self.gas_used,
            effective_gas_price=30 * GWEI,
            block_number=self.block,
        )

    async def estimate_gas(self, tx: TxRequest) -> int:
        return self.gas_estimate

    async def get_block_number(self) -> int:
        return self.block


class DummyBuilder:
    """Transaction builder returning a fixed multicall-shaped request."""

    def __init__(self) -> None:
        self.fail: Exception | None = None
        self.flash_providers: list[str] = []

    async def build(self, simulation: SimulationResult) -> TxRequest:
        if self.fail is not None:
            raise self.fail
        return TxRequest(to="0x" + "22" * 20, data="0xdeadbeef", value=0)

    async def build_flash_loan(self, simulation: SimulationResult, provider: str = "aave") -> TxRequest:
        self.flash_providers.append(provider)
        return TxRequest(to="0x" + "33" * 20, data="0xcafebabe", value=0)


# WMATIC at $5, WETH at $2000. The WETH/WMATIC pool on the third venue
# pays 2% more WMATIC per WETH than the other two pools imply.
PRICES = {WMATIC.key: 5.0, USDC.key: 1.0, WETH.key: 2000.0}


def loop_venues() -> list[FakeConnector]:
    quick = FakeConnector("quickswap", "0x" + "a1" * 20)
    sushi = FakeConnector("sushiswap", "0x" + "b2" * 20)
    ape = FakeConnector("apeswap", "0x" + "c3" * 20)
    quick.add_pool(WMATIC, USDC, 2_000_000 * E18, 10_000_000 * E6)
    sushi.add_pool(USDC, WETH, 10_000_000 * E6, 5_000 * E18)
    ape.add_pool(WETH, WMATIC, 5_000 * E18, 2_040_000 * E18)
    return [quick, sushi, ape]


def loop_path() -> ArbitragePath:
    quick, sushi, ape = loop_venues()
    return ArbitragePath(
        id="triangular-WMATIC-USDC-WETH-quickswap-sushiswap-apeswap",
        kind=PathKind.TRIANGULAR,
        tokens=(WMATIC, USDC, WETH, WMATIC),
        exchanges=("quickswap", "sushiswap", "apeswap"),
        pairs=(
            TradingPair(token_a=WMATIC, token_b=USDC, exchange="quickswap"),
            TradingPair(token_a=USDC, token_b=WETH, exchange="sushiswap"),
            TradingPair(token_a=WETH, token_b=WMATIC, exchange="apeswap"),
        ),
    )


def make_simulation(
    *,
    path_id: str = "triangular-WMATIC-USDC-WETH-quickswap-sushiswap-apeswap",
    input_tokens: int = 1000,
    net_profit_usd: float = 50.0,
    gas_cost_usd: float = 0.5,
    price_impact_pct: float = 0.5,
    slippage_pct: float = 0.5,
    confidence: float = 0.95,
    is_profitable: bool = True,
    gas_price_gwei: float = 30.0,
    token_price_usd: float | None = 5.0,
) -> SimulationResult:
    path = loop_path()
    if path_id != path.id:
        path = ArbitragePath(
            id=path_id,
            kind=path.kind,
            tokens=path.tokens,
            exchanges=path.exchanges,
            pairs=path.pairs,
        )
    input_amount = input_tokens * E18
    gross_usd = net_profit_usd + gas_cost_usd
    gross = int(gross_usd / token_price_usd * E18) if token_price_usd else 0
    return SimulationResult(
        path=path,
        input_amount=input_amount,
        output_amount=input_amount + gross,
        min_output=input_amount + gross,
        gross_profit=gross,
        gas_cost=int(gas_cost_usd / 5.0 * E18),
        net_profit=int(net_profit_usd / token_price_usd * E18) if token_price_usd else 0,
        net_profit_usd=net_profit_usd,
        gross_profit_usd=gross_usd,
        gas_cost_usd=gas_cost_usd,
        gas_price=int(gas_price_gwei * GWEI),
        total_gas=300_000,
        price_impact_pct=price_impact_pct,
        slippage_pct=slippage_pct,
        confidence=confidence,
        is_profitable=is_profitable,
        token_price_usd=token_price_usd,
        native_price_usd=5.0,
    )


def make_opportunity(
    simulation: SimulationResult | None = None,
    *,
    priority: ExecutionPriority = ExecutionPriority.MEDIUM,
    risk_level: RiskLevel = RiskLevel.LOW,
    score: float = 10.0,
) -> RankedOpportunity:
    return RankedOpportunity(
        simulation=simulation or make_simulation(),
        score=score,
        priority=priority,
        risk_level=risk_level,
    )


@pytest.fixture
def venues() -> list[FakeConnector]:
    return loop_venues()


@pytest.fixture
def registry(venues: list[FakeConnector]) -> ConnectorRegistry:
    return ConnectorRegistry.from_connectors(venues)


@pytest.fixture
def oracle() -> FakeOracle:
    return FakeOracle(dict(PRICES))


@pytest.fixture
def chain() -> FakeChain:
    return FakeChain()
