"""Deterministic fixed-point simulation of multi-hop arbitrage paths.

Per hop the simulator asks the venue's connector for a live quote, the price
oracle for a price-impact estimate and the chain for a gas estimate; the
running amount propagates hop to hop. A hop failure never raises: it becomes
a zero-output, zero-confidence result carrying the error as a warning, so a
single bad path cannot abort a scan cycle.
"""

from __future__ import annotations

import time
from collections.abc import Sequence
from dataclasses import dataclass

import structlog

from polyarb.core import amm
from polyarb.core.types import ArbitragePath, HopBreakdown, SimulationResult, Token
from polyarb.dex.connector import ConnectorRegistry, SwapParams
from polyarb.dex.price_oracle import PriceOracle
from polyarb.dex.tokens import FLASH_LOAN_FEE_BPS, NATIVE_WRAPPED
from polyarb.live.chain import ChainClient
from polyarb.utils.resilience import BoundedGather, with_timeout

log = structlog.get_logger()

GWEI = 10**9


@dataclass
class SimulatorConfig:
    """Simulation thresholds and refresh intervals."""

    min_profit_usd: float = 0.1
    min_confidence: float = 0.6
    default_slippage_bps: int = 50
    default_gas_per_hop: int = 150_000
    impact_warning_pct: float = 2.0
    gas_price_ttl_seconds: float = 30.0
    native_price_ttl_seconds: float = 60.0
    fallback_gas_price_gwei: float = 500.0
    fallback_native_price_usd: float = 0.8
    mev_gas_multiplier: float = 1.2
    tx_deadline_seconds: int = 1200
    call_timeout: float = 10.0
    max_concurrent_simulations: int = 2


def confidence_score(price_impact_pct: float, profit_usd: float, warning_count: int) -> float:
    """Heuristic confidence in [0, 1].

    Starts at 1.0; each impact tier crossed (1/2/3/5 %) multiplies in a
    penalty, as do small profits (< $10, < $5) and each warning.
    """
    confidence = 1.0
    if price_impact_pct > 1:
        confidence *= 0.9
    if price_impact_pct > 2:
        confidence *= 0.8
    if price_impact_pct > 3:
        confidence *= 0.7
    if price_impact_pct > 5:
        confidence *= 0.5
    if profit_usd < 10:
        confidence *= 0.8
    if profit_usd < 5:
        confidence *= 0.6
    confidence *= 0.9**warning_count
    return max(0.0, min(1.0, confidence))


@dataclass
class _HopRun:
    output_amount: int
    total_gas: int
    price_impact_pct: float
    warnings: list[str]
    breakdown: list[HopBreakdown]


class Simulator:
    """Quotes a path hop by hop and prices the outcome in USD."""

    def __init__(
        self,
        connectors: ConnectorRegistry,
        oracle: PriceOracle,
        chain: ChainClient,
        config: SimulatorConfig | None = None,
        *,
        native_token: Token = NATIVE_WRAPPED,
    ) -> None:
        self.connectors = connectors
        self.oracle = oracle
        self.chain = chain
        self.config = config or SimulatorConfig()
        self.native_token = native_token

        self._gas_price: tuple[int, float] | None = None
        self._native_price: tuple[float, float] | None = None

    # ------------------------------------------------------------------
    # Market inputs
    # ------------------------------------------------------------------

    async def gas_price(self) -> int:
        """Current fee per gas in wei, refreshed at most every gas_price_ttl_seconds."""
        now = time.monotonic()
        if self._gas_price and now - self._gas_price[1] < self.config.gas_price_ttl_seconds:
            return self._gas_price[0]
        try:
            fee = await with_timeout(self.chain.get_fee_estimate(), self.config.call_timeout)
            price = fee.base_fee + fee.priority_fee
        except Exception as e:
            price = int(self.config.fallback_gas_price_gwei * GWEI)
            log.debug("simulator.gas_price_fallback", error=str(e), gwei=self.config.fallback_gas_price_gwei)
        self._gas_price = (price, now)
        return price

    async def native_price_usd(self) -> float:
        now = time.monotonic()
        if self._native_price and now - self._native_price[1] < self.config.native_price_ttl_seconds:
            return self._native_price[0]
        try:
            price = await with_timeout(
                self.oracle.get_usd_price(self.native_token), self.config.call_timeout
            )
        except Exception as e:
            log.debug("simulator.native_price_failed", error=str(e))
            price = None
        if price is None:
            price = self._native_price[0] if self._native_price else self.config.fallback_native_price_usd
        self._native_price = (price, now)
        return price

    async def _token_price(self, token: Token) -> float | None:
        try:
            return await with_timeout(self.oracle.get_usd_price(token), self.config.call_timeout)
        except Exception as e:
            log.debug("simulator.token_price_failed", token=token.symbol, error=str(e))
            return None

    # ------------------------------------------------------------------
    # Simulation
    # ------------------------------------------------------------------

    async def _estimate_hop_gas(self, exchange: str, token_in: Token, token_out: Token, amount_in: int) -> int:
        connector = self.connectors.get(exchange)
        timeout = self.config.call_timeout
        try:
            tx = await with_timeout(
                connector.build_swap_tx(
                    SwapParams(
                        token_in=token_in.address,
                        token_out=token_out.address,
                        amount_in=amount_in,
                        amount_out_min=0,
                        recipient=self.chain.address,
                        deadline=int(time.time()) + self.config.tx_deadline_seconds,
                    )
                ),
                timeout,
            )
            return await with_timeout(self.chain.estimate_gas(tx), timeout)
        except Exception:
            # Estimation reverts without balances/approvals, which is expected off-chain.
            return self.config.default_gas_per_hop

    async def _run_hops(self, path: ArbitragePath, input_amount: int) -> _HopRun:
        timeout = self.config.call_timeout
        amount = input_amount
        total_gas = 0
        total_impact = 0.0
        warnings: list[str] = []
        breakdown: list[HopBreakdown] = []

        for index in range(path.hops):
            token_in, token_out, exchange = path.hop(index)
            connector = self.connectors.get(exchange)
            amounts = await with_timeout(
                connector.quote_out([token_in.address, token_out.address], amount),
                timeout,
                f"quote timed out on {exchange}",
            )
            amount_out = int(amounts[-1])
            if amount_out <= 0:
                msg = f"zero output quoted on {exchange} for {token_in.symbol}->{token_out.symbol}"
                raise ValueError(msg)

            impact = await with_timeout(
                self.oracle.get_price_impact(token_in, token_out, amount, exchange), timeout
            )
            gas = await self._estimate_hop_gas(exchange, token_in, token_out, amount)

            breakdown.append(
                HopBreakdown(
                    step=index + 1,
                    token_in=token_in,
                    token_out=token_out,
                    exchange=exchange,
                    amount_in=amount,
                    amount_out=amount_out,
                    price_impact_pct=impact,
                    gas_estimate=gas,
                )
            )
            total_gas += gas
            # Summed rather than compounded across hops.
            total_impact += impact
            if impact > self.config.impact_warning_pct:
                warnings.append(f"High price impact on step {index + 1}: {impact:.2f}%")
            amount = amount_out

        return _HopRun(
            output_amount=amount,
            total_gas=total_gas,
            price_impact_pct=total_impact,
            warnings=warnings,
            breakdown=breakdown,
        )

    async def _finalize(
        self,
        path: ArbitragePath,
        input_amount: int,
        run: _HopRun,
        slippage_bps: int,
        *,
        repay_amount: int | None = None,
        flash_loan_fee: int = 0,
        gas_multiplier: float = 1.0,
    ) -> SimulationResult:
        token = path.start_token
        warnings = list(run.warnings)

        total_gas = int(run.total_gas * gas_multiplier)
        gas_price = await self.gas_price()
        native_price = await self.native_price_usd()
        gas_cost = total_gas * gas_price
        gas_cost_usd = amm.gas_cost_usd(total_gas, gas_price, native_price)

        minimum_out = amm.min_output(run.output_amount, slippage_bps)
        owed = repay_amount if repay_amount is not None else input_amount
        gross_profit = max(0, minimum_out - owed - flash_loan_fee)

        token_price = await self._token_price(token)
        if token_price is None:
            warnings.append(f"No USD price for {token.symbol}")
            gross_profit_usd = 0.0
            gas_in_token = 0
        else:
            gross_profit_usd = amm.token_amount_to_usd(gross_profit, token.decimals, token_price)
            gas_in_token = amm.usd_to_token_amount(gas_cost_usd, token_price, token.decimals)

        net_profit = gross_profit - gas_in_token
        net_profit_usd = gross_profit_usd - gas_cost_usd
        confidence = confidence_score(run.price_impact_pct, net_profit_usd, len(warnings))
        is_profitable = (
            token_price is not None
            and net_profit > 0
            and net_profit_usd >= self.config.min_profit_usd
            and confidence >= self.config.min_confidence
        )

        return SimulationResult(
            path=path,
            input_amount=input_amount,
            output_amount=run.output_amount,
            min_output=minimum_out,
            gross_profit=gross_profit,
            gas_cost=gas_cost,
            net_profit=net_profit,
            net_profit_usd=net_profit_usd,
            gross_profit_usd=gross_profit_usd,
            gas_cost_usd=gas_cost_usd,
            gas_price=gas_price,
            total_gas=total_gas,
            price_impact_pct=run.price_impact_pct,
            slippage_pct=slippage_bps / 100,
            confidence=confidence,
            is_profitable=is_profitable,
            token_price_usd=token_price,
            native_price_usd=native_price,
            flash_loan_fee=flash_loan_fee,
            warnings=tuple(warnings),
            breakdown=tuple(run.breakdown),
        )

    def _failed(self, path: ArbitragePath, input_amount: int, slippage_bps: int, error: BaseException) -> SimulationResult:
        log.debug("simulator.path_failed", path=path.id, error=str(error))
        return SimulationResult(
            path=path,
            input_amount=input_amount,
            output_amount=0,
            min_output=0,
            gross_profit=0,
            gas_cost=0,
            net_profit=0,
            net_profit_usd=0.0,
            price_impact_pct=100.0,
            slippage_pct=slippage_bps / 100,
            confidence=0.0,
            is_profitable=False,
            warnings=(f"Simulation error: {error}",),
        )

    async def simulate(
        self,
        path: ArbitragePath,
        input_amount: int,
        slippage_bps: int | None = None,
    ) -> SimulationResult:
        """Simulate ``input_amount`` of the start token through ``path``.

        Never raises; check ``is_profitable`` on the result.
        """
        bps = self.config.default_slippage_bps if slippage_bps is None else slippage_bps
        try:
            run = await self._run_hops(path, input_amount)
            return await self._finalize(path, input_amount, run, bps)
        except Exception as e:
            return self._failed(path, input_amount, bps, e)

    async def simulate_with_mev_protection(
        self,
        path: ArbitragePath,
        input_amount: int,
        slippage_bps: int | None = None,
    ) -> SimulationResult:
        """Variant budgeting the extra gas a private-relay submission costs."""
        bps = self.config.default_slippage_bps if slippage_bps is None else slippage_bps
        try:
            run = await self._run_hops(path, input_amount)
            run.warnings.append("MEV protection enabled: gas budget increased")
            return await self._finalize(
                path, input_amount, run, bps, gas_multiplier=self.config.mev_gas_multiplier
            )
        except Exception as e:
            return self._failed(path, input_amount, bps, e)

    async def simulate_flash_loan(
        self,
        path: ArbitragePath,
        loan_amount: int,
        provider: str = "aave",
        slippage_bps: int | None = None,
    ) -> SimulationResult:
        """Simulate at ``loan_amount`` and repay principal plus the provider fee.

        Raises:
            ValueError: For an unknown flash-loan provider
        """
        if provider not in FLASH_LOAN_FEE_BPS:
            msg = f"Unknown flash loan provider: {provider}"
            raise ValueError(msg)
        fee = loan_amount * FLASH_LOAN_FEE_BPS[provider] // amm.BPS_DENOMINATOR
        bps = self.config.default_slippage_bps if slippage_bps is None else slippage_bps
        try:
            run = await self._run_hops(path, loan_amount)
            return await self._finalize(
                path, loan_amount, run, bps, repay_amount=loan_amount, flash_loan_fee=fee
            )
        except Exception as e:
            return self._failed(path, loan_amount, bps, e)

    async def batch_simulate(
        self,
        paths: Sequence[ArbitragePath],
        amounts: Sequence[int],
        slippage_bps: int | None = None,
        *,
        mev_protection: bool = False,
    ) -> list[SimulationResult]:
        """Simulate many paths concurrently, bounded by max_concurrent_simulations.

        With ``mev_protection`` every path is costed for private-relay submission.
        """
        pool = BoundedGather(self.config.max_concurrent_simulations)
        simulate = self.simulate_with_mev_protection if mev_protection else self.simulate

        async def run(job: tuple[ArbitragePath, int]) -> SimulationResult:
            return await simulate(job[0], job[1], slippage_bps)

        results = await pool.map(run, list(zip(paths, amounts, strict=True)))
        return [
            r if isinstance(r, SimulationResult) else self._failed(p, a, self.config.default_slippage_bps, r)
            for r, p, a in zip(results, paths, amounts, strict=True)
        ]


def validate_simulation(simulation: SimulationResult) -> tuple[bool, list[str]]:
    """Sanity checks on a simulation before it is trusted.

    Returns:
        (valid, issues) where issues lists every failed check
    """
    issues: list[str] = []
    if simulation.price_impact_pct > 10:
        issues.append(f"Price impact too high: {simulation.price_impact_pct:.2f}%")
    if simulation.confidence < 0.5:
        issues.append(f"Confidence too low: {simulation.confidence:.2f}")
    if simulation.gross_profit_usd > 0 and simulation.gas_cost_ratio > 0.5:
        issues.append(f"Gas cost ratio too high: {simulation.gas_cost_ratio:.2f}")
    return not issues, issues
