"""Shared domain types for path discovery, simulation and ranking.

All value objects are immutable msgspec Structs: a re-simulation or a resized
trade produces a new object rather than mutating the old one.
"""

from __future__ import annotations

import time
from enum import StrEnum

import msgspec

# Type aliases using PEP 695 syntax
type Address = str
type ExchangeId = str
type Wei = int  # smallest on-chain unit of a token or of the native asset


class Token(msgspec.Struct, frozen=True, kw_only=True):
    """ERC20 token metadata.

    Identity is the address; use ``key`` when indexing so checksum and
    lowercase spellings of the same address collapse to one token.
    """

    address: Address
    symbol: str
    decimals: int

    @property
    def key(self) -> str:
        return self.address.lower()


class Reserves(msgspec.Struct, frozen=True, kw_only=True):
    """Pool reserves ordered to match the (token_a, token_b) of the pair."""

    reserve_a: Wei
    reserve_b: Wei

    @property
    def total(self) -> int:
        return self.reserve_a + self.reserve_b


class TradingPair(msgspec.Struct, frozen=True, kw_only=True):
    """One exchange's pool for a token pair, as observed at ``observed_at``.

    A snapshot that may be stale by the time it is used; the Simulator always
    re-quotes before trusting any number derived from it.
    """

    token_a: Token
    token_b: Token
    exchange: ExchangeId
    fee_bps: int = 30
    reserves: Reserves | None = None
    observed_at: float = msgspec.field(default_factory=time.time)

    def reserves_for(self, token_in: Token) -> tuple[int, int] | None:
        """Return (reserve_in, reserve_out) oriented for a swap from ``token_in``."""
        if self.reserves is None:
            return None
        if token_in.key == self.token_a.key:
            return self.reserves.reserve_a, self.reserves.reserve_b
        return self.reserves.reserve_b, self.reserves.reserve_a

    def other(self, token: Token) -> Token:
        return self.token_b if token.key == self.token_a.key else self.token_a


class PathKind(StrEnum):
    """Arbitrage path shape."""

    TRIANGULAR = "triangular"
    CROSS_EXCHANGE = "cross_exchange"


class ArbitragePath(msgspec.Struct, frozen=True, kw_only=True):
    """Ordered swap route.

    Attributes:
        id: Stable identifier, also used to dedupe active trades
        kind: Triangular or cross-exchange
        tokens: Tokens visited in order (closed for triangular paths)
        exchanges: Exchange used for each hop
        pairs: Pool snapshot used for each hop
        requires_flash_loan: True when settlement must be atomic
    """

    id: str
    kind: PathKind
    tokens: tuple[Token, ...]
    exchanges: tuple[ExchangeId, ...]
    pairs: tuple[TradingPair, ...]
    requires_flash_loan: bool = False

    @property
    def start_token(self) -> Token:
        return self.tokens[0]

    @property
    def hops(self) -> int:
        return len(self.exchanges)

    def hop(self, index: int) -> tuple[Token, Token, ExchangeId]:
        """Return (token_in, token_out, exchange) for hop ``index``."""
        return self.tokens[index], self.tokens[index + 1], self.exchanges[index]


class HopBreakdown(msgspec.Struct, frozen=True, kw_only=True):
    """Per-hop simulation detail."""

    step: int
    token_in: Token
    token_out: Token
    exchange: ExchangeId
    amount_in: Wei
    amount_out: Wei
    price_impact_pct: float
    gas_estimate: int


class SimulationResult(msgspec.Struct, frozen=True, kw_only=True):
    """Economic outcome of pushing ``input_amount`` through ``path``.

    Token amounts are in the start token's smallest unit; ``net_profit`` is
    signed. Gas figures are in the native asset's smallest unit.
    """

    path: ArbitragePath
    input_amount: Wei
    output_amount: Wei
    min_output: Wei
    gross_profit: Wei
    gas_cost: Wei
    net_profit: int
    net_profit_usd: float
    gross_profit_usd: float = 0.0
    gas_cost_usd: float = 0.0
    gas_price: Wei = 0
    total_gas: int = 0
    price_impact_pct: float = 0.0
    slippage_pct: float = 0.0
    confidence: float = 0.0
    is_profitable: bool = False
    token_price_usd: float | None = None
    native_price_usd: float = 0.0
    flash_loan_fee: Wei = 0
    warnings: tuple[str, ...] = ()
    breakdown: tuple[HopBreakdown, ...] = ()
    timestamp: float = msgspec.field(default_factory=time.time)

    @property
    def gas_cost_ratio(self) -> float:
        """Gas cost as a fraction of gross profit (1.0 when there is no profit)."""
        if self.gross_profit_usd <= 0:
            return 1.0
        return self.gas_cost_usd / self.gross_profit_usd


class ExecutionPriority(StrEnum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class RiskLevel(StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class RankedOpportunity(msgspec.Struct, frozen=True, kw_only=True):
    """A scored, sized simulation ready for the risk gate and executor."""

    simulation: SimulationResult
    score: float
    priority: ExecutionPriority
    risk_level: RiskLevel

    @property
    def path(self) -> ArbitragePath:
        return self.simulation.path

    @property
    def trade_usd(self) -> float:
        """USD value of the input amount, 0.0 when the token price is unknown."""
        price = self.simulation.token_price_usd
        if not price:
            return 0.0
        token = self.simulation.path.start_token
        return self.simulation.input_amount / 10**token.decimals * price
