"""Arbitrage path discovery over the liquidity graph.

Discovers two shapes of opportunity:
- Triangular: A -> B -> C -> A, one exchange per hop
- Cross-exchange: A -> B on one exchange, B -> A on another

Results are cached for a short TTL. Staleness is safe because the Simulator
always re-quotes live before anything is executed.
"""

from __future__ import annotations

import itertools
import time
from collections.abc import Iterable, Sequence
from dataclasses import dataclass

import structlog

from polyarb.arb.graph import LiquidityGraph
from polyarb.core.types import ArbitragePath, PathKind, Token, TradingPair
from polyarb.dex.connector import ConnectorRegistry, ExchangeConnector
from polyarb.dex.tokens import COMMON_TOKENS
from polyarb.utils.resilience import BoundedGather, with_timeout

log = structlog.get_logger()

type CacheKey = tuple[PathKind, tuple[str, ...], int]


@dataclass
class PathfinderConfig:
    """Discovery settings."""

    common_tokens: tuple[Token, ...] = COMMON_TOKENS
    cache_ttl_seconds: float = 5.0
    enable_triangular: bool = True
    enable_cross_dex: bool = True
    max_triangular_paths: int = 50
    max_cross_dex_paths: int = 10
    call_timeout: float = 10.0
    max_concurrent_calls: int = 8


class Pathfinder:
    """Builds the graph from connectors and enumerates candidate paths."""

    def __init__(
        self,
        connectors: ConnectorRegistry,
        config: PathfinderConfig | None = None,
    ) -> None:
        self.connectors = connectors
        self.config = config or PathfinderConfig()
        self.graph = LiquidityGraph()
        self._cache: dict[CacheKey, tuple[float, list[ArbitragePath]]] = {}
        self.last_build_at: float | None = None

    # ------------------------------------------------------------------
    # Graph construction
    # ------------------------------------------------------------------

    async def build(self, connectors: Iterable[ExchangeConnector] | None = None) -> LiquidityGraph:
        """Probe every unordered common-token pair on every connector.

        A pair that is missing or whose probe fails is simply absent from the
        graph. The new graph replaces the old one only once fully built.
        """
        venues = list(connectors) if connectors is not None else self.connectors.all()
        pairs = list(itertools.combinations(self.config.common_tokens, 2))
        jobs = [(venue, a, b) for venue in venues for a, b in pairs]

        pool = BoundedGather(self.config.max_concurrent_calls)
        results = await pool.map(self._probe, jobs)

        graph = LiquidityGraph()
        for token in self.config.common_tokens:
            graph.add_token(token)
        for (venue, a, b), result in zip(jobs, results, strict=True):
            if isinstance(result, BaseException):
                log.debug(
                    "pathfinder.pair_probe_failed",
                    venue=venue.name,
                    pair=f"{a.symbol}/{b.symbol}",
                    error=str(result),
                )
            elif result is not None:
                graph.add_edge(result)

        self.graph = graph
        self.clear_cache()
        self.last_build_at = time.time()
        log.info("pathfinder.graph_built", venues=len(venues), **graph.stats())
        return graph

    async def _probe(self, job: tuple[ExchangeConnector, Token, Token]) -> TradingPair | None:
        venue, a, b = job
        timeout = self.config.call_timeout
        if not await with_timeout(venue.pair_exists(a.address, b.address), timeout):
            return None
        reserves = await with_timeout(venue.get_reserves(a.address, b.address), timeout)
        if reserves is None:
            return None
        return TradingPair(
            token_a=a,
            token_b=b,
            exchange=venue.name,
            fee_bps=venue.fee_bps,
            reserves=reserves,
        )

    # ------------------------------------------------------------------
    # Cache
    # ------------------------------------------------------------------

    def _cached(self, key: CacheKey) -> list[ArbitragePath] | None:
        entry = self._cache.get(key)
        if entry is None:
            return None
        stored_at, paths = entry
        if time.monotonic() - stored_at >= self.config.cache_ttl_seconds:
            del self._cache[key]
            return None
        return paths

    def _store(self, key: CacheKey, paths: list[ArbitragePath]) -> list[ArbitragePath]:
        self._cache[key] = (time.monotonic(), paths)
        return paths

    def clear_cache(self) -> None:
        self._cache.clear()

    # ------------------------------------------------------------------
    # Discovery
    # ------------------------------------------------------------------

    def find_triangular_paths(
        self,
        start: Token | None = None,
        max_paths: int | None = None,
    ) -> list[ArbitragePath]:
        """Closed three-hop cycles, optionally restricted to one start token.

        For every hop the edge with the largest combined reserve is used.
        """
        limit = max_paths if max_paths is not None else self.config.max_triangular_paths
        key: CacheKey = (PathKind.TRIANGULAR, (start.key,) if start else ("*",), limit)
        cached = self._cached(key)
        if cached is not None:
            return cached

        graph = self.graph
        starts = [start] if start is not None else graph.tokens
        paths: list[ArbitragePath] = []

        for first in starts:
            for middle in graph.neighbors(first):
                for last in graph.neighbors(middle):
                    if last.key in (first.key, middle.key):
                        continue
                    if first.key not in {t.key for t in graph.neighbors(last)}:
                        continue
                    path = self._triangle(first, middle, last)
                    if path is None:
                        continue
                    paths.append(path)
                    if len(paths) >= limit:
                        return self._store(key, paths)

        return self._store(key, paths)

    def _triangle(self, a: Token, b: Token, c: Token) -> ArbitragePath | None:
        hops = [self.graph.best_edge(a, b), self.graph.best_edge(b, c), self.graph.best_edge(c, a)]
        if any(edge is None for edge in hops):
            return None
        edges: list[TradingPair] = hops  # type: ignore[assignment]
        exchanges = tuple(edge.exchange for edge in edges)
        return ArbitragePath(
            id=f"triangular-{a.symbol}-{b.symbol}-{c.symbol}-{'-'.join(exchanges)}",
            kind=PathKind.TRIANGULAR,
            tokens=(a, b, c, a),
            exchanges=exchanges,
            pairs=tuple(edges),
            requires_flash_loan=False,
        )

    def find_cross_dex_paths(
        self,
        token_a: Token,
        token_b: Token,
        max_paths: int | None = None,
    ) -> list[ArbitragePath]:
        """Buy on one exchange, sell on another, for every ordered venue pair.

        Emits a forward (starting from ``token_a``) and a reverse (starting
        from ``token_b``) path per ordered pair. Venues quoting an identical
        spot price are skipped since no spread exists between them.
        """
        limit = max_paths if max_paths is not None else self.config.max_cross_dex_paths
        key: CacheKey = (PathKind.CROSS_EXCHANGE, tuple(sorted((token_a.key, token_b.key))), limit)
        cached = self._cached(key)
        if cached is not None:
            return cached

        edges = [e for e in self.graph.edges(token_a, token_b) if e.reserves is not None]
        paths: list[ArbitragePath] = []

        for first, second in itertools.permutations(edges, 2):
            if _same_price(first, second):
                continue
            for start, other in ((token_a, token_b), (token_b, token_a)):
                direction = "fwd" if start is token_a else "rev"
                paths.append(
                    ArbitragePath(
                        id=(
                            f"crossdex-{start.symbol}-{other.symbol}-"
                            f"{first.exchange}-{second.exchange}-{direction}"
                        ),
                        kind=PathKind.CROSS_EXCHANGE,
                        tokens=(start, other, start),
                        exchanges=(first.exchange, second.exchange),
                        pairs=(first, second),
                        requires_flash_loan=True,
                    )
                )
                if len(paths) >= limit:
                    return self._store(key, paths)

        return self._store(key, paths)

    def enumerate_paths(self, max_paths: int = 100) -> list[ArbitragePath]:
        """All enabled path shapes across the graph, capped at ``max_paths``."""
        paths: list[ArbitragePath] = []
        if self.config.enable_triangular:
            paths.extend(self.find_triangular_paths())
        if self.config.enable_cross_dex:
            for a, b in itertools.combinations(self.graph.tokens, 2):
                if len(self.graph.edges(a, b)) >= 2:
                    paths.extend(self.find_cross_dex_paths(a, b))
        return _dedupe(paths)[:max_paths]


def _same_price(x: TradingPair, y: TradingPair) -> bool:
    """True when both pools quote the same spot price (exact, by cross-multiplication)."""
    rx, ry = x.reserves, y.reserves
    if rx is None or ry is None:
        return False
    # Orient y's reserves to x's token order.
    ya, yb = (ry.reserve_a, ry.reserve_b) if y.token_a.key == x.token_a.key else (ry.reserve_b, ry.reserve_a)
    return rx.reserve_a * yb == ya * rx.reserve_b


def _dedupe(paths: Sequence[ArbitragePath]) -> list[ArbitragePath]:
    seen: set[str] = set()
    unique: list[ArbitragePath] = []
    for path in paths:
        if path.id not in seen:
            seen.add(path.id)
            unique.append(path)
    return unique
