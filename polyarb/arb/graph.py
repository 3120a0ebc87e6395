"""In-memory liquidity multigraph.

Nodes are tokens keyed by lowercase address; each unordered token pair holds
one edge per exchange that has a pool for it.
"""

from __future__ import annotations

from collections import defaultdict

from polyarb.core.types import ExchangeId, Token, TradingPair


def _pair_key(a: Token, b: Token) -> tuple[str, str]:
    return (a.key, b.key) if a.key <= b.key else (b.key, a.key)


class LiquidityGraph:
    """Tokens plus per-exchange pair edges."""

    def __init__(self) -> None:
        self._tokens: dict[str, Token] = {}
        self._adjacency: dict[str, set[str]] = defaultdict(set)
        # pair key -> exchange -> edge
        self._edges: dict[tuple[str, str], dict[ExchangeId, TradingPair]] = defaultdict(dict)

    def add_token(self, token: Token) -> None:
        self._tokens.setdefault(token.key, token)

    def add_edge(self, pair: TradingPair) -> None:
        """Insert or replace the edge for (pair tokens, exchange).

        Raises:
            ValueError: On a self-loop or a fee outside [0, 10000)
        """
        if pair.token_a.key == pair.token_b.key:
            msg = f"Self-loop pair on {pair.exchange}: {pair.token_a.symbol}"
            raise ValueError(msg)
        if not 0 <= pair.fee_bps < 10_000:
            msg = f"fee_bps out of range: {pair.fee_bps}"
            raise ValueError(msg)

        self.add_token(pair.token_a)
        self.add_token(pair.token_b)
        self._adjacency[pair.token_a.key].add(pair.token_b.key)
        self._adjacency[pair.token_b.key].add(pair.token_a.key)
        self._edges[_pair_key(pair.token_a, pair.token_b)][pair.exchange] = pair

    def clear(self) -> None:
        self._tokens.clear()
        self._adjacency.clear()
        self._edges.clear()

    def token(self, key: str) -> Token | None:
        return self._tokens.get(key.lower())

    @property
    def tokens(self) -> list[Token]:
        return list(self._tokens.values())

    def neighbors(self, token: Token) -> list[Token]:
        """Tokens sharing at least one pool with ``token``, in stable order."""
        return [self._tokens[k] for k in sorted(self._adjacency.get(token.key, ()))]

    def edges(self, a: Token, b: Token) -> list[TradingPair]:
        """All exchange edges between ``a`` and ``b``."""
        return list(self._edges.get(_pair_key(a, b), {}).values())

    def best_edge(self, a: Token, b: Token) -> TradingPair | None:
        """Edge with the largest combined reserve, ignoring edges without reserves."""
        candidates = [e for e in self.edges(a, b) if e.reserves is not None]
        if not candidates:
            return None
        return max(candidates, key=lambda e: e.reserves.total)  # type: ignore[union-attr]

    def stats(self) -> dict[str, int]:
        return {
            "tokens": len(self._tokens),
            "pairs": len(self._edges),
            "edges": sum(len(by_exchange) for by_exchange in self._edges.values()),
        }
