"""Exchange connector interface and startup-time venue selection.

Every venue kind (classic constant-product pools, concentrated liquidity,
stable-swap) implements the same ``ExchangeConnector`` protocol. The concrete
class is chosen once when the registry is built; callers never branch on the
shape of a venue's responses.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable, Mapping, Sequence
from enum import StrEnum
from typing import Protocol, runtime_checkable

import msgspec
import structlog

from polyarb.core.execution import TxRequest
from polyarb.core.types import Reserves

log = structlog.get_logger()


class VenueKind(StrEnum):
    CONSTANT_PRODUCT = "constant_product"
    CONCENTRATED = "concentrated"
    STABLE_SWAP = "stable_swap"


class SwapParams(msgspec.Struct, frozen=True, kw_only=True):
    """Single-hop exact-input swap."""

    token_in: str
    token_out: str
    amount_in: int
    amount_out_min: int
    recipient: str
    deadline: int


@runtime_checkable
class ExchangeConnector(Protocol):
    """Per-venue quoting and transaction building.

    All methods are fallible and latency-bearing. Caching is the connector's
    concern; callers wrap each call in a timeout.
    """

    name: str
    kind: VenueKind
    fee_bps: int

    async def quote_out(self, path: Sequence[str], amount_in: int) -> list[int]:
        """Amounts along ``path`` for an exact input; last element is the output."""
        ...

    async def quote_in(self, path: Sequence[str], amount_out: int) -> list[int]:
        """Amounts along ``path`` for an exact output; first element is the input."""
        ...

    async def build_swap_tx(self, params: SwapParams) -> TxRequest:
        """Unsigned swap transaction (to, data, value)."""
        ...

    async def get_reserves(self, token_a: str, token_b: str) -> Reserves | None:
        """Reserves ordered as (token_a, token_b), None if no pool."""
        ...

    async def pair_exists(self, token_a: str, token_b: str) -> bool: ...


type ConnectorFactory = Callable[[str], ExchangeConnector]


class ConnectorRegistry:
    """Maps venue names to connectors built once at startup."""

    def __init__(self, factories: Mapping[VenueKind, ConnectorFactory]) -> None:
        self._factories = dict(factories)
        self._connectors: dict[str, ExchangeConnector] = {}

    def register(self, name: str, kind: VenueKind) -> ExchangeConnector:
        """Build and register the connector for ``name``.

        Raises:
            ValueError: If no factory handles ``kind``
        """
        factory = self._factories.get(kind)
        if factory is None:
            msg = f"No connector implementation for venue kind {kind!s} ({name})"
            raise ValueError(msg)
        connector = factory(name)
        self._connectors[name] = connector
        log.info("connector.registered", venue=name, kind=str(kind))
        return connector

    def add(self, connector: ExchangeConnector) -> None:
        self._connectors[connector.name] = connector

    def get(self, name: str) -> ExchangeConnector:
        try:
            return self._connectors[name]
        except KeyError:
            msg = f"No connector registered for exchange: {name}"
            raise KeyError(msg) from None

    def all(self) -> list[ExchangeConnector]:
        return list(self._connectors.values())

    def names(self) -> list[str]:
        return list(self._connectors)

    def __contains__(self, name: object) -> bool:
        return name in self._connectors

    def __len__(self) -> int:
        return len(self._connectors)

    @classmethod
    def from_connectors(cls, connectors: Iterable[ExchangeConnector]) -> ConnectorRegistry:
        registry = cls({})
        for connector in connectors:
            registry.add(connector)
        return registry
