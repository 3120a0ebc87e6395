"""USD prices and price-impact estimates.

Price sources, in order:
1. Stablecoins are pinned at 1.0
2. CoinGecko token price API (Polygon contract addresses)
3. On-chain reserves against USDC on any registered venue
"""

from __future__ import annotations

import asyncio
import time
from typing import Protocol

import httpx
import structlog

from polyarb.core import amm
from polyarb.core.errors import OracleError
from polyarb.core.types import Token
from polyarb.dex.connector import ConnectorRegistry
from polyarb.dex.tokens import STABLECOINS, USDC
from polyarb.utils.resilience import with_timeout

log = structlog.get_logger()

COINGECKO_TOKEN_PRICE_URL = "https://api.coingecko.com/api/v3/simple/token_price/polygon-pos"


class PriceOracle(Protocol):
    """USD price feed and price-impact estimator."""

    async def get_usd_price(self, token: Token) -> float | None: ...

    async def get_price_impact(
        self,
        token_in: Token,
        token_out: Token,
        amount_in: int,
        venue: str | None = None,
    ) -> float:
        """Percent impact of swapping ``amount_in`` of ``token_in``."""
        ...


class ReservePriceOracle:
    """Oracle backed by connector reserves with an HTTP USD price source."""

    def __init__(
        self,
        connectors: ConnectorRegistry,
        *,
        cache_ttl_seconds: float = 30.0,
        http_timeout: float = 3.0,
        use_http: bool = True,
    ) -> None:
        """Initialize oracle.

        Args:
            connectors: Registered exchange connectors
            cache_ttl_seconds: How long to cache USD prices
            http_timeout: Timeout for the HTTP price source
            use_http: Disable to rely on reserves only
        """
        self.connectors = connectors
        self.cache_ttl_seconds = cache_ttl_seconds
        self.http_timeout = http_timeout
        self.use_http = use_http

        # Cache: token key -> (price, timestamp)
        self._cache: dict[str, tuple[float, float]] = {}

    async def get_usd_price(self, token: Token) -> float | None:
        if token.key in STABLECOINS:
            return 1.0

        cached = self._cache.get(token.key)
        if cached and time.monotonic() - cached[1] < self.cache_ttl_seconds:
            return cached[0]

        price = None
        if self.use_http:
            price = await self._try_coingecko(token)
        if price is None:
            price = await self._try_reserves(token)
        if price is None:
            log.warning("price_oracle.no_price", token=token.symbol)
            return None

        self._cache[token.key] = (price, time.monotonic())
        return price

    async def _try_coingecko(self, token: Token) -> float | None:
        try:
            params = {"contract_addresses": token.key, "vs_currencies": "usd"}
            async with httpx.AsyncClient(timeout=self.http_timeout) as client:
                response = await client.get(COINGECKO_TOKEN_PRICE_URL, params=params)
                response.raise_for_status()
                data = response.json()
            return float(data[token.key]["usd"])
        except Exception as e:
            log.debug("price_oracle.coingecko_failed", token=token.symbol, error=str(e))
            return None

    async def _try_reserves(self, token: Token) -> float | None:
        for connector in self.connectors.all():
            try:
                reserves = await with_timeout(
                    connector.get_reserves(token.address, USDC.address),
                    self.http_timeout,
                )
            except Exception as e:
                log.debug(
                    "price_oracle.reserves_failed",
                    venue=connector.name,
                    token=token.symbol,
                    error=str(e),
                )
                continue
            if reserves and reserves.reserve_a > 0:
                return amm.spot_price(
                    reserves.reserve_a, reserves.reserve_b, token.decimals, USDC.decimals
                )
        return None

    async def get_price_impact(
        self,
        token_in: Token,
        token_out: Token,
        amount_in: int,
        venue: str | None = None,
    ) -> float:
        """Impact on ``venue``, or the lowest impact across all venues.

        Raises:
            OracleError: If no venue reports reserves for the pair
        """
        connectors = [self.connectors.get(venue)] if venue else self.connectors.all()

        async def impact_on(connector) -> float | None:
            reserves = await with_timeout(
                connector.get_reserves(token_in.address, token_out.address),
                self.http_timeout,
            )
            if reserves is None:
                return None
            return amm.price_impact_pct(
                amount_in, reserves.reserve_a, reserves.reserve_b, connector.fee_bps
            )

        results = await asyncio.gather(
            *(impact_on(c) for c in connectors), return_exceptions=True
        )
        impacts = [r for r in results if isinstance(r, float)]
        if not impacts:
            msg = f"No reserves for {token_in.symbol}/{token_out.symbol}"
            raise OracleError(msg)
        return min(impacts)
