"""Polygon token set and exchange deployments."""

from __future__ import annotations

from dataclasses import dataclass

from polyarb.core.types import Token

POLYGON_CHAIN_ID = 137

WMATIC = Token(address="0x0d500B1d8E8eF31E21C99d1Db9A6444d3ADf1270", symbol="WMATIC", decimals=18)
USDC = Token(address="0x2791Bca1f2de4661ED88A30C99A7a9449Aa84174", symbol="USDC", decimals=6)
USDT = Token(address="0xc2132D05D31c914a87C6611C10748AEb04B58e8F", symbol="USDT", decimals=6)
DAI = Token(address="0x8f3Cf7ad23Cd3CaDbD9735AFf958023239c6A063", symbol="DAI", decimals=18)
WETH = Token(address="0x7ceB23fD6bC0adD59E62ac25578270cFf1b9f619", symbol="WETH", decimals=18)
WBTC = Token(address="0x1BFD67037B42Cf73acF2047067bd4F2C47D9BfD6", symbol="WBTC", decimals=8)

# Bounded set the graph is built over; every unordered pair is probed.
COMMON_TOKENS: tuple[Token, ...] = (WMATIC, USDC, USDT, DAI, WETH, WBTC)

STABLECOINS: frozenset[str] = frozenset(t.key for t in (USDC, USDT, DAI))

NATIVE_WRAPPED = WMATIC


@dataclass(frozen=True)
class VenueDeployment:
    """Router/factory addresses for a constant-product exchange."""

    name: str
    router: str
    factory: str
    fee_bps: int = 30


VENUES: dict[str, VenueDeployment] = {
    "quickswap": VenueDeployment(
        name="quickswap",
        router="0xa5E0829CaCEd8fFDD4De3c43696c57F7D7A678ff",
        factory="0x5757371414417b8C6CAad45bAeF941aBc7d3Ab32",
    ),
    "sushiswap": VenueDeployment(
        name="sushiswap",
        router="0x1b02dA8Cb0d097eB8D57A175b88c7D8b47997506",
        factory="0xc35DADB65012eC5796536bD9864eD8773aBc74C4",
    ),
}

# Flash-loan provider fees in basis points.
FLASH_LOAN_FEE_BPS: dict[str, int] = {
    "aave": 9,
    "balancer": 0,
    "dodo": 1,
}

AAVE_POOL = "0x794a61358D6845594F94dc1DB02A252b5b4814aD"
BALANCER_VAULT = "0xBA12222222228d8Ba445958a75a0704d566BF2C8"


def token_by_key(key: str) -> Token | None:
    """Look up a common token by address (any case)."""
    for token in COMMON_TOKENS:
        if token.key == key.lower():
            return token
    return None
