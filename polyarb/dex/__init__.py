"""DEX connectors, price oracle and Polygon token metadata."""

from polyarb.dex.connector import ConnectorRegistry, ExchangeConnector, SwapParams, VenueKind
from polyarb.dex.price_oracle import PriceOracle, ReservePriceOracle
from polyarb.dex.v2_connector import V2RouterConnector

__all__ = [
    "ConnectorRegistry",
    "ExchangeConnector",
    "PriceOracle",
    "ReservePriceOracle",
    "SwapParams",
    "V2RouterConnector",
    "VenueKind",
]
