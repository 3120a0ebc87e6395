"""Cross-exchange DEX arbitrage engine for Polygon."""

__version__ = "0.1.0"
