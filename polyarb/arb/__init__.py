"""Path discovery, simulation and opportunity selection."""
