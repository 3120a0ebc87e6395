"""Position sizing for arbitrage trades.

Kelly criterion in its discrete-bet form:

    f* = (p * b - q) / b

where p is the win probability, q = 1 - p and b is the payoff per unit
staked. For an arbitrage, p is the simulator's confidence score and b is the
simulated profit divided by the trade size. The confidence score is a
heuristic from a single simulated outcome rather than a modeled win/loss
distribution, so the fraction is scaled down hard before use.
"""

DEFAULT_KELLY_FRACTION = 0.3


def kelly_fraction(win_probability: float, profit_ratio: float) -> float:
    """Unscaled, unclamped Kelly fraction.

    Args:
        win_probability: Probability of the trade paying off (p)
        profit_ratio: Profit per unit of capital staked (b)

    Returns:
        Raw Kelly fraction; negative when the bet has no edge
    """
    if profit_ratio <= 0:
        return 0.0
    loss_probability = 1.0 - win_probability
    return (win_probability * profit_ratio - loss_probability) / profit_ratio


def fractional_kelly(
    win_probability: float,
    profit_ratio: float,
    *,
    fraction: float = DEFAULT_KELLY_FRACTION,
) -> float:
    """Fractional Kelly sizing clamped to [0, 1].

    Common fractions:
    - 0.5 (half Kelly): reduces volatility by ~50%, growth by ~25%
    - 0.3: default here, the confidence input is only a heuristic
    - 1.0 (full Kelly): maximum growth, high volatility

    Args:
        win_probability: Probability of the trade paying off
        profit_ratio: Profit per unit of capital staked
        fraction: Kelly fraction to use

    Returns:
        Position size as fraction of the proposed trade [0, 1]
    """
    raw = kelly_fraction(win_probability, profit_ratio)
    return max(0.0, min(1.0, raw * fraction))
