"""Fixed-point AMM math and unit conversion.

Constant-product formulas follow the Uniswap V2 router: all amounts are
integers in the token's smallest unit, fees are in basis points, and every
rounding step favors the pool.
"""

from decimal import ROUND_DOWN, Decimal

BPS_DENOMINATOR = 10_000


def get_amount_out(
    amount_in: int,
    reserve_in: int,
    reserve_out: int,
    fee_bps: int = 30,
) -> int:
    """Output amount for an exact-input swap against a constant-product pool.

    Args:
        amount_in: Input amount (smallest unit)
        reserve_in: Pool reserve of the input token
        reserve_out: Pool reserve of the output token
        fee_bps: Pool fee in basis points

    Returns:
        Output amount, rounded down. Zero for empty input or an empty pool.
    """
    if amount_in <= 0 or reserve_in <= 0 or reserve_out <= 0:
        return 0
    amount_in_with_fee = amount_in * (BPS_DENOMINATOR - fee_bps)
    numerator = amount_in_with_fee * reserve_out
    denominator = reserve_in * BPS_DENOMINATOR + amount_in_with_fee
    return numerator // denominator


def get_amount_in(
    amount_out: int,
    reserve_in: int,
    reserve_out: int,
    fee_bps: int = 30,
) -> int:
    """Input amount required to receive exactly ``amount_out``.

    Rounds up (floor + 1), so ``get_amount_in(get_amount_out(x)) >= x``.

    Raises:
        ValueError: If the pool cannot supply ``amount_out``
    """
    if amount_out <= 0:
        return 0
    if reserve_in <= 0 or amount_out >= reserve_out:
        msg = f"insufficient liquidity for amount_out={amount_out}"
        raise ValueError(msg)
    numerator = reserve_in * amount_out * BPS_DENOMINATOR
    denominator = (reserve_out - amount_out) * (BPS_DENOMINATOR - fee_bps)
    return numerator // denominator + 1


def min_output(amount: int, slippage_bps: int) -> int:
    """Pessimistic output after applying a slippage tolerance.

    ``slippage_bps`` is clamped to [0, 10000]; 10000 yields zero.
    """
    bps = max(0, min(BPS_DENOMINATOR, slippage_bps))
    return amount * (BPS_DENOMINATOR - bps) // BPS_DENOMINATOR


def price_impact_pct(
    amount_in: int,
    reserve_in: int,
    reserve_out: int,
    fee_bps: int = 30,
) -> float:
    """Price impact of a swap in percent, excluding the pool fee.

    For a constant-product pool the execution/spot price ratio after fees is
    ``r_in / (r_in + a)`` where ``a`` is the fee-adjusted input.
    """
    if amount_in <= 0 or reserve_in <= 0 or reserve_out <= 0:
        return 0.0
    effective_in = amount_in * (BPS_DENOMINATOR - fee_bps) / BPS_DENOMINATOR
    return effective_in / (reserve_in + effective_in) * 100.0


def spot_price(
    reserve_in: int,
    reserve_out: int,
    decimals_in: int,
    decimals_out: int,
) -> float:
    """Units of output token per unit of input token at the pool's spot price."""
    if reserve_in <= 0:
        return 0.0
    return (reserve_out / 10**decimals_out) / (reserve_in / 10**decimals_in)


def to_wei(amount: Decimal | str | int | float, decimals: int) -> int:
    """Convert a human-readable amount to the smallest unit, rounding down."""
    value = Decimal(str(amount)) * (Decimal(10) ** decimals)
    return int(value.quantize(Decimal(1), rounding=ROUND_DOWN))


def from_wei(amount: int, decimals: int) -> Decimal:
    """Convert a smallest-unit amount to a Decimal in whole tokens."""
    return Decimal(amount) / (Decimal(10) ** decimals)


def normalize_decimals(amount: int, from_decimals: int, to_decimals: int) -> int:
    """Rescale an integer amount between decimal precisions (rounding down)."""
    if from_decimals == to_decimals:
        return amount
    if from_decimals > to_decimals:
        return amount // 10 ** (from_decimals - to_decimals)
    return amount * 10 ** (to_decimals - from_decimals)


def token_amount_to_usd(amount: int, decimals: int, price_usd: float) -> float:
    return float(from_wei(amount, decimals)) * price_usd


def usd_to_token_amount(usd: float, price_usd: float, decimals: int) -> int:
    """Token amount worth ``usd`` at ``price_usd``; zero for a non-positive price."""
    if price_usd <= 0:
        return 0
    return to_wei(Decimal(str(usd)) / Decimal(str(price_usd)), decimals)


def gas_cost_usd(gas_used: int, gas_price_wei: int, native_price_usd: float) -> float:
    """USD cost of ``gas_used`` at ``gas_price_wei`` (native asset has 18 decimals)."""
    return token_amount_to_usd(gas_used * gas_price_wei, 18, native_price_usd)
