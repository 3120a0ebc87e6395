"""Tests for Kelly sizing of arbitrage trades."""

import pytest

from polyarb.core.sizing import DEFAULT_KELLY_FRACTION, fractional_kelly, kelly_fraction


class TestKellyFraction:
    """Tests for the raw Kelly fraction."""

    def test_formula(self) -> None:
        """f* = (p*b - q) / b."""
        assert kelly_fraction(0.99, 0.5) == pytest.approx((0.99 * 0.5 - 0.01) / 0.5)

    def test_no_edge_is_negative(self) -> None:
        """A heuristic confidence of 0.9 on a 5% payoff has no Kelly edge."""
        assert kelly_fraction(0.9, 0.05) == pytest.approx(-1.1)

    def test_non_positive_payoff_returns_zero(self) -> None:
        assert kelly_fraction(0.9, 0.0) == 0.0
        assert kelly_fraction(0.9, -0.1) == 0.0


class TestFractionalKelly:
    """Tests for fractional Kelly sizing."""

    def test_scaled_below_raw_for_positive_edge(self) -> None:
        """Scaling by the Kelly fraction shrinks a positive raw fraction."""
        raw = kelly_fraction(0.99, 0.5)
        size = fractional_kelly(0.99, 0.5)
        assert 0.0 < size < raw
        assert size == pytest.approx(raw * DEFAULT_KELLY_FRACTION)

    def test_confidence_090_profit_ratio_005_within_bounds(self) -> None:
        size = fractional_kelly(0.9, 0.05)
        assert 0.0 <= size <= 1.0
        # Negative raw Kelly clamps to zero.
        assert size == 0.0

    def test_clamped_to_one(self) -> None:
        assert fractional_kelly(1.0, 10.0, fraction=5.0) == 1.0

    @pytest.mark.parametrize("p,b", [(0.5, 0.01), (0.6, 0.2), (0.95, 1.5), (1.0, 0.001), (0.0, 3.0)])
    def test_always_within_unit_interval(self, p: float, b: float) -> None:
        assert 0.0 <= fractional_kelly(p, b) <= 1.0

    def test_smaller_fraction_sizes_smaller(self) -> None:
        half = fractional_kelly(0.99, 0.5, fraction=0.5)
        quarter = fractional_kelly(0.99, 0.5, fraction=0.25)
        assert quarter < half
