from decimal import Decimal

import pytest

import price_math
from errors import InvalidPriceInput
from price_math import (Q96, format_units, get_amounts_for_liquidity, is_in_range, price_from_sqrt,
                        price_from_tick, tick_to_sqrt_price_x96, to_units)
from tests.conftest import sqrt_for_price


class TestPriceFromSqrt:
    def test_unit_price_equal_decimals(self):
        assert price_from_sqrt(Q96, 18, 18) == "1"

    def test_zero_decimals_match_general_formula(self):
        assert price_from_sqrt(Q96, 0, 0) == "1"
        assert price_from_sqrt(Q96, 6, 6) == price_from_sqrt(Q96, 0, 0)

    def test_decimal_shift_without_special_case(self):
        # raw price 1 with token0 carrying 12 more decimals
        assert price_from_sqrt(Q96, 18, 6) == "1000000000000"

    def test_below_display_precision_rounds_to_zero(self):
        assert price_from_sqrt(Q96, 6, 18) == "0"
        assert price_from_sqrt(Q96, 6, 18, display_decimals=12) == "0.000000000001"

    @pytest.mark.parametrize("price, d0, d1", [
        ("1.5", 18, 18),
        ("2000", 18, 6),
        ("0.00001234", 18, 8),
        ("98765432.1", 18, 8),
        ("0.5", 6, 18),
    ])
    def test_round_trip(self, price, d0, d1):
        assert Decimal(price_from_sqrt(sqrt_for_price(price, d0, d1), d0, d1)) == Decimal(price)

    def test_rounds_half_up_at_display_precision(self):
        # exactly 0.123456785 cannot be hit, so check the display budget instead
        result = price_from_sqrt(sqrt_for_price("0.1234567891", 18, 18), 18, 18)
        assert result == "0.12345679"

    def test_custom_display_decimals(self):
        assert price_from_sqrt(sqrt_for_price("3.14159", 18, 18), 18, 18, display_decimals=2) == "3.14"

    @pytest.mark.parametrize("bad", [-1, 1.5, "100", None, True])
    def test_rejects_invalid_sqrt(self, bad):
        with pytest.raises(InvalidPriceInput):
            price_from_sqrt(bad, 18, 18)

    def test_rejects_negative_decimals(self):
        with pytest.raises(InvalidPriceInput):
            price_from_sqrt(Q96, -1, 18)

    def test_invalid_input_is_a_value_error(self):
        with pytest.raises(ValueError):
            price_from_sqrt(-5, 18, 18)


class TestPriceFromTick:
    def test_tick_zero(self):
        assert price_from_tick(0, 18, 18) == "1"
        assert price_from_tick(0, 18, 6) == "1000000000000"

    def test_positive_tick(self):
        assert Decimal(price_from_tick(1, 18, 18)) == Decimal("1.0001")

    def test_agrees_with_sqrt_price(self):
        for tick in (-50000, -1000, 1000, 50000):
            from_tick = Decimal(price_from_tick(tick, 18, 18))
            from_sqrt = Decimal(price_from_sqrt(tick_to_sqrt_price_x96(tick), 18, 18))
            assert abs(from_tick - from_sqrt) <= Decimal("0.00000001")

    def test_rejects_out_of_bounds_tick(self):
        with pytest.raises(InvalidPriceInput):
            price_from_tick(price_math.MAX_TICK + 1, 18, 18)


class TestIsInRange:
    def test_upper_bound_exclusive(self):
        assert is_in_range(-100, 100, 100) is False

    def test_lower_bound_inclusive(self):
        assert is_in_range(-100, 100, -100) is True

    def test_inside(self):
        assert is_in_range(-100, 100, 0) is True

    def test_below(self):
        assert is_in_range(-100, 100, -101) is False


class TestAmounts:
    def test_below_range_is_all_token0(self):
        amount0, amount1 = get_amounts_for_liquidity(10 ** 18, tick_to_sqrt_price_x96(-200), -100, 100)
        assert amount0 > 0
        assert amount1 == 0

    def test_above_range_is_all_token1(self):
        amount0, amount1 = get_amounts_for_liquidity(10 ** 18, tick_to_sqrt_price_x96(200), -100, 100)
        assert amount0 == 0
        assert amount1 > 0

    def test_in_range_holds_both(self):
        amount0, amount1 = get_amounts_for_liquidity(10 ** 18, Q96, -100, 100)
        assert amount0 > 0
        assert amount1 > 0
        # symmetric range around price 1
        assert abs(amount0 - amount1) <= amount0 // 10 ** 6

    def test_zero_liquidity(self):
        assert get_amounts_for_liquidity(0, Q96, -100, 100) == (0, 0)


class TestUnits:
    def test_format_units_trims_trailing_zeros(self):
        assert format_units(1500000, 6) == "1.5"
        assert format_units(10 ** 18, 18) == "1"
        assert format_units(-25, 2) == "-0.25"

    def test_to_units(self):
        assert to_units(123456789, 6) == Decimal("123.456789")
