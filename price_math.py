from decimal import ROUND_HALF_UP, Decimal, localcontext
from typing import Tuple

from errors import InvalidPriceInput

DISPLAY_DECIMALS = 8

MIN_TICK = -887272
MAX_TICK = 887272
Q96 = 2 ** 96
Q192 = 2 ** 192

# enough digits for 1.0001 ** MAX_TICK and a Q96 scale without losing integer precision
_PRECISION = 120


def _require_int(name: str, value, minimum=None):
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidPriceInput(f"{name} must be an integer, got {value!r}")
    if minimum is not None and value < minimum:
        raise InvalidPriceInput(f"{name} must be >= {minimum}, got {value}")


def _require_tick(name: str, tick):
    _require_int(name, tick)
    if not MIN_TICK <= tick <= MAX_TICK:
        raise InvalidPriceInput(f"{name} {tick} outside [{MIN_TICK}, {MAX_TICK}]")


def format_units(raw: int, decimals: int) -> str:
    """Render an integer amount scaled by 10**decimals, trimming trailing zeros."""
    _require_int("decimals", decimals, 0)
    sign = "-" if raw < 0 else ""
    raw = abs(raw)
    if decimals == 0:
        return f"{sign}{raw}"
    whole, fraction = divmod(raw, 10 ** decimals)
    fraction_str = str(fraction).rjust(decimals, "0").rstrip("0")
    if fraction_str:
        return f"{sign}{whole}.{fraction_str}"
    return f"{sign}{whole}"


def to_units(raw: int, decimals: int) -> Decimal:
    """Convert a raw token amount into human units."""
    _require_int("decimals", decimals, 0)
    return Decimal(format_units(int(raw), decimals))


def _rounded_division(numerator: int, denominator: int) -> int:
    return (2 * numerator + denominator) // (2 * denominator)


def price_from_sqrt(sqrt_price_x96: int, decimals0: int, decimals1: int,
                    display_decimals: int = DISPLAY_DECIMALS) -> str:
    """
    Price of token0 expressed in token1 from a Q64.96 square root price.

    Integer arithmetic end to end: (sqrtPriceX96^2 / 2^192) * 10^(decimals0 - decimals1),
    rounded half-up at the last display digit.
    """
    _require_int("sqrt_price_x96", sqrt_price_x96, 0)
    _require_int("decimals0", decimals0, 0)
    _require_int("decimals1", decimals1, 0)
    _require_int("display_decimals", display_decimals, 0)

    numerator = sqrt_price_x96 ** 2 * 10 ** (decimals0 + display_decimals)
    denominator = Q192 * 10 ** decimals1
    return format_units(_rounded_division(numerator, denominator), display_decimals)


def price_from_tick(tick: int, decimals0: int, decimals1: int,
                    display_decimals: int = DISPLAY_DECIMALS) -> str:
    """Price of token0 in token1 at a tick boundary: 1.0001^tick adjusted by decimals."""
    _require_tick("tick", tick)
    _require_int("decimals0", decimals0, 0)
    _require_int("decimals1", decimals1, 0)
    _require_int("display_decimals", display_decimals, 0)

    with localcontext() as ctx:
        ctx.prec = _PRECISION
        price = Decimal("1.0001") ** tick * Decimal(10) ** (decimals0 - decimals1)
        scaled = price * Decimal(10) ** display_decimals
        raw = int(scaled.to_integral_value(rounding=ROUND_HALF_UP))
    return format_units(raw, display_decimals)


def is_in_range(tick_lower: int, tick_upper: int, tick_current: int) -> bool:
    """Lower bound inclusive, upper bound exclusive."""
    return tick_lower <= tick_current < tick_upper


def tick_to_sqrt_price_x96(tick: int) -> int:
    _require_tick("tick", tick)
    with localcontext() as ctx:
        ctx.prec = _PRECISION
        return int((Decimal("1.0001") ** tick).sqrt() * Q96)


def _amount0_delta(sqrt_a: int, sqrt_b: int, liquidity: int) -> int:
    if sqrt_a > sqrt_b:
        sqrt_a, sqrt_b = sqrt_b, sqrt_a
    if liquidity == 0 or sqrt_a == sqrt_b or sqrt_a == 0:
        return 0
    return (liquidity << 96) * (sqrt_b - sqrt_a) // sqrt_b // sqrt_a


def _amount1_delta(sqrt_a: int, sqrt_b: int, liquidity: int) -> int:
    if sqrt_a > sqrt_b:
        sqrt_a, sqrt_b = sqrt_b, sqrt_a
    return liquidity * (sqrt_b - sqrt_a) // Q96


def get_amounts_for_liquidity(liquidity: int, sqrt_price_x96: int,
                              tick_lower: int, tick_upper: int) -> Tuple[int, int]:
    """Raw token0/token1 amounts held by a position at the given pool price."""
    _require_int("liquidity", liquidity, 0)
    _require_int("sqrt_price_x96", sqrt_price_x96, 0)
    sqrt_lower = tick_to_sqrt_price_x96(tick_lower)
    sqrt_upper = tick_to_sqrt_price_x96(tick_upper)

    if sqrt_price_x96 <= sqrt_lower:
        # All position in token0
        return _amount0_delta(sqrt_lower, sqrt_upper, liquidity), 0
    if sqrt_price_x96 >= sqrt_upper:
        # All position in token1
        return 0, _amount1_delta(sqrt_lower, sqrt_upper, liquidity)
    return (_amount0_delta(sqrt_price_x96, sqrt_upper, liquidity),
            _amount1_delta(sqrt_lower, sqrt_price_x96, liquidity))
