from datetime import datetime
from datetime import timezone as dt_timezone
from decimal import ROUND_HALF_UP, Decimal, localcontext
from typing import Optional, Sequence
from zoneinfo import ZoneInfo

import price_math
from models import MonitoredPool, Position, SwapObserved, utcnow

SECONDS_PER_YEAR = 31536000

PARSE_MODE = 'Markdown'


def checksum(text: str) -> int:
    """Order-sensitive 32-bit rolling hash (h * 31 + char) of rendered text."""
    h = 0
    for char in text:
        h = (h * 31 + ord(char)) & 0xFFFFFFFF
    return h - 0x100000000 if h & 0x80000000 else h


def money_format(value) -> str:
    """Thousands separators, at most two fraction digits."""
    value = Decimal(value).quantize(Decimal('0.01'), rounding=ROUND_HALF_UP)
    text = f"{value:,.2f}"
    return text.rstrip('0').rstrip('.')


def fixed(value, places: int) -> str:
    with localcontext() as ctx:
        ctx.prec = 80
        return f"{Decimal(value).quantize(Decimal(1).scaleb(-places), rounding=ROUND_HALF_UP):f}"


def format_time(moment: Optional[datetime] = None, timezone: str = 'UTC') -> str:
    moment = moment or utcnow()
    zone = dt_timezone.utc if timezone.upper() == 'UTC' else ZoneInfo(timezone)
    return moment.astimezone(zone).strftime('%H:%M:%S')


def format_age(seconds: int) -> str:
    seconds = max(int(seconds), 0)
    return f"{seconds // 3600}:{seconds // 60 % 60:02d}"


def compute_apy(profit: Decimal, value: Decimal, age_seconds: int) -> Decimal:
    """Annualised percentage: profit / value / age, scaled to a year."""
    if age_seconds <= 0 or value <= 0:
        return Decimal(0)
    return Decimal(profit) / Decimal(value) / age_seconds * SECONDS_PER_YEAR * 100


def swap_volume(pool: MonitoredPool, swap: SwapObserved):
    """Absolute size of a swap, in token1 when it moved token1, otherwise in token0."""
    if swap.amount1 != 0:
        return price_math.format_units(abs(swap.amount1), pool.token1.decimals), pool.token1.symbol
    return price_math.format_units(abs(swap.amount0), pool.token0.decimals), pool.token0.symbol


def render_pool_message(pool: MonitoredPool, last_swap: Optional[SwapObserved] = None,
                        tvl: Optional[Decimal] = None, moment: Optional[datetime] = None,
                        timezone: str = 'UTC', display_decimals: int = price_math.DISPLAY_DECIMALS) -> str:
    price = pool.price(display_decimals)
    lines = [
        f"{fixed(price, display_decimals) if price is not None else 'N/A'} "
        f"{pool.token1.symbol}/{pool.token0.symbol} {format_time(moment, timezone)}",
        f"Tick: {pool.state.tick if pool.state else 'N/A'}",
    ]
    if last_swap is None:
        lines.append("Last Swap: N/A")
    else:
        volume, symbol = swap_volume(pool, last_swap)
        lines.append(f"Last Swap: {volume} {symbol}")
    if tvl is not None:
        lines.append(f"TVL: {money_format(tvl)} {pool.token1.symbol}")
    return "\n".join(lines)


def render_price_alert(pool: MonitoredPool, direction: str, target: Decimal, price: Decimal,
                       display_decimals: int = price_math.DISPLAY_DECIMALS) -> str:
    return (
        f"🔔 Price Alert! 🔔\n"
        f"Pool: {pool.token1.symbol}/{pool.token0.symbol}\n"
        f"Price {direction} {target}.\n"
        f"Current Price: {fixed(price, display_decimals)}"
    )


def render_position_message(position: Position, fees_value: Decimal = Decimal(0),
                            reward_value: Decimal = Decimal(0), moment: Optional[datetime] = None,
                            timezone: str = 'UTC', pool_url: Optional[str] = None,
                            position_url: Optional[str] = None) -> str:
    moment = moment or utcnow()
    pool = position.pool
    lines = [(('🟢' if position.in_range else '🔴') + f" ${money_format(position.price)}"),
             f"💸 ${money_format(fees_value)} 🍪 ${money_format(reward_value)}"]

    age = int((moment - position.created_at).total_seconds())
    apy = compute_apy(fees_value + reward_value, position.value, age)
    lines.append(f"⏰ {format_time(moment, timezone)} ⏳ {format_age(age)} 📈 {fixed(apy, 2)}%")

    lines.append(f"💰 {fixed(position.amount0, 6)} {pool.token0.symbol} + "
                 f"{money_format(position.amount1)} {pool.token1.symbol}")

    stake = '🥩 STAKED' if position.staked else '💼 UNSTAKED'
    lines.append(f"{stake} | ${money_format(position.price_lower)} - ${money_format(position.price_upper)}"
                 f" (mid ${money_format(position.price_mid)})")

    pair = f"[{pool.pair}]({pool_url})" if pool_url else pool.pair
    token = f"[#{position.token_id}]({position_url})" if position_url else f"#{position.token_id}"
    lines.append(f"{pair} ({pool.fee_percent}%) - {token}")
    return "\n".join(lines)


def render_range_notification() -> str:
    return "⚠️ **Position Out of Range**"


def render_no_positions(wallets: Sequence[str]) -> str:
    return f"No active positions found in {len(wallets)} wallets."


def render_still_footer() -> str:
    return "_Not updated here, live in another chat watching this wallet._"
