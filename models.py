from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, FrozenSet, Optional, Tuple

import price_math


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def pool_id(chain_id: int, address: str) -> str:
    return f"{chain_id}:{address.lower()}"


def position_id(chain_id: int, position_manager: str, token_id: int) -> str:
    return f"{chain_id}:{position_manager.lower()}:{token_id}"


@dataclass(frozen=True)
class Token:
    chain_id: int
    address: str
    symbol: str
    decimals: int

    @property
    def id(self) -> str:
        return f"{self.chain_id}:{self.address.lower()}"

    def to_dict(self) -> Dict:
        return {'chain_id': self.chain_id, 'address': self.address,
                'symbol': self.symbol, 'decimals': self.decimals}

    @classmethod
    def from_dict(cls, data: Dict) -> "Token":
        return cls(int(data['chain_id']), data['address'], data['symbol'], int(data['decimals']))


@dataclass(frozen=True)
class Slot0:
    sqrt_price_x96: int
    tick: int
    observation_index: int = 0
    observation_cardinality: int = 0
    observation_cardinality_next: int = 0
    fee_protocol: int = 0
    unlocked: bool = True


@dataclass(frozen=True)
class PoolState:
    """Immutable snapshot of a pool's price; replaced wholesale on every swap."""
    sqrt_price_x96: int
    tick: int
    liquidity: int
    updated_at: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class MonitoredPool:
    chain_id: int
    address: str
    token0: Token
    token1: Token
    fee: int
    state: Optional[PoolState] = None
    monitoring_enabled: bool = True

    @property
    def id(self) -> str:
        return pool_id(self.chain_id, self.address)

    @property
    def pair(self) -> str:
        return f"{self.token0.symbol}/{self.token1.symbol}"

    @property
    def fee_percent(self) -> str:
        return f"{self.fee / 10000:.2f}"

    def with_state(self, state: PoolState) -> "MonitoredPool":
        return replace(self, state=state)

    def price(self, display_decimals: int = price_math.DISPLAY_DECIMALS) -> Optional[Decimal]:
        """Current token0 price in token1 units, None until the pool has been read."""
        if self.state is None:
            return None
        return Decimal(price_math.price_from_sqrt(
            self.state.sqrt_price_x96, self.token0.decimals, self.token1.decimals, display_decimals))

    def tick_price(self, tick: int) -> Decimal:
        return Decimal(price_math.price_from_tick(tick, self.token0.decimals, self.token1.decimals))


@dataclass
class PriceAlert:
    target_price: Decimal
    chat_id: int
    triggered: bool = False
    created_at: datetime = field(default_factory=utcnow)
    id: Optional[int] = None


@dataclass(frozen=True)
class SwapObserved:
    sqrt_price_x96: int
    tick: int
    liquidity: int
    amount0: int
    amount1: int
    tx_ref: str = ""


@dataclass(frozen=True)
class TrackedMessage:
    """A chat message kept in sync with live data, keyed by '<Category>_<ref>'."""
    id: str
    chat_id: int
    message_id: int
    checksum: Optional[int] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def category(self) -> str:
        return self.id.split('_', 1)[0]

    @property
    def ref(self) -> str:
        return self.id.split('_', 1)[1]

    @staticmethod
    def make_id(category: str, ref: str) -> str:
        return f"{category}_{ref}"


@dataclass(frozen=True)
class PositionSnapshot:
    """The fields the lifecycle tracker compares between two polls."""
    id: str
    token_id: int
    in_range: bool
    staked: bool
    value: Decimal

    def to_dict(self) -> Dict:
        return {'id': self.id, 'token_id': self.token_id, 'in_range': self.in_range,
                'staked': self.staked, 'value': str(self.value)}

    @classmethod
    def from_dict(cls, data: Dict) -> "PositionSnapshot":
        return cls(data['id'], int(data['token_id']), bool(data['in_range']),
                   bool(data['staked']), Decimal(data['value']))


@dataclass(frozen=True)
class Position:
    """
    Read model of an NFT liquidity position.

    Derived fields (amounts, prices, in-range flag) are computed from the pool
    snapshot by `Position.build` and recomputed by `refreshed`; the object is
    always replaced, never patched, and `created_at` survives refreshes.
    """
    chain_id: int
    position_manager: str
    token_id: int
    owner: str
    pool: MonitoredPool
    tick_lower: int
    tick_upper: int
    liquidity: int
    staked: bool
    created_at: datetime
    amount0: Decimal = Decimal(0)
    amount1: Decimal = Decimal(0)
    price: Decimal = Decimal(0)
    price_lower: Decimal = Decimal(0)
    price_upper: Decimal = Decimal(0)
    in_range: bool = False

    @property
    def id(self) -> str:
        return position_id(self.chain_id, self.position_manager, self.token_id)

    @property
    def value(self) -> Decimal:
        """Combined value in token1 units: token1 amount plus token0 converted at the current price."""
        return self.amount1 + self.amount0 * self.price

    @property
    def price_mid(self) -> Decimal:
        return (self.price_lower + self.price_upper) / 2

    @classmethod
    def build(cls, chain_id: int, position_manager: str, token_id: int, owner: str,
              pool: MonitoredPool, tick_lower: int, tick_upper: int, liquidity: int,
              staked: bool, created_at: Optional[datetime] = None) -> "Position":
        position = cls(chain_id, position_manager, token_id, owner, pool, tick_lower, tick_upper,
                       liquidity, staked, created_at or utcnow())
        return position.refreshed(pool)

    def refreshed(self, pool: MonitoredPool, **changes) -> "Position":
        """Recompute the derived fields against a newer pool snapshot."""
        base = replace(self, pool=pool, **changes)
        if pool.state is None:
            return base
        raw0, raw1 = price_math.get_amounts_for_liquidity(
            base.liquidity, pool.state.sqrt_price_x96, base.tick_lower, base.tick_upper)
        return replace(
            base,
            amount0=price_math.to_units(raw0, pool.token0.decimals),
            amount1=price_math.to_units(raw1, pool.token1.decimals),
            price=pool.price(),
            price_lower=pool.tick_price(base.tick_lower),
            price_upper=pool.tick_price(base.tick_upper),
            in_range=price_math.is_in_range(base.tick_lower, base.tick_upper, pool.state.tick),
        )

    def snapshot(self) -> PositionSnapshot:
        return PositionSnapshot(self.id, self.token_id, self.in_range, self.staked, self.value)


@dataclass(frozen=True)
class MonitoredWallet:
    address: str
    chat_ids: FrozenSet[int]
    snapshot: Tuple[PositionSnapshot, ...] = ()
