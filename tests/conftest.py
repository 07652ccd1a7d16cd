"""Shared fakes: a recording Telegram bot, a manual swap watcher, a canned chain reader and a clock."""

import itertools
from decimal import Decimal, localcontext
from types import SimpleNamespace

import pytest

from database import Database
from errors import StoreError
from models import MonitoredPool, PoolState, Position, Token, pool_id
from price_math import Q96

CHAIN_ID = 42161
POSITION_MANAGER = "0x46A15B0b27311cedF172AB29E4f4766fbE7F4364"
POOL_ADDRESS = "0x" + "ab" * 20
WALLET = "0x" + "11" * 20

WETH = Token(CHAIN_ID, "0x" + "01" * 20, "WETH", 18)
USDC = Token(CHAIN_ID, "0x" + "02" * 20, "USDC", 6)


def sqrt_for_price(price, decimals0, decimals1) -> int:
    """sqrtPriceX96 encoding `price` token1 per token0 in human units."""
    with localcontext() as ctx:
        ctx.prec = 100
        raw = Decimal(price) * Decimal(10) ** (decimals1 - decimals0)
        return int(raw.sqrt() * Q96)


def make_pool(price="2000", tick=-200311, liquidity=10 ** 18, address=POOL_ADDRESS,
              token0=WETH, token1=USDC) -> MonitoredPool:
    state = PoolState(sqrt_for_price(price, token0.decimals, token1.decimals), tick, liquidity)
    return MonitoredPool(CHAIN_ID, address, token0, token1, 500, state)


def make_position(token_id=7, pool=None, tick_lower=-201000, tick_upper=-199000,
                  liquidity=10 ** 15, staked=False, created_at=None) -> Position:
    return Position.build(CHAIN_ID, POSITION_MANAGER, token_id, WALLET, pool or make_pool(),
                          tick_lower, tick_upper, liquidity, staked, created_at)


def swap_log(price="2001", tick=-200306, amount0=-10 ** 17, amount1=200 * 10 ** 6, tx="0x01"):
    return {
        'args': {
            'sqrtPriceX96': sqrt_for_price(price, 18, 6),
            'tick': tick,
            'liquidity': 10 ** 18,
            'amount0': amount0,
            'amount1': amount1,
        },
        'transactionHash': tx,
    }


def fail_once(store, method: str):
    """Make the next call to a Database method raise StoreError."""
    original = getattr(store, method)

    def failing(*args, **kwargs):
        setattr(store, method, original)
        raise StoreError(f"{method}: disk I/O error")

    setattr(store, method, failing)


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now
        self.sleeps = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float):
        self.sleeps.append(seconds)
        self.now += seconds


class FakeBot:
    """Records every Bot API call; set `errors[method]` to an exception to make it fail once."""

    def __init__(self):
        self.sent = []
        self.edits = []
        self.deleted = []
        self.answered = []
        self.errors = {}
        self._ids = itertools.count(500)

    def _maybe_fail(self, method):
        error = self.errors.pop(method, None)
        if error is not None:
            raise error

    async def send_message(self, chat_id, text, **kwargs):
        self._maybe_fail('send_message')
        message = SimpleNamespace(message_id=next(self._ids), chat_id=chat_id, text=text, date=None)
        self.sent.append((chat_id, text, kwargs))
        return message

    async def edit_message_text(self, text, chat_id, message_id, **kwargs):
        self._maybe_fail('edit_message_text')
        self.edits.append((chat_id, message_id, text))
        return SimpleNamespace(message_id=message_id, chat_id=chat_id, text=text, date=None)

    async def delete_message(self, chat_id, message_id):
        self._maybe_fail('delete_message')
        self.deleted.append((chat_id, message_id))
        return True

    async def answer_callback_query(self, callback_query_id, **kwargs):
        self.answered.append(callback_query_id)
        return True


class FakeWatcher:
    """Stands in for SwapLogWatcher; tests push log batches with emit()."""

    def __init__(self):
        self.calls = []
        self.cancelled = []
        self._handlers = {}

    def watch_swaps(self, address, on_logs, on_error):
        self.calls.append(address)
        self._handlers[address.lower()] = (on_logs, on_error)

        def cancel():
            self.cancelled.append(address)
            self._handlers.pop(address.lower(), None)

        return cancel

    def is_watching(self, address) -> bool:
        return address.lower() in self._handlers

    async def emit(self, address, logs):
        on_logs, _ = self._handlers[address.lower()]
        await on_logs(logs)

    def fail(self, address, error):
        _, on_error = self._handlers.pop(address.lower())
        on_error(error)


class FakeChain:
    """Canned answers for the LiquidityPoolTracker calls the monitors make."""

    def __init__(self, pool=None, positions=None):
        self.pool = pool or make_pool()
        self.positions = {p.token_id: p for p in (positions or [])}
        self.wallet_positions = {}
        self.deployment = {}
        self.fees = (0, 0)
        self.reward = 0
        self.tvl = Decimal("1000")
        self.invalidated = []

    async def get_pool(self, address, refresh=True):
        return self.pool

    async def refresh_pool(self, pool):
        return pool.with_state(self.pool.state)

    async def compute_tvl(self, pool):
        return self.tvl

    def remember_token(self, token):
        pass

    def invalidate_slot0(self, pool_key):
        self.invalidated.append(pool_key)

    async def get_position(self, token_id, created_at=None):
        position = self.positions.get(token_id)
        if position is not None and created_at is not None:
            return Position.build(position.chain_id, position.position_manager, position.token_id,
                                  position.owner, position.pool, position.tick_lower, position.tick_upper,
                                  position.liquidity, position.staked, created_at)
        return position

    async def get_wallet_positions(self, owner):
        return list(self.wallet_positions.get(owner, []))

    async def get_unclaimed_fees(self, position):
        return self.fees

    async def get_pending_reward(self, position):
        return self.reward

    async def get_reward_price(self):
        return None


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def bot():
    return FakeBot()


@pytest.fixture
def watcher():
    return FakeWatcher()


@pytest.fixture
def store(tmp_path):
    db = Database(str(tmp_path / "test.db"))
    yield db
    db.close()


@pytest.fixture
def pool_key():
    return pool_id(CHAIN_ID, POOL_ADDRESS)
