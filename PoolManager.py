import asyncio
import logging
import threading
import time
from decimal import Decimal
from typing import Awaitable, Callable, Dict, List, Optional, Tuple

from web3 import Web3

import price_math
from config import ZERO_ADDRESS
from errors import ChainReadError
from models import MonitoredPool, PoolState, Position, Slot0, Token, pool_id

logger = logging.getLogger(__name__)

MAX_UINT128 = 2 ** 128 - 1

SWAP_SIGNATURE = "Swap(address,address,int256,int256,uint160,uint128,int24)"
# PancakeSwap V3 appends the protocol fee amounts to the event
PANCAKE_SWAP_SIGNATURE = "Swap(address,address,int256,int256,uint160,uint128,int24,uint128,uint128)"

ERC20_ABI = [
    {"inputs": [], "name": "decimals",
     "outputs": [{"internalType": "uint8", "name": "", "type": "uint8"}],
     "stateMutability": "view", "type": "function"},
    {"inputs": [], "name": "symbol",
     "outputs": [{"internalType": "string", "name": "", "type": "string"}],
     "stateMutability": "view", "type": "function"},
    {"inputs": [{"internalType": "address", "name": "account", "type": "address"}], "name": "balanceOf",
     "outputs": [{"internalType": "uint256", "name": "", "type": "uint256"}],
     "stateMutability": "view", "type": "function"},
]

FACTORY_ABI = [
    {"inputs": [{"internalType": "address", "name": "tokenA", "type": "address"},
                {"internalType": "address", "name": "tokenB", "type": "address"},
                {"internalType": "uint24", "name": "fee", "type": "uint24"}],
     "name": "getPool",
     "outputs": [{"internalType": "address", "name": "pool", "type": "address"}],
     "stateMutability": "view", "type": "function"},
]

POSITION_MANAGER_ABI = [
    {"inputs": [{"internalType": "address", "name": "owner", "type": "address"}], "name": "balanceOf",
     "outputs": [{"internalType": "uint256", "name": "", "type": "uint256"}],
     "stateMutability": "view", "type": "function"},
    {"inputs": [{"internalType": "address", "name": "owner", "type": "address"},
                {"internalType": "uint256", "name": "index", "type": "uint256"}],
     "name": "tokenOfOwnerByIndex",
     "outputs": [{"internalType": "uint256", "name": "", "type": "uint256"}],
     "stateMutability": "view", "type": "function"},
    {"inputs": [{"internalType": "uint256", "name": "tokenId", "type": "uint256"}], "name": "ownerOf",
     "outputs": [{"internalType": "address", "name": "", "type": "address"}],
     "stateMutability": "view", "type": "function"},
    {"inputs": [{"internalType": "uint256", "name": "tokenId", "type": "uint256"}], "name": "positions",
     "outputs": [{"internalType": "uint96", "name": "nonce", "type": "uint96"},
                 {"internalType": "address", "name": "operator", "type": "address"},
                 {"internalType": "address", "name": "token0", "type": "address"},
                 {"internalType": "address", "name": "token1", "type": "address"},
                 {"internalType": "uint24", "name": "fee", "type": "uint24"},
                 {"internalType": "int24", "name": "tickLower", "type": "int24"},
                 {"internalType": "int24", "name": "tickUpper", "type": "int24"},
                 {"internalType": "uint128", "name": "liquidity", "type": "uint128"},
                 {"internalType": "uint256", "name": "feeGrowthInside0LastX128", "type": "uint256"},
                 {"internalType": "uint256", "name": "feeGrowthInside1LastX128", "type": "uint256"},
                 {"internalType": "uint128", "name": "tokensOwed0", "type": "uint128"},
                 {"internalType": "uint128", "name": "tokensOwed1", "type": "uint128"}],
     "stateMutability": "view", "type": "function"},
    {"inputs": [{"components": [{"internalType": "uint256", "name": "tokenId", "type": "uint256"},
                                {"internalType": "address", "name": "recipient", "type": "address"},
                                {"internalType": "uint128", "name": "amount0Max", "type": "uint128"},
                                {"internalType": "uint128", "name": "amount1Max", "type": "uint128"}],
                 "internalType": "struct INonfungiblePositionManager.CollectParams",
                 "name": "params", "type": "tuple"}],
     "name": "collect",
     "outputs": [{"internalType": "uint256", "name": "amount0", "type": "uint256"},
                 {"internalType": "uint256", "name": "amount1", "type": "uint256"}],
     "stateMutability": "payable", "type": "function"},
]

MASTERCHEF_ABI = [
    {"inputs": [{"internalType": "address", "name": "owner", "type": "address"}], "name": "balanceOf",
     "outputs": [{"internalType": "uint256", "name": "", "type": "uint256"}],
     "stateMutability": "view", "type": "function"},
    {"inputs": [{"internalType": "address", "name": "owner", "type": "address"},
                {"internalType": "uint256", "name": "index", "type": "uint256"}],
     "name": "tokenOfOwnerByIndex",
     "outputs": [{"internalType": "uint256", "name": "", "type": "uint256"}],
     "stateMutability": "view", "type": "function"},
    {"inputs": [{"internalType": "uint256", "name": "_tokenId", "type": "uint256"}], "name": "pendingCake",
     "outputs": [{"internalType": "uint256", "name": "reward", "type": "uint256"}],
     "stateMutability": "view", "type": "function"},
    {"inputs": [{"internalType": "uint256", "name": "", "type": "uint256"}], "name": "userPositionInfos",
     "outputs": [{"internalType": "uint128", "name": "liquidity", "type": "uint128"},
                 {"internalType": "uint128", "name": "boostLiquidity", "type": "uint128"},
                 {"internalType": "int24", "name": "tickLower", "type": "int24"},
                 {"internalType": "int24", "name": "tickUpper", "type": "int24"},
                 {"internalType": "uint256", "name": "rewardGrowthInside", "type": "uint256"},
                 {"internalType": "uint256", "name": "reward", "type": "uint256"},
                 {"internalType": "address", "name": "user", "type": "address"},
                 {"internalType": "uint256", "name": "pid", "type": "uint256"},
                 {"internalType": "uint256", "name": "boostMultiplier", "type": "uint256"}],
     "stateMutability": "view", "type": "function"},
]


def pool_abi(dex: str) -> List[Dict]:
    """Minimal V3 pool ABI; PancakeSwap widens feeProtocol and extends the Swap event."""
    pancake = dex == 'pancakeswap'
    swap_inputs = [
        {"indexed": True, "internalType": "address", "name": "sender", "type": "address"},
        {"indexed": True, "internalType": "address", "name": "recipient", "type": "address"},
        {"indexed": False, "internalType": "int256", "name": "amount0", "type": "int256"},
        {"indexed": False, "internalType": "int256", "name": "amount1", "type": "int256"},
        {"indexed": False, "internalType": "uint160", "name": "sqrtPriceX96", "type": "uint160"},
        {"indexed": False, "internalType": "uint128", "name": "liquidity", "type": "uint128"},
        {"indexed": False, "internalType": "int24", "name": "tick", "type": "int24"},
    ]
    if pancake:
        swap_inputs += [
            {"indexed": False, "internalType": "uint128", "name": "protocolFeesToken0", "type": "uint128"},
            {"indexed": False, "internalType": "uint128", "name": "protocolFeesToken1", "type": "uint128"},
        ]
    fee_protocol_type = "uint32" if pancake else "uint8"
    return [
        {"inputs": [], "name": "slot0",
         "outputs": [{"internalType": "uint160", "name": "sqrtPriceX96", "type": "uint160"},
                     {"internalType": "int24", "name": "tick", "type": "int24"},
                     {"internalType": "uint16", "name": "observationIndex", "type": "uint16"},
                     {"internalType": "uint16", "name": "observationCardinality", "type": "uint16"},
                     {"internalType": "uint16", "name": "observationCardinalityNext", "type": "uint16"},
                     {"internalType": fee_protocol_type, "name": "feeProtocol", "type": fee_protocol_type},
                     {"internalType": "bool", "name": "unlocked", "type": "bool"}],
         "stateMutability": "view", "type": "function"},
        {"inputs": [], "name": "liquidity",
         "outputs": [{"internalType": "uint128", "name": "", "type": "uint128"}],
         "stateMutability": "view", "type": "function"},
        {"inputs": [], "name": "token0",
         "outputs": [{"internalType": "address", "name": "", "type": "address"}],
         "stateMutability": "view", "type": "function"},
        {"inputs": [], "name": "token1",
         "outputs": [{"internalType": "address", "name": "", "type": "address"}],
         "stateMutability": "view", "type": "function"},
        {"inputs": [], "name": "fee",
         "outputs": [{"internalType": "uint24", "name": "", "type": "uint24"}],
         "stateMutability": "view", "type": "function"},
        {"anonymous": False, "inputs": swap_inputs, "name": "Swap", "type": "event"},
    ]


class LiquidityPoolTracker:
    """
    Read-only access to V3 pools, tokens and NFT positions.

    Web3 calls are synchronous; every public method runs them in a worker
    thread so the bot's event loop keeps serving other pools while an RPC
    call is in flight. Any failure surfaces as ChainReadError, there are no
    retries at this level.
    """

    def __init__(self, rpc_url: Optional[str] = None, chain_id: int = 42161, dex: str = 'pancakeswap',
                 deployment: Optional[Dict] = None, delay_between_calls: float = 0.0,
                 slot0_ttl: float = 5.0, timeout: float = 10.0, w3: Optional[Web3] = None,
                 clock: Callable[[], float] = time.monotonic):
        self.w3 = w3 or Web3(Web3.HTTPProvider(rpc_url, request_kwargs={'timeout': timeout}))
        self.chain_id = chain_id
        self.dex = dex
        self.deployment = deployment or {}
        self.delay = delay_between_calls
        self.slot0_ttl = slot0_ttl
        self.clock = clock
        self.last_call_time = 0.0
        self._call_lock = threading.Lock()

        self.pool_abi = pool_abi(dex)
        self.swap_topic = Web3.to_hex(Web3.keccak(
            text=PANCAKE_SWAP_SIGNATURE if dex == 'pancakeswap' else SWAP_SIGNATURE))

        self._slot0_cache: Dict[str, Tuple[float, Slot0]] = {}
        self._tokens: Dict[str, Token] = {}
        self._pools: Dict[str, MonitoredPool] = {}
        self._reward_pool: Optional[str] = None

    @property
    def position_manager(self) -> str:
        return self.deployment['position_manager']

    @property
    def masterchef(self) -> Optional[str]:
        return self.deployment.get('masterchef')

    def _rate_limit_sleep(self):
        with self._call_lock:
            time_since_last_call = time.time() - self.last_call_time
            if time_since_last_call < self.delay:
                time.sleep(self.delay - time_since_last_call)
            self.last_call_time = time.time()

    async def _call(self, func: Callable, what: str):
        def run():
            self._rate_limit_sleep()
            return func()

        try:
            return await asyncio.to_thread(run)
        except Exception as e:
            raise ChainReadError(f"{what}: {e}") from e

    def _contract(self, address: str, abi: List[Dict]):
        return self.w3.eth.contract(address=Web3.to_checksum_address(address), abi=abi)

    def pool_contract(self, address: str):
        return self._contract(address, self.pool_abi)

    async def block_number(self) -> int:
        return await self._call(lambda: self.w3.eth.block_number, "block number")

    async def get_logs(self, address: str, from_block: int, to_block: int) -> List:
        params = {
            'address': Web3.to_checksum_address(address),
            'fromBlock': from_block,
            'toBlock': to_block,
            'topics': [self.swap_topic],
        }
        return await self._call(lambda: self.w3.eth.get_logs(params), f"swap logs of {address}")

    async def get_token(self, address: str) -> Token:
        key = address.lower()
        if key in self._tokens:
            return self._tokens[key]

        contract = self._contract(address, ERC20_ABI)
        symbol = await self._call(lambda: contract.functions.symbol().call(), f"symbol of {address}")
        decimals = await self._call(lambda: contract.functions.decimals().call(), f"decimals of {address}")
        token = Token(self.chain_id, Web3.to_checksum_address(address), symbol, int(decimals))
        self._tokens[key] = token
        return token

    def remember_token(self, token: Token):
        self._tokens[token.address.lower()] = token

    async def get_pool_address(self, token0: str, token1: str, fee: int) -> Optional[str]:
        factory = self._contract(self.deployment['factory'], FACTORY_ABI)
        address = await self._call(
            lambda: factory.functions.getPool(
                Web3.to_checksum_address(token0), Web3.to_checksum_address(token1), fee).call(),
            f"pool for {token0}/{token1} fee {fee}")
        if address == ZERO_ADDRESS:
            return None
        return address

    async def get_slot0(self, pool: MonitoredPool, use_cache: bool = True) -> Slot0:
        now = self.clock()
        cached = self._slot0_cache.get(pool.id)
        if use_cache and cached and now - cached[0] < self.slot0_ttl:
            return cached[1]

        contract = self.pool_contract(pool.address)
        raw = await self._call(lambda: contract.functions.slot0().call(), f"slot0 of {pool.id}")
        slot0 = Slot0(*raw)
        self._slot0_cache[pool.id] = (self.clock(), slot0)
        return slot0

    def invalidate_slot0(self, pool_key: str):
        self._slot0_cache.pop(pool_key, None)

    async def get_liquidity(self, pool: MonitoredPool) -> int:
        contract = self.pool_contract(pool.address)
        return await self._call(lambda: contract.functions.liquidity().call(), f"liquidity of {pool.id}")

    async def get_token_balance(self, token: Token, holder: str) -> int:
        contract = self._contract(token.address, ERC20_ABI)
        holder = Web3.to_checksum_address(holder)
        return await self._call(lambda: contract.functions.balanceOf(holder).call(),
                                f"{token.symbol} balance of {holder}")

    async def refresh_pool(self, pool: MonitoredPool) -> MonitoredPool:
        """Read slot0 and liquidity and return the pool with a new state snapshot."""
        slot0 = await self.get_slot0(pool)
        liquidity = await self.get_liquidity(pool)
        return pool.with_state(PoolState(slot0.sqrt_price_x96, slot0.tick, liquidity))

    async def get_pool(self, address: str, refresh: bool = True) -> MonitoredPool:
        key = pool_id(self.chain_id, address)
        pool = self._pools.get(key)
        if pool is None:
            contract = self.pool_contract(address)
            token0 = await self._call(lambda: contract.functions.token0().call(), f"token0 of {key}")
            token1 = await self._call(lambda: contract.functions.token1().call(), f"token1 of {key}")
            fee = await self._call(lambda: contract.functions.fee().call(), f"fee of {key}")
            pool = MonitoredPool(
                chain_id=self.chain_id,
                address=Web3.to_checksum_address(address),
                token0=await self.get_token(token0),
                token1=await self.get_token(token1),
                fee=int(fee),
            )
            self._pools[key] = pool
        if refresh:
            pool = await self.refresh_pool(pool)
        return pool

    async def compute_tvl(self, pool: MonitoredPool) -> Optional[Decimal]:
        """Token0 balance valued in token1 plus token1 balance; None when any read fails."""
        try:
            if pool.state is None:
                pool = await self.refresh_pool(pool)
            balance0 = await self.get_token_balance(pool.token0, pool.address)
            balance1 = await self.get_token_balance(pool.token1, pool.address)
        except ChainReadError as e:
            logger.warning(f"TVL unavailable for pool {pool.id}: {e}")
            return None
        amount0 = price_math.to_units(balance0, pool.token0.decimals)
        amount1 = price_math.to_units(balance1, pool.token1.decimals)
        return amount0 * pool.price() + amount1

    async def _owner_of(self, token_id: int) -> str:
        manager = self._contract(self.position_manager, POSITION_MANAGER_ABI)
        return await self._call(lambda: manager.functions.ownerOf(token_id).call(), f"owner of #{token_id}")

    async def _staker_of(self, token_id: int) -> str:
        masterchef = self._contract(self.masterchef, MASTERCHEF_ABI)
        info = await self._call(lambda: masterchef.functions.userPositionInfos(token_id).call(),
                                f"staking info of #{token_id}")
        return info[6]

    async def get_position(self, token_id: int, created_at=None) -> Optional[Position]:
        """
        Build the read model of one NFT position.

        Returns None for a position without liquidity. A burned token makes
        the position manager revert, which surfaces as ChainReadError.
        """
        manager = self._contract(self.position_manager, POSITION_MANAGER_ABI)
        data = await self._call(lambda: manager.functions.positions(token_id).call(), f"position #{token_id}")
        liquidity = data[7]
        if liquidity == 0:
            return None

        owner = await self._owner_of(token_id)
        staked = bool(self.masterchef) and owner.lower() == self.masterchef.lower()
        if staked:
            owner = await self._staker_of(token_id)

        pool_address = await self.get_pool_address(data[2], data[3], data[4])
        if pool_address is None:
            raise ChainReadError(f"position #{token_id}: no pool for {data[2]}/{data[3]} fee {data[4]}")
        pool = await self.get_pool(pool_address)

        return Position.build(
            chain_id=self.chain_id,
            position_manager=self.position_manager,
            token_id=token_id,
            owner=owner,
            pool=pool,
            tick_lower=data[5],
            tick_upper=data[6],
            liquidity=liquidity,
            staked=staked,
            created_at=created_at,
        )

    async def _token_ids(self, contract_address: str, abi: List[Dict], owner: str) -> List[int]:
        contract = self._contract(contract_address, abi)
        balance = await self._call(lambda: contract.functions.balanceOf(owner).call(),
                                   f"NFT balance of {owner} at {contract_address}")
        token_ids = []
        for i in range(balance):
            token_ids.append(await self._call(
                lambda i=i: contract.functions.tokenOfOwnerByIndex(owner, i).call(),
                f"token {i} of {owner}"))
        return token_ids

    async def get_wallet_positions(self, owner: str) -> List[Position]:
        """All open positions of a wallet, held directly or staked in the MasterChef."""
        owner = Web3.to_checksum_address(owner)
        token_ids = await self._token_ids(self.position_manager, POSITION_MANAGER_ABI, owner)
        if self.masterchef:
            token_ids += await self._token_ids(self.masterchef, MASTERCHEF_ABI, owner)
        logger.debug(f"{len(token_ids)} position NFTs found for {owner}")

        positions = []
        for token_id in token_ids:
            try:
                position = await self.get_position(token_id)
            except ChainReadError as e:
                logger.warning(f"Skipping position #{token_id} of {owner}: {e}")
                continue
            if position is not None:
                positions.append(position)
        return positions

    async def get_unclaimed_fees(self, position: Position) -> Tuple[int, int]:
        """Raw fee amounts, read by simulating collect from the NFT holder."""
        manager = self._contract(self.position_manager, POSITION_MANAGER_ABI)
        holder = await self._owner_of(position.token_id)
        params = (position.token_id, holder, MAX_UINT128, MAX_UINT128)
        fees = await self._call(
            lambda: manager.functions.collect(params).call({'from': holder}),
            f"fees of #{position.token_id}")
        return int(fees[0]), int(fees[1])

    async def get_pending_reward(self, position: Position) -> int:
        if not position.staked or not self.masterchef:
            return 0
        masterchef = self._contract(self.masterchef, MASTERCHEF_ABI)
        return await self._call(lambda: masterchef.functions.pendingCake(position.token_id).call(),
                                f"pending reward of #{position.token_id}")

    async def get_reward_price(self) -> Optional[Decimal]:
        """Reward token price in the quote token of the configured reward pool."""
        reward_pool = self.deployment.get('reward_pool')
        if not reward_pool:
            return None
        if self._reward_pool is None:
            self._reward_pool = await self.get_pool_address(*reward_pool)
            if self._reward_pool is None:
                return None
        pool = await self.get_pool(self._reward_pool)
        price = pool.price()
        # reward pool may list the reward token second
        if pool.token1.address.lower() == reward_pool[0].lower() and price:
            return Decimal(1) / price
        return price


class SwapLogWatcher:
    """
    Polls eth_getLogs for one pool's Swap events and hands each batch, in
    log order, to a callback. A decode failure is passed on with 'args' set
    to None so the consumer can skip it.
    """

    def __init__(self, tracker: LiquidityPoolTracker, poll_interval: float = 2.0, max_failures: int = 5):
        self.tracker = tracker
        self.poll_interval = poll_interval
        self.max_failures = max_failures

    def watch_swaps(self, address: str, on_logs: Callable[[List[Dict]], Awaitable[None]],
                    on_error: Callable[[Exception], None]) -> Callable[[], None]:
        task = asyncio.get_running_loop().create_task(self._poll(address, on_logs, on_error))

        def unsubscribe():
            task.cancel()

        return unsubscribe

    def _decode(self, event, log) -> Dict:
        try:
            decoded = event.process_log(log)
        except Exception as e:
            logger.warning(f"Undecodable swap log in tx {Web3.to_hex(log['transactionHash'])}: {e}")
            return {'args': None, 'transactionHash': log.get('transactionHash')}
        return {'args': dict(decoded['args']), 'transactionHash': decoded['transactionHash']}

    async def _poll(self, address, on_logs, on_error):
        event = self.tracker.pool_contract(address).events.Swap()
        from_block = None
        failures = 0
        while True:
            try:
                latest = await self.tracker.block_number()
                if from_block is None:
                    from_block = latest + 1
                if latest >= from_block:
                    logs = await self.tracker.get_logs(address, from_block, latest)
                    from_block = latest + 1
                    if logs:
                        await on_logs([self._decode(event, log) for log in logs])
                failures = 0
            except ChainReadError as e:
                failures += 1
                logger.warning(f"Swap poll for {address} failed ({failures}/{self.max_failures}): {e}")
                if failures >= self.max_failures:
                    on_error(e)
                    return
            await asyncio.sleep(self.poll_interval)
