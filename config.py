import os
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Dict, Optional, Tuple

from dotenv import load_dotenv

from errors import ConfigError

load_dotenv()

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"

# (dex, chain_id) -> contracts and link templates
DEPLOYMENTS: Dict[Tuple[str, int], Dict] = {
    ('pancakeswap', 42161): {
        'position_manager': "0x46A15B0b27311cedF172AB29E4f4766fbE7F4364",
        'factory': "0x0BFbCF9fa4f9C56B0F40a671Ad40E0805A091865",
        'masterchef': "0x5e09ACf80C0296740eC5d6F643005a4ef8DaA694",
        'reward_symbol': "CAKE",
        'reward_decimals': 18,
        # CAKE/USDC pool used to value pending rewards
        'reward_pool': ("0x1b896893dfc86bb67Cf57767298b9073D2c1bA2c",
                        "0xaf88d065e77c8cC2239327C5EDb3A432268e5831", 2500),
        'position_url': "https://pancakeswap.finance/liquidity/{token_id}?chain=arb&persistChain=1",
        'pool_url': "https://pancakeswap.finance/liquidity/pool/arb/{address}",
    },
    ('uniswap', 42161): {
        'position_manager': "0xC36442b4a4522E871399CD717aBDD847Ab11FE88",
        'factory': "0x1F98431c8aD98523631AE4a59f267346ea31F984",
        'masterchef': None,
        'reward_symbol': None,
        'reward_pool': None,
        'position_url': "https://app.uniswap.org/positions/v3/arbitrum/{token_id}",
        'pool_url': "https://app.uniswap.org/explore/pools/arbitrum/{address}",
    },
    ('projectx', 999): {
        'position_manager': "0xeaD19AE861c29bBb2101E834922B2FEee69B9091",
        'factory': "0xFf7B3e8C00e57ea31477c32A5B52a58Eea47b072",
        'masterchef': None,
        'reward_symbol': None,
        'reward_pool': None,
        'position_url': None,
        'pool_url': None,
    },
}


def _int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw == '':
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got {raw!r}")


def _float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw == '':
        return default
    try:
        return float(raw)
    except ValueError:
        raise ConfigError(f"{name} must be a number, got {raw!r}")


def _decimal(name: str, default: str) -> Decimal:
    raw = os.getenv(name) or default
    try:
        return Decimal(raw)
    except InvalidOperation:
        raise ConfigError(f"{name} must be a decimal number, got {raw!r}")


@dataclass(frozen=True)
class Settings:
    telegram_token: str
    rpc_url: str
    chain_id: int = 42161
    dex: str = 'pancakeswap'
    db_path: str = 'bot_data.db'
    max_requests_per_second: int = 30
    message_edit_delay_ms: int = 3000
    dust_threshold: Decimal = Decimal('0.1')
    display_decimals: int = 8
    auto_save_interval: int = 30
    wallet_poll_interval: int = 60
    swap_poll_interval: float = 2.0
    swap_max_failures: int = 5
    swap_max_restarts: int = 3
    slot0_cache_ttl: float = 5.0
    rpc_delay: float = 0.0
    rpc_timeout: float = 10.0
    timezone: str = 'UTC'
    log_level: str = 'INFO'

    @property
    def deployment(self) -> Dict:
        try:
            return DEPLOYMENTS[(self.dex, self.chain_id)]
        except KeyError:
            raise ConfigError(f"No {self.dex} deployment configured for chain {self.chain_id}")

    @property
    def message_edit_delay(self) -> float:
        return self.message_edit_delay_ms / 1000

    @classmethod
    def from_env(cls) -> "Settings":
        token = os.getenv('TELEGRAM_BOT_TOKEN')
        rpc_url = os.getenv('RPC_URL')
        if not token:
            raise ConfigError("TELEGRAM_BOT_TOKEN not defined in .env")
        if not rpc_url:
            raise ConfigError("RPC_URL not defined in .env")

        settings = cls(
            telegram_token=token,
            rpc_url=rpc_url,
            chain_id=_int('CHAIN_ID', 42161),
            dex=os.getenv('DEX', 'pancakeswap').lower(),
            db_path=os.getenv('DB_PATH', 'bot_data.db'),
            max_requests_per_second=_int('MAX_REQUESTS_PER_SECOND', 30),
            message_edit_delay_ms=_int('MESSAGE_EDIT_DELAY_MS', 3000),
            dust_threshold=_decimal('DUST_THRESHOLD', '0.1'),
            display_decimals=_int('DISPLAY_DECIMALS', 8),
            auto_save_interval=_int('AUTO_SAVE_INTERVAL', 30),
            wallet_poll_interval=_int('WALLET_POLL_INTERVAL', 60),
            swap_poll_interval=_float('SWAP_POLL_INTERVAL', 2.0),
            swap_max_failures=_int('SWAP_MAX_FAILURES', 5),
            swap_max_restarts=_int('SWAP_MAX_RESTARTS', 3),
            slot0_cache_ttl=_float('SLOT0_CACHE_TTL', 5.0),
            rpc_delay=_float('RPC_DELAY', 0.0),
            rpc_timeout=_float('RPC_TIMEOUT', 10.0),
            timezone=os.getenv('TELEGRAM_TIMEZONE', 'UTC'),
            log_level=os.getenv('LOG_LEVEL', 'INFO').upper(),
        )
        settings.deployment  # fail fast on unsupported dex/chain
        if settings.max_requests_per_second < 1:
            raise ConfigError("MAX_REQUESTS_PER_SECOND must be at least 1")
        return settings

    def position_url(self, token_id: int) -> Optional[str]:
        template = self.deployment.get('position_url')
        return template.format(token_id=token_id) if template else None

    def pool_url(self, address: str) -> Optional[str]:
        template = self.deployment.get('pool_url')
        return template.format(address=address) if template else None
