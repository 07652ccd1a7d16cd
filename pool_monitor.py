import logging
from dataclasses import replace
from decimal import Decimal
from typing import Dict, List, Optional, Set

from alerts import AlertEvaluator, AlertFired
from errors import ChainReadError, MonitorError, StoreError, TransportError
from messages import render_pool_message, render_price_alert
from models import MonitoredPool, PoolState, PriceAlert, SwapObserved, TrackedMessage
from price_math import DISPLAY_DECIMALS

logger = logging.getLogger(__name__)

CATEGORY = 'Pool'


def message_key(pool_key: str, chat_id: int) -> str:
    return TrackedMessage.make_id(CATEGORY, f"{pool_key}@{chat_id}")


class PoolMonitor:
    """Live price message per (pool, chat) plus the pool's price alerts."""

    def __init__(self, tracker, subscriptions, reconciler, telegram, store,
                 alerts: Optional[AlertEvaluator] = None, timezone: str = 'UTC',
                 display_decimals: int = DISPLAY_DECIMALS):
        self.tracker = tracker
        self.subscriptions = subscriptions
        self.reconciler = reconciler
        self.telegram = telegram
        self.store = store
        self.alerts = alerts or AlertEvaluator(store)
        self.timezone = timezone
        self.display_decimals = display_decimals

        self.pools: Dict[str, MonitoredPool] = {}
        self.chats: Dict[str, Set[int]] = {}
        self.last_swap: Dict[str, SwapObserved] = {}
        self.tvl: Dict[str, Decimal] = {}
        self._listeners = {}

    def render(self, pool: MonitoredPool) -> str:
        return render_pool_message(pool, self.last_swap.get(pool.id), self.tvl.get(pool.id),
                                   timezone=self.timezone, display_decimals=self.display_decimals)

    def _attach(self, pool: MonitoredPool, chat_id: int):
        if pool.id not in self.chats:
            self.alerts.load(pool.id)
        self.pools[pool.id] = pool
        self.chats.setdefault(pool.id, set()).add(chat_id)
        # a subscription that gave up has dropped its listener
        if pool.id in self._listeners:
            return

        async def listener(event: SwapObserved, pool_key=pool.id):
            await self.on_swap(pool_key, event)

        self._listeners[pool.id] = listener
        self.subscriptions.subscribe(pool.id, pool.address, listener)

    async def start_monitoring(self, address: str, chat_id: int) -> MonitoredPool:
        """Load the pool, post its live message in the chat and follow its swaps."""
        pool = await self.tracker.get_pool(address)
        if not pool.monitoring_enabled:
            pool = replace(pool, monitoring_enabled=True)
        tvl = await self.tracker.compute_tvl(pool)
        if tvl is not None:
            self.tvl[pool.id] = tvl

        self.store.save_token(pool.token0)
        self.store.save_token(pool.token1)
        self.store.save_pool(pool)
        self._attach(pool, chat_id)
        logger.info(f"Monitoring pool {pool.id} ({pool.pair}) in chat {chat_id}")

        await self.reconciler.reconcile(message_key(pool.id, chat_id), chat_id, self.render(pool),
                                        fresh=True, parse_mode=None)
        return pool

    def stop_monitoring(self, pool_key: str, chat_id: int) -> bool:
        """
        Stop following a pool in one chat; False if it was not monitored there.

        Synchronous so the listener is gone before any other task runs. The
        chat message stays as the last state shown.
        """
        chats = self.chats.get(pool_key)
        if not chats or chat_id not in chats:
            return False
        chats.discard(chat_id)
        self.reconciler.forget(message_key(pool_key, chat_id))

        if chats:
            self.alerts.clear(pool_key, chat_id)
            return True

        listener = self._listeners.pop(pool_key, None)
        if listener is not None:
            self.subscriptions.unsubscribe(pool_key, listener)
        del self.chats[pool_key]
        self.pools.pop(pool_key, None)
        self.last_swap.pop(pool_key, None)
        self.tvl.pop(pool_key, None)
        self.alerts.clear(pool_key)
        self.store.delete_pool(pool_key)
        logger.info(f"Stopped monitoring pool {pool_key}")
        return True

    def pools_for_chat(self, chat_id: int) -> List[MonitoredPool]:
        return [self.pools[key] for key, chats in self.chats.items() if chat_id in chats and key in self.pools]

    def find_pool(self, chat_id: int, address: str) -> Optional[MonitoredPool]:
        for pool in self.pools_for_chat(chat_id):
            if pool.address.lower() == address.lower():
                return pool
        return None

    def add_alert(self, pool_key: str, target_price: Decimal, chat_id: int) -> PriceAlert:
        return self.alerts.add(pool_key, target_price, chat_id)

    async def on_swap(self, pool_key: str, event: SwapObserved):
        pool = self.pools.get(pool_key)
        if pool is None or not pool.monitoring_enabled:
            return

        last_price = pool.price()
        pool = pool.with_state(PoolState(event.sqrt_price_x96, event.tick, event.liquidity))
        self.pools[pool_key] = pool
        self.last_swap[pool_key] = event
        self.tracker.invalidate_slot0(pool_key)

        try:
            for fired in self.alerts.evaluate(pool_key, last_price, pool.price()):
                await self._notify(pool, fired)
        except MonitorError as e:
            logger.error(f"Alert evaluation for {pool_key} failed: {e}")

        text = self.render(pool)
        for chat_id in list(self.chats.get(pool_key, ())):
            key = message_key(pool_key, chat_id)
            try:
                await self.reconciler.reconcile(key, chat_id, text, price_only=True, parse_mode=None)
            except MonitorError as e:
                logger.error(f"Updating {key} failed: {e}")

    async def _notify(self, pool: MonitoredPool, fired: AlertFired):
        text = render_price_alert(pool, fired.direction, fired.alert.target_price, fired.price,
                                  self.display_decimals)
        try:
            await self.telegram.send_message(fired.alert.chat_id, text)
        except TransportError as e:
            logger.error(f"Price alert for {pool.id} to chat {fired.alert.chat_id} not delivered: {e}")

    def on_subscription_stopped(self, pool_key: str, error: Exception):
        pool = self.pools.get(pool_key)
        if pool is None:
            return
        self.pools[pool_key] = replace(pool, monitoring_enabled=False)
        self._listeners.pop(pool_key, None)
        logger.error(f"Pool {pool_key} flagged inactive: {error}")
        try:
            self.store.save_pool(self.pools[pool_key])
        except StoreError as e:
            logger.error(f"Could not persist inactive flag of {pool_key}: {e}")

    async def restore(self) -> int:
        """Re-attach every pool message found in the store; returns how many."""
        restored = 0
        for record in self.reconciler.records(f"{CATEGORY}_"):
            pool_key, _, _ = record.ref.rpartition('@')
            pool = self.store.get_pool(pool_key) if pool_key else None
            if pool is None:
                logger.warning(f"Pruning {record.id}: pool no longer known")
                self.reconciler.forget(record.id)
                continue
            if not pool.monitoring_enabled:
                logger.info(f"Pool {pool_key} is inactive, not restoring {record.id}")
                continue

            self.tracker.remember_token(pool.token0)
            self.tracker.remember_token(pool.token1)
            try:
                pool = await self.tracker.refresh_pool(pool)
            except ChainReadError as e:
                logger.warning(f"Restoring {pool_key} from stored state: {e}")
            self._attach(pool, record.chat_id)
            restored += 1
        logger.info(f"Restored {restored} pool message(s)")
        return restored

    async def save_all(self):
        """Persist every pool's last state and refresh cached TVL."""
        for pool_key, pool in list(self.pools.items()):
            try:
                self.store.save_pool(pool)
            except StoreError as e:
                logger.error(f"Auto-save of {pool_key} failed: {e}")
            tvl = await self.tracker.compute_tvl(pool)
            if tvl is not None:
                self.tvl[pool_key] = tvl
