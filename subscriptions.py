import asyncio
import logging
from typing import Awaitable, Callable, Dict, List, Optional

from web3 import Web3

from errors import MalformedEvent
from models import SwapObserved

logger = logging.getLogger(__name__)

SwapListener = Callable[[SwapObserved], Awaitable[None]]


class SwapSubscription:
    """One chain subscription for a pool, shared by any number of listeners."""

    def __init__(self, pool_id: str, address: str):
        self.pool_id = pool_id
        self.address = address
        self.listeners: List[SwapListener] = []
        self.cancel: Optional[Callable[[], None]] = None
        self.restarts = 0
        self.stopped = False


def _tx_ref(tx_hash) -> str:
    if not tx_hash:
        return ""
    if isinstance(tx_hash, str):
        return tx_hash
    return Web3.to_hex(tx_hash)


def decode_swap(log: Dict) -> SwapObserved:
    args = log.get('args')
    if not args:
        raise MalformedEvent(f"swap log without decoded arguments: {log.get('transactionHash')}")
    try:
        return SwapObserved(
            sqrt_price_x96=int(args['sqrtPriceX96']),
            tick=int(args['tick']),
            liquidity=int(args['liquidity']),
            amount0=int(args['amount0']),
            amount1=int(args['amount1']),
            tx_ref=_tx_ref(log.get('transactionHash')),
        )
    except (KeyError, TypeError, ValueError) as e:
        raise MalformedEvent(f"swap log with bad arguments: {e}") from e


class SwapSubscriptionManager:
    """
    Reference-counted registry of swap subscriptions keyed by pool id.

    The first listener for a pool opens the chain subscription, the last one
    to leave closes it. subscribe/unsubscribe are synchronous so a stop
    followed by a start for the same pool can never leave two live watches.
    """

    def __init__(self, watcher, max_restarts: int = 3, restart_delay: float = 5.0,
                 on_stopped: Optional[Callable[[str, Exception], None]] = None):
        self.watcher = watcher
        self.max_restarts = max_restarts
        self.restart_delay = restart_delay
        self.on_stopped = on_stopped
        self._subscriptions: Dict[str, SwapSubscription] = {}

    def __contains__(self, pool_id: str) -> bool:
        return pool_id in self._subscriptions

    def listener_count(self, pool_id: str) -> int:
        sub = self._subscriptions.get(pool_id)
        return len(sub.listeners) if sub else 0

    def subscribe(self, pool_id: str, address: str, listener: SwapListener) -> SwapSubscription:
        sub = self._subscriptions.get(pool_id)
        if sub is None:
            sub = SwapSubscription(pool_id, address)
            self._subscriptions[pool_id] = sub
            self._open(sub)
            logger.info(f"Subscribed to swaps of {pool_id}")
        if listener not in sub.listeners:
            sub.listeners.append(listener)
        return sub

    def unsubscribe(self, pool_id: str, listener: SwapListener) -> bool:
        """Detach a listener; returns True when this closed the chain subscription."""
        sub = self._subscriptions.get(pool_id)
        if sub is None:
            return False
        if listener in sub.listeners:
            sub.listeners.remove(listener)
        if sub.listeners:
            return False
        self._close(sub)
        del self._subscriptions[pool_id]
        logger.info(f"Unsubscribed from swaps of {pool_id}")
        return True

    def stop_all(self):
        for sub in list(self._subscriptions.values()):
            self._close(sub)
        self._subscriptions.clear()

    def _open(self, sub: SwapSubscription):
        sub.stopped = False
        sub.cancel = self.watcher.watch_swaps(
            sub.address,
            lambda logs: self._dispatch(sub, logs),
            lambda error: self._on_error(sub, error),
        )

    def _close(self, sub: SwapSubscription):
        if sub.cancel is not None:
            sub.cancel()
            sub.cancel = None
        sub.stopped = True

    async def _dispatch(self, sub: SwapSubscription, logs: List[Dict]):
        # the restart cap counts consecutive outages only
        if sub.restarts:
            logger.info(f"Swap subscription for {sub.pool_id} delivering again after {sub.restarts} restart(s)")
            sub.restarts = 0
        for log in logs:
            try:
                event = decode_swap(log)
            except MalformedEvent as e:
                logger.warning(f"Skipping swap on {sub.pool_id}: {e}")
                continue
            for listener in list(sub.listeners):
                try:
                    await listener(event)
                except Exception:
                    logger.exception(f"Swap listener failed for {sub.pool_id}")

    def _on_error(self, sub: SwapSubscription, error: Exception):
        sub.stopped = True
        sub.cancel = None
        if self._subscriptions.get(sub.pool_id) is not sub:
            return
        if sub.restarts < self.max_restarts:
            sub.restarts += 1
            logger.warning(f"Swap subscription for {sub.pool_id} stopped ({error}), "
                           f"restart {sub.restarts}/{self.max_restarts}")
            asyncio.get_running_loop().call_later(self.restart_delay, self.restart, sub.pool_id)
            return
        logger.error(f"Swap subscription for {sub.pool_id} gave up after {sub.restarts} restarts: {error}")
        del self._subscriptions[sub.pool_id]
        if self.on_stopped:
            self.on_stopped(sub.pool_id, error)

    def restart(self, pool_id: str) -> bool:
        sub = self._subscriptions.get(pool_id)
        if sub is None or not sub.stopped or not sub.listeners:
            return False
        self._open(sub)
        logger.info(f"Restarted swap subscription for {pool_id}")
        return True
