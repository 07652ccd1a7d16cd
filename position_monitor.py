import logging
from dataclasses import replace
from decimal import Decimal
from typing import Callable, Dict, List, Optional, Set

import price_math
from errors import ChainReadError, MonitorError, TransportError
from lifecycle import ChangeType, PositionChange, PositionLifecycleTracker
from messages import (PARSE_MODE, render_no_positions, render_position_message, render_range_notification,
                      render_still_footer)
from models import MonitoredWallet, PoolState, Position, SwapObserved, TrackedMessage
from reconciler import Outcome

logger = logging.getLogger(__name__)

POSITION = 'Position'
RANGE = 'Range'


def position_key(position_id: str) -> str:
    return TrackedMessage.make_id(POSITION, position_id)


def range_key(position_id: str) -> str:
    return TrackedMessage.make_id(RANGE, position_id)


class PositionMonitor:
    """
    Live position messages and wallet change detection.

    Each tracked position has one `Position_<id>` message, edited on every
    swap of its pool, and while out of range a `Range_<id>` reply that is
    deleted once the price is back inside the range.
    """

    def __init__(self, tracker, subscriptions, reconciler, telegram, store,
                 lifecycle: Optional[PositionLifecycleTracker] = None, timezone: str = 'UTC',
                 position_url: Optional[Callable[[int], Optional[str]]] = None,
                 pool_url: Optional[Callable[[str], Optional[str]]] = None):
        self.tracker = tracker
        self.subscriptions = subscriptions
        self.reconciler = reconciler
        self.telegram = telegram
        self.store = store
        self.lifecycle = lifecycle or PositionLifecycleTracker()
        self.timezone = timezone
        self.position_url = position_url or (lambda token_id: None)
        self.pool_url = pool_url or (lambda address: None)

        self.positions: Dict[str, Position] = {}
        self.by_pool: Dict[str, Set[str]] = {}
        self._listeners = {}

    async def render(self, position: Position) -> str:
        pool = position.pool
        fees_value = Decimal(0)
        reward_value = Decimal(0)
        try:
            fees0, fees1 = await self.tracker.get_unclaimed_fees(position)
            fees_value = (price_math.to_units(fees0, pool.token0.decimals) * position.price
                          + price_math.to_units(fees1, pool.token1.decimals))
        except ChainReadError as e:
            logger.warning(f"Fees of {position.id} unavailable: {e}")
        try:
            reward = await self.tracker.get_pending_reward(position)
            if reward:
                reward_price = await self.tracker.get_reward_price()
                decimals = self.tracker.deployment.get('reward_decimals', 18)
                if reward_price is not None:
                    reward_value = price_math.to_units(reward, decimals) * reward_price
        except ChainReadError as e:
            logger.warning(f"Rewards of {position.id} unavailable: {e}")

        return render_position_message(
            position, fees_value, reward_value, timezone=self.timezone,
            pool_url=self.pool_url(pool.address), position_url=self.position_url(position.token_id))

    def _keep_created_at(self, position: Position) -> Position:
        known = self.positions.get(position.id)
        if known is not None:
            return replace(position, created_at=known.created_at)
        stored = self.store.get_position(position.id)
        if stored is not None:
            return replace(position, created_at=stored['created_at'])
        self.store.save_position(position.id, position.token_id, position.owner, position.created_at)
        return position

    def _attach(self, position: Position):
        self.positions[position.id] = position
        pool_key = position.pool.id
        self.by_pool.setdefault(pool_key, set()).add(position.id)
        if pool_key in self._listeners:
            return

        async def listener(event: SwapObserved, pool_key=pool_key):
            await self.on_swap(pool_key, event)

        self._listeners[pool_key] = listener
        self.subscriptions.subscribe(pool_key, position.pool.address, listener)

    def _detach(self, position_id: str):
        position = self.positions.pop(position_id, None)
        if position is None:
            return
        pool_key = position.pool.id
        members = self.by_pool.get(pool_key, set())
        members.discard(position_id)
        if members:
            return
        self.by_pool.pop(pool_key, None)
        listener = self._listeners.pop(pool_key, None)
        if listener is not None:
            self.subscriptions.unsubscribe(pool_key, listener)

    async def track(self, position: Position, chat_id: int, fresh: bool = False) -> Outcome:
        position = self._keep_created_at(position)
        self._attach(position)
        outcome = await self.reconciler.reconcile(
            position_key(position.id), chat_id, lambda: self.render(position), fresh=fresh)
        await self._sync_range(position)
        return outcome

    async def untrack(self, position_id: str):
        """Stop following a position; its last message stays in the chat."""
        self._detach(position_id)
        self.reconciler.forget(position_key(position_id))
        await self.reconciler.delete(range_key(position_id))

    async def _sync_range(self, position: Position):
        if position.in_range:
            await self.reconciler.delete(range_key(position.id))
            return
        record = self.reconciler.get(position_key(position.id))
        if record is None or self.reconciler.get(range_key(position.id)) is not None:
            return
        await self.reconciler.reconcile(range_key(position.id), record.chat_id, render_range_notification(),
                                        reply_to=record.message_id)

    async def _post_still(self, position: Position, chat_id: int):
        text = f"{await self.render(position)}\n{render_still_footer()}"
        try:
            await self.telegram.send_message(chat_id, text, parse_mode=PARSE_MODE,
                                             disable_web_page_preview=True)
        except TransportError as e:
            logger.error(f"Announcing {position.id} to chat {chat_id} failed: {e}")

    async def on_swap(self, pool_key: str, event: SwapObserved):
        state = PoolState(event.sqrt_price_x96, event.tick, event.liquidity)
        for position_id in list(self.by_pool.get(pool_key, ())):
            try:
                await self._apply_swap(position_id, state)
            except MonitorError as e:
                logger.error(f"Swap update of position {position_id} failed: {e}")

    async def _apply_swap(self, position_id: str, state: PoolState):
        position = self.positions.get(position_id)
        if position is None:
            return
        updated = position.refreshed(position.pool.with_state(state))
        self.positions[position_id] = updated

        if self.lifecycle.is_dust(updated.snapshot()):
            logger.info(f"Position {position_id} fell below the dust threshold, no longer tracked")
            await self.untrack(position_id)
            return

        record = self.reconciler.get(position_key(position_id))
        if record is None:
            return
        range_flipped = updated.in_range != position.in_range
        await self.reconciler.reconcile(position_key(position_id), record.chat_id,
                                        lambda: self.render(updated), price_only=not range_flipped)
        if range_flipped:
            await self._sync_range(updated)

    def on_subscription_stopped(self, pool_key: str, error: Exception):
        if self._listeners.pop(pool_key, None) is not None:
            logger.error(f"Positions in {pool_key} no longer receive swaps: {error}")

    async def show_positions(self, chat_id: int) -> int:
        """Post one live message per non-dust position of the chat's wallets."""
        wallets = self.store.get_chat_wallets(chat_id)
        shown = 0
        for address in wallets:
            try:
                positions = await self.tracker.get_wallet_positions(address)
            except ChainReadError as e:
                logger.warning(f"Positions of {address} unavailable: {e}")
                continue
            for position in positions:
                if self.lifecycle.is_dust(position.snapshot()):
                    continue
                await self.track(position, chat_id, fresh=True)
                shown += 1
        if wallets and not shown:
            await self.telegram.send_message(chat_id, render_no_positions(wallets))
        return shown

    async def register_wallet(self, address: str, chat_id: int) -> Optional[int]:
        """
        Start watching a wallet for a chat.

        The current positions become the baseline snapshot so only later
        changes are announced. Returns the number of open positions, or None
        when the chat already watches the wallet. Nothing is stored when the
        positions cannot be read.
        """
        if address.lower() in (known.lower() for known in self.store.get_chat_wallets(chat_id)):
            return None
        positions = await self.tracker.get_wallet_positions(address)
        snapshot = tuple(self.lifecycle.filter_dust(p.snapshot() for p in positions))
        if not self.store.add_wallet(address, chat_id):
            return None
        self.store.save_wallet_snapshot(address, snapshot)
        return len(snapshot)

    def unregister_wallet(self, address: str, chat_id: int) -> bool:
        return self.store.remove_wallet(address, chat_id)

    async def poll_wallets(self) -> List[PositionChange]:
        all_changes = []
        for wallet in self.store.get_wallets():
            try:
                all_changes += await self._poll_wallet(wallet)
            except MonitorError as e:
                logger.error(f"Polling wallet {wallet.address} failed: {e}")
        return all_changes

    async def _poll_wallet(self, wallet: MonitoredWallet) -> List[PositionChange]:
        positions = {p.id: p for p in await self.tracker.get_wallet_positions(wallet.address)}
        current = [p.snapshot() for p in positions.values()]
        changes = self.lifecycle.diff(wallet.snapshot, current)
        self.store.save_wallet_snapshot(wallet.address, tuple(self.lifecycle.filter_dust(current)))

        for change in changes:
            logger.info(f"Wallet {wallet.address}: {change.type.value} {change.position_id}")
            await self._apply(change, positions.get(change.position_id), wallet)
        return changes

    async def _apply(self, change: PositionChange, position: Optional[Position], wallet: MonitoredWallet):
        if change.type == ChangeType.NEW:
            # one live message per position; the wallet's other chats get a still copy
            live_chat, *other_chats = sorted(wallet.chat_ids)
            await self.track(position, live_chat, fresh=True)
            for chat_id in other_chats:
                await self._post_still(self.positions[position.id], chat_id)
            return

        if change.type == ChangeType.REMOVED:
            await self.untrack(change.position_id)
            self.store.delete_position(change.position_id)
            return

        # RANGE_CHANGE / STAKE_CHANGE: content other than the price changed
        record = self.reconciler.get(position_key(change.position_id))
        if position is None or record is None:
            return
        position = self._keep_created_at(position)
        self._attach(position)
        await self.reconciler.reconcile(position_key(position.id), record.chat_id, lambda: self.render(position))
        if change.type == ChangeType.RANGE_CHANGE:
            await self._sync_range(position)

    async def restore(self) -> int:
        """
        Re-attach every position message found in the store.

        A position that no longer resolves (burned, no liquidity, dust) has
        its records pruned; one that cannot be read right now is left for the
        next start.
        """
        restored = 0
        for record in self.reconciler.records(f"{POSITION}_"):
            position_id = record.ref
            stored = self.store.get_position(position_id)
            token_id = stored['token_id'] if stored else int(position_id.rsplit(':', 1)[-1])
            try:
                position = await self.tracker.get_position(
                    token_id, created_at=stored['created_at'] if stored else None)
            except ChainReadError as e:
                logger.warning(f"Could not restore {record.id}: {e}")
                continue

            if position is None or self.lifecycle.is_dust(position.snapshot()):
                logger.warning(f"Pruning {record.id}: position no longer open")
                self.reconciler.forget(record.id)
                self.reconciler.forget(range_key(position_id))
                self.store.delete_position(position_id)
                continue

            self._attach(self._keep_created_at(position))
            restored += 1
        self.reconciler.records(f"{RANGE}_")
        logger.info(f"Restored {restored} position message(s)")
        return restored
