import asyncio
from decimal import Decimal

import pytest

from errors import ChainReadError
from models import TrackedMessage
from pool_monitor import PoolMonitor, message_key
from reconciler import MessageReconciler
from subscriptions import SwapSubscriptionManager
from TelegramManager import ThrottledTelegram, Throttler
from tests.conftest import POOL_ADDRESS, FakeChain, fail_once, make_pool, swap_log


@pytest.fixture
def chain():
    return FakeChain()


@pytest.fixture
def monitor(bot, clock, store, watcher, chain):
    telegram = ThrottledTelegram(bot, Throttler(clock=clock, sleep=clock.sleep), 3.0,
                                 clock=clock, sleep=clock.sleep)
    reconciler = MessageReconciler(telegram, store)
    return PoolMonitor(chain, SwapSubscriptionManager(watcher), reconciler, telegram, store)


class TestStartMonitoring:
    def test_posts_message_and_subscribes(self, monitor, bot, store, watcher, pool_key):
        pool = asyncio.run(monitor.start_monitoring(POOL_ADDRESS, 100))

        assert pool.id == pool_key
        assert watcher.calls == [POOL_ADDRESS]
        assert len(bot.sent) == 1
        chat_id, text, options = bot.sent[0]
        assert chat_id == 100
        assert text.startswith("2000.00000000 USDC/WETH")
        assert "TVL: 1,000 USDC" in text
        assert options['parse_mode'] is None
        assert store.get_message(message_key(pool_key, 100)).message_id == 500
        assert store.get_pool(pool_key) is not None

    def test_second_chat_shares_subscription(self, monitor, bot, watcher):
        async def scenario():
            await monitor.start_monitoring(POOL_ADDRESS, 100)
            await monitor.start_monitoring(POOL_ADDRESS, 200)

        asyncio.run(scenario())

        assert len(watcher.calls) == 1
        assert [chat for chat, _, _ in bot.sent] == [100, 200]

    def test_unreadable_pool(self, monitor, chain, watcher):
        async def broken(address, refresh=True):
            raise ChainReadError("not a pool")

        chain.get_pool = broken
        with pytest.raises(ChainReadError):
            asyncio.run(monitor.start_monitoring(POOL_ADDRESS, 100))
        assert watcher.calls == []


class TestSwaps:
    def test_swap_edits_each_chat_message(self, monitor, bot, chain, watcher, pool_key):
        async def scenario():
            await monitor.start_monitoring(POOL_ADDRESS, 100)
            await monitor.start_monitoring(POOL_ADDRESS, 200)
            await watcher.emit(POOL_ADDRESS, [swap_log(price="2001", tick=-200306)])

        asyncio.run(scenario())

        assert [(chat, msg) for chat, msg, _ in bot.edits] == [(100, 500), (200, 501)]
        text = bot.edits[0][2]
        assert text.startswith("2001.00000000 USDC/WETH")
        assert "Tick: -200306" in text
        assert "Last Swap: 200 USDC" in text
        assert chain.invalidated == [pool_key]

    def test_alert_fires_once(self, monitor, bot, store, watcher, pool_key):
        async def scenario():
            await monitor.start_monitoring(POOL_ADDRESS, 100)
            monitor.add_alert(pool_key, Decimal("2000.5"), 100)
            await watcher.emit(POOL_ADDRESS, [swap_log(price="2001")])
            await watcher.emit(POOL_ADDRESS, [swap_log(price="2000", tx="0x02")])
            await watcher.emit(POOL_ADDRESS, [swap_log(price="2001", tx="0x03")])

        asyncio.run(scenario())

        alerts = [text for _, text, _ in bot.sent if text.startswith("🔔")]
        assert len(alerts) == 1
        assert "Price rose above 2000.5." in alerts[0]
        assert store.get_alerts(pool_key) == []

    def test_store_failure_on_one_chat_does_not_block_the_other(self, monitor, bot, store, watcher):
        async def scenario():
            await monitor.start_monitoring(POOL_ADDRESS, 100)
            await monitor.start_monitoring(POOL_ADDRESS, 200)
            fail_once(store, 'save_message')
            await watcher.emit(POOL_ADDRESS, [swap_log()])

        asyncio.run(scenario())

        assert sorted(chat for chat, _, _ in bot.edits) == [100, 200]

    def test_alert_persistence_failure_still_notifies_and_edits(self, monitor, bot, store, watcher, pool_key):
        async def scenario():
            await monitor.start_monitoring(POOL_ADDRESS, 100)
            monitor.add_alert(pool_key, Decimal("2000.5"), 100)
            fail_once(store, 'mark_alert_triggered')
            await watcher.emit(POOL_ADDRESS, [swap_log(price="2001")])

        asyncio.run(scenario())

        assert any(text.startswith("🔔") for _, text, _ in bot.sent)
        assert [chat for chat, _, _ in bot.edits] == [100]

    def test_inactive_pool_ignores_swaps(self, monitor, bot, store, watcher, pool_key):
        async def scenario():
            await monitor.start_monitoring(POOL_ADDRESS, 100)
            monitor.on_subscription_stopped(pool_key, ChainReadError("gone"))
            await monitor.on_swap(pool_key, None)

        asyncio.run(scenario())

        assert bot.edits == []
        assert store.get_pool(pool_key).monitoring_enabled is False


class TestSubscriptionGiveUp:
    @pytest.fixture
    def monitor(self, bot, clock, store, watcher, chain):
        telegram = ThrottledTelegram(bot, Throttler(clock=clock, sleep=clock.sleep), 3.0,
                                     clock=clock, sleep=clock.sleep)
        monitor = PoolMonitor(chain, None, MessageReconciler(telegram, store), telegram, store)
        monitor.subscriptions = SwapSubscriptionManager(watcher, max_restarts=0,
                                                        on_stopped=monitor.on_subscription_stopped)
        return monitor

    def test_pool_can_be_monitored_again(self, monitor, bot, watcher, pool_key):
        async def scenario():
            await monitor.start_monitoring(POOL_ADDRESS, 100)
            watcher.fail(POOL_ADDRESS, ChainReadError("rpc down"))
            stopped = monitor.pools[pool_key].monitoring_enabled
            await monitor.start_monitoring(POOL_ADDRESS, 200)
            await watcher.emit(POOL_ADDRESS, [swap_log()])
            return stopped

        assert asyncio.run(scenario()) is False
        assert watcher.is_watching(POOL_ADDRESS)
        assert monitor.pools[pool_key].monitoring_enabled is True
        assert sorted(chat for chat, _, _ in bot.edits) == [100, 200]


class TestStopMonitoring:
    def test_last_chat_closes_subscription(self, monitor, bot, store, watcher, pool_key):
        asyncio.run(monitor.start_monitoring(POOL_ADDRESS, 100))

        assert monitor.stop_monitoring(pool_key, 100) is True
        assert monitor.stop_monitoring(pool_key, 100) is False
        assert watcher.cancelled == [POOL_ADDRESS]
        assert store.get_pool(pool_key) is None
        assert store.get_message(message_key(pool_key, 100)) is None
        assert bot.deleted == []

    def test_other_chat_keeps_subscription(self, monitor, watcher, pool_key):
        async def scenario():
            await monitor.start_monitoring(POOL_ADDRESS, 100)
            await monitor.start_monitoring(POOL_ADDRESS, 200)

        asyncio.run(scenario())
        monitor.stop_monitoring(pool_key, 100)

        assert watcher.cancelled == []
        assert monitor.pools_for_chat(200)[0].id == pool_key
        assert monitor.pools_for_chat(100) == []

    def test_restart_after_stop(self, monitor, watcher, pool_key):
        async def scenario():
            await monitor.start_monitoring(POOL_ADDRESS, 100)
            monitor.stop_monitoring(pool_key, 100)
            await monitor.start_monitoring(POOL_ADDRESS, 100)

        asyncio.run(scenario())

        assert len(watcher.calls) == 2
        assert watcher.is_watching(POOL_ADDRESS)


class TestRestore:
    def test_reattaches_stored_message(self, monitor, bot, store, watcher, pool_key):
        store.save_pool(make_pool())
        store.save_message(TrackedMessage(message_key(pool_key, 100), 100, 42, 1))

        async def scenario():
            restored = await monitor.restore()
            await watcher.emit(POOL_ADDRESS, [swap_log()])
            return restored

        assert asyncio.run(scenario()) == 1
        assert bot.sent == []
        assert [(chat, msg) for chat, msg, _ in bot.edits] == [(100, 42)]

    def test_unknown_pool_pruned(self, monitor, store, watcher, pool_key):
        store.save_message(TrackedMessage(message_key(pool_key, 100), 100, 42, 1))

        assert asyncio.run(monitor.restore()) == 0
        assert store.get_message(message_key(pool_key, 100)) is None
        assert watcher.calls == []


def test_save_all_persists_last_state(monitor, store, watcher, pool_key):
    async def scenario():
        await monitor.start_monitoring(POOL_ADDRESS, 100)
        await watcher.emit(POOL_ADDRESS, [swap_log(tick=-200306)])
        await monitor.save_all()

    asyncio.run(scenario())

    assert store.get_pool(pool_key).state.tick == -200306
