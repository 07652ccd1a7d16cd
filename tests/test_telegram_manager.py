import asyncio

import pytest
from telegram.error import BadRequest, Forbidden, TimedOut

from errors import MessageGone, TransportError
from TelegramManager import ThrottledTelegram, Throttler


def make_telegram(bot, clock, edit_interval=3.0, max_requests=30):
    throttler = Throttler(max_requests, 1.0, clock=clock, sleep=clock.sleep)
    return ThrottledTelegram(bot, throttler, edit_interval, clock=clock, sleep=clock.sleep)


class TestThrottler:
    def test_waits_when_window_is_full(self, clock):
        throttler = Throttler(2, 1.0, clock=clock, sleep=clock.sleep)

        async def scenario():
            for _ in range(3):
                await throttler.acquire()

        asyncio.run(scenario())

        assert clock.sleeps == [1.0]
        assert len(throttler.timestamps) == 1

    def test_no_wait_under_budget(self, clock):
        throttler = Throttler(30, 1.0, clock=clock, sleep=clock.sleep)

        async def scenario():
            for _ in range(30):
                await throttler.acquire()

        asyncio.run(scenario())

        assert clock.sleeps == []


class TestThrottledTelegram:
    def test_send_returns_bot_message(self, bot, clock):
        telegram = make_telegram(bot, clock)
        message = asyncio.run(telegram.send_message(1, "hi"))
        assert message.message_id == 500
        assert bot.sent == [(1, "hi", {})]

    def test_price_only_edit_inside_window_is_dropped(self, bot, clock):
        telegram = make_telegram(bot, clock)

        async def scenario():
            first = await telegram.edit_message_text("a", 1, 10, price_only=True)
            clock.now += 1
            second = await telegram.edit_message_text("b", 1, 10, price_only=True)
            return first, second

        first, second = asyncio.run(scenario())

        assert first is not None
        assert second is None
        assert [text for _, _, text in bot.edits] == ["a"]

    def test_other_edit_inside_window_waits(self, bot, clock):
        telegram = make_telegram(bot, clock)

        async def scenario():
            await telegram.edit_message_text("a", 1, 10)
            clock.now += 1
            await telegram.edit_message_text("b", 1, 10)

        asyncio.run(scenario())

        assert [text for _, _, text in bot.edits] == ["a", "b"]
        assert clock.sleeps == [2.0]

    def test_window_is_per_message(self, bot, clock):
        telegram = make_telegram(bot, clock)

        async def scenario():
            await telegram.edit_message_text("a", 1, 10, price_only=True)
            await telegram.edit_message_text("b", 1, 11, price_only=True)

        asyncio.run(scenario())

        assert len(bot.edits) == 2

    def test_edit_after_window(self, bot, clock):
        telegram = make_telegram(bot, clock)

        async def scenario():
            await telegram.edit_message_text("a", 1, 10, price_only=True)
            clock.now += 3
            return await telegram.edit_message_text("b", 1, 10, price_only=True)

        assert asyncio.run(scenario()) is not None
        assert len(bot.edits) == 2

    def test_not_modified_counts_as_delivered(self, bot, clock):
        telegram = make_telegram(bot, clock)
        bot.errors['edit_message_text'] = BadRequest("Message is not modified: specified new message content")
        assert asyncio.run(telegram.edit_message_text("a", 1, 10)) is True

    def test_deleted_message_raises_gone(self, bot, clock):
        telegram = make_telegram(bot, clock)
        bot.errors['edit_message_text'] = BadRequest("Message to edit not found")
        with pytest.raises(MessageGone):
            asyncio.run(telegram.edit_message_text("a", 1, 10))

    def test_blocked_bot_raises_gone(self, bot, clock):
        telegram = make_telegram(bot, clock)
        bot.errors['send_message'] = Forbidden("Forbidden: bot was blocked by the user")
        with pytest.raises(MessageGone):
            asyncio.run(telegram.send_message(1, "hi"))

    def test_network_error_is_transport_error(self, bot, clock):
        telegram = make_telegram(bot, clock)
        bot.errors['send_message'] = TimedOut()
        with pytest.raises(TransportError) as info:
            asyncio.run(telegram.send_message(1, "hi"))
        assert not isinstance(info.value, MessageGone)

    def test_delete_resets_edit_window(self, bot, clock):
        telegram = make_telegram(bot, clock)

        async def scenario():
            await telegram.edit_message_text("a", 1, 10)
            await telegram.delete_message(1, 10)

        asyncio.run(scenario())

        assert bot.deleted == [(1, 10)]
        assert (1, 10) not in telegram.last_edit

    def test_forget_message_clears_edit_window(self, bot, clock):
        telegram = make_telegram(bot, clock)
        asyncio.run(telegram.edit_message_text("a", 1, 10))

        telegram.forget_message(1, 10)

        assert telegram.last_edit == {}

    def test_callback_answers_share_the_rate_limit(self, bot, clock):
        telegram = make_telegram(bot, clock, max_requests=1)

        async def scenario():
            await telegram.answer_callback_query("q1")
            await telegram.answer_callback_query("q2", text="done")

        asyncio.run(scenario())

        assert bot.answered == ["q1", "q2"]
        assert clock.sleeps == [1.0]
