import asyncio
import logging
import time
from collections import deque
from typing import Callable, Deque, Dict, Optional, Tuple

from telegram.error import BadRequest, Forbidden, TelegramError

from errors import MessageGone, TransportError

logger = logging.getLogger(__name__)

GONE_MARKERS = (
    "message to edit not found",
    "message to delete not found",
    "message can't be deleted",
    "chat not found",
    "message_id_invalid",
)


class Throttler:
    """At most `max_requests` calls in any rolling `time_window`; callers over budget wait."""

    def __init__(self, max_requests: int = 30, time_window: float = 1.0,
                 clock: Callable[[], float] = time.monotonic, sleep=asyncio.sleep):
        self.max_requests = max_requests
        self.time_window = time_window
        self.clock = clock
        self.sleep = sleep
        self.timestamps: Deque[float] = deque()
        self._lock = asyncio.Lock()

    async def acquire(self):
        async with self._lock:
            while True:
                now = self.clock()
                while self.timestamps and now - self.timestamps[0] >= self.time_window:
                    self.timestamps.popleft()
                if len(self.timestamps) < self.max_requests:
                    self.timestamps.append(now)
                    return
                await self.sleep(self.time_window - (now - self.timestamps[0]))


def _translate(error: TelegramError, what: str) -> TransportError:
    text = str(error).lower()
    if isinstance(error, Forbidden) or any(marker in text for marker in GONE_MARKERS):
        return MessageGone(f"{what}: {error}")
    return TransportError(f"{what}: {error}")


class ThrottledTelegram:
    """
    Wraps a telegram Bot with the global rate limit and a minimum spacing
    between edits of the same message.

    Callers tag edits that only move a price with price_only=True; such an
    edit arriving inside the spacing window is dropped (returns None). Any
    other edit waits for the window to pass and is then delivered.
    """

    def __init__(self, bot, throttler: Optional[Throttler] = None, edit_interval: float = 3.0,
                 clock: Callable[[], float] = time.monotonic, sleep=asyncio.sleep):
        self.bot = bot
        self.throttler = throttler or Throttler(clock=clock, sleep=sleep)
        self.edit_interval = edit_interval
        self.clock = clock
        self.sleep = sleep
        self.last_edit: Dict[Tuple[int, int], float] = {}

    async def send_message(self, chat_id: int, text: str, **kwargs):
        await self.throttler.acquire()
        try:
            return await self.bot.send_message(chat_id=chat_id, text=text, **kwargs)
        except TelegramError as e:
            raise _translate(e, f"send to {chat_id}") from e

    async def edit_message_text(self, text: str, chat_id: int, message_id: int,
                                price_only: bool = False, **kwargs):
        key = (chat_id, message_id)
        while True:
            last = self.last_edit.get(key)
            elapsed = None if last is None else self.clock() - last
            if elapsed is None or elapsed >= self.edit_interval:
                break
            if price_only:
                logger.debug(f"Dropping price update for message {message_id} in {chat_id}")
                return None
            await self.sleep(self.edit_interval - elapsed)
        self.last_edit[key] = self.clock()

        await self.throttler.acquire()
        try:
            return await self.bot.edit_message_text(
                text=text, chat_id=chat_id, message_id=message_id, **kwargs)
        except BadRequest as e:
            if "not modified" in str(e).lower():
                return True
            raise _translate(e, f"edit {message_id} in {chat_id}") from e
        except TelegramError as e:
            raise _translate(e, f"edit {message_id} in {chat_id}") from e

    async def delete_message(self, chat_id: int, message_id: int) -> bool:
        await self.throttler.acquire()
        try:
            result = await self.bot.delete_message(chat_id=chat_id, message_id=message_id)
        except TelegramError as e:
            raise _translate(e, f"delete {message_id} in {chat_id}") from e
        self.forget_message(chat_id, message_id)
        return result

    def forget_message(self, chat_id: int, message_id: int):
        """Drop the edit spacing state of a message that is no longer edited."""
        self.last_edit.pop((chat_id, message_id), None)

    async def answer_callback_query(self, callback_query_id: str, **kwargs):
        await self.throttler.acquire()
        try:
            return await self.bot.answer_callback_query(callback_query_id=callback_query_id, **kwargs)
        except TelegramError as e:
            raise _translate(e, f"answer callback {callback_query_id}") from e
