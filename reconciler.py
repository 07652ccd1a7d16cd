import logging
from dataclasses import replace
from enum import Enum
from typing import Awaitable, Callable, Dict, List, Optional, Set, Union

from errors import MessageGone, TransportError
from messages import PARSE_MODE, checksum
from models import TrackedMessage, utcnow

logger = logging.getLogger(__name__)

Content = Union[str, Callable[[], Awaitable[str]]]


class Outcome(Enum):
    SENT = "sent"
    EDITED = "edited"
    UNCHANGED = "unchanged"
    DROPPED = "dropped"
    BUSY = "busy"
    DELETED = "deleted"
    MISSING = "missing"
    GONE = "gone"
    FAILED = "failed"


def _metadata(message) -> Dict:
    date = getattr(message, 'date', None)
    return {
        'message_id': getattr(message, 'message_id', None),
        'date': date.isoformat() if hasattr(date, 'isoformat') else date,
    }


class MessageReconciler:
    """
    Keeps one chat message per tracked id in sync with rendered content.

    An id without a record gets a new message; an id with a record gets an
    edit, skipped when the text checksum is unchanged. A second attempt for
    an id while the first is still awaiting I/O returns BUSY and does
    nothing: the next event re-renders the latest state anyway.
    """

    def __init__(self, telegram, store, parse_mode: str = PARSE_MODE):
        self.telegram = telegram
        self.store = store
        self.parse_mode = parse_mode
        self._records: Dict[str, TrackedMessage] = {}
        self._in_flight: Set[str] = set()

    def get(self, key: str) -> Optional[TrackedMessage]:
        record = self._records.get(key)
        if record is None:
            record = self.store.get_message(key)
            if record is not None:
                self._records[key] = record
        return record

    def adopt(self, record: TrackedMessage):
        self._records[record.id] = record

    def records(self, prefix: str) -> List[TrackedMessage]:
        found = self.store.find_messages(prefix)
        for record in found:
            self._records[record.id] = record
        return found

    def forget(self, key: str):
        """Drop the record without touching the chat message."""
        record = self._records.pop(key, None)
        if record is not None:
            self.telegram.forget_message(record.chat_id, record.message_id)
        self.store.delete_message(key)

    def is_busy(self, key: str) -> bool:
        return key in self._in_flight

    def _options(self, reply_to: Optional[int], options: Dict) -> Dict:
        opts = {'parse_mode': self.parse_mode, 'disable_web_page_preview': True}
        if reply_to is not None:
            opts['reply_to_message_id'] = reply_to
        opts.update(options)
        return opts

    async def reconcile(self, key: str, chat_id: int, content: Content, price_only: bool = False,
                        fresh: bool = False, reply_to: Optional[int] = None, **options) -> Outcome:
        """
        Bring the chat message for `key` in line with `content`.

        content may be an async callable; it is rendered inside the in-flight
        guard so concurrent events do not render twice. fresh=True always posts
        a new message and re-points the record at it.
        """
        if key in self._in_flight:
            logger.debug(f"Reconcile of {key} already in flight, dropping")
            return Outcome.BUSY
        self._in_flight.add(key)
        try:
            text = content if isinstance(content, str) else await content()
            digest = checksum(text)
            record = None if fresh else self.get(key)

            if record is not None and record.checksum == digest:
                return Outcome.UNCHANGED

            if record is None:
                message = await self.telegram.send_message(chat_id, text, **self._options(reply_to, options))
                previous = self._records.get(key)
                if previous is not None:
                    self.telegram.forget_message(previous.chat_id, previous.message_id)
                now = utcnow()
                self._save(TrackedMessage(key, chat_id, message.message_id, digest, _metadata(message), now, now))
                return Outcome.SENT

            result = await self.telegram.edit_message_text(
                text, record.chat_id, record.message_id, price_only=price_only,
                **self._options(None, options))
            if result is None:
                return Outcome.DROPPED
            metadata = _metadata(result) if result is not True else record.metadata
            self._save(replace(record, checksum=digest, metadata=metadata, updated_at=utcnow()))
            return Outcome.EDITED
        except MessageGone as e:
            logger.warning(f"Message for {key} is gone, pruning record: {e}")
            self.forget(key)
            return Outcome.GONE
        except TransportError as e:
            logger.error(f"Delivery for {key} failed: {e}")
            return Outcome.FAILED
        finally:
            self._in_flight.discard(key)

    async def delete(self, key: str, delete_chat_message: bool = True) -> Outcome:
        if key in self._in_flight:
            return Outcome.BUSY
        record = self.get(key)
        if record is None:
            return Outcome.MISSING

        self._in_flight.add(key)
        try:
            if delete_chat_message:
                await self.telegram.delete_message(record.chat_id, record.message_id)
        except MessageGone:
            logger.debug(f"Message for {key} already deleted")
        except TransportError as e:
            logger.error(f"Deleting message for {key} failed: {e}")
            return Outcome.FAILED
        finally:
            self._in_flight.discard(key)

        self.forget(key)
        return Outcome.DELETED

    def _save(self, record: TrackedMessage):
        self._records[record.id] = record
        self.store.save_message(record)
