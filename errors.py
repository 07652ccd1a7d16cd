class MonitorError(Exception):
    """Base class for failures raised by the monitoring core."""


class InvalidPriceInput(ValueError):
    """Malformed numeric input handed to the price math."""


class ChainReadError(MonitorError):
    """An RPC read against the chain failed."""


class TransportError(MonitorError):
    """The Telegram API refused or failed a call."""


class MessageGone(TransportError):
    """The message or chat a tracked record points to no longer exists."""


class StoreError(MonitorError):
    """The persistent store failed to read or write."""


class MalformedEvent(MonitorError):
    """A swap log arrived without its decoded arguments."""


class ConfigError(MonitorError):
    pass
