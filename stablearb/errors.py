# stablearb/errors.py


class ArbitrageError(Exception):
    """Base class for every failure raised by the arbitrage engine."""


class ExchangeError(ArbitrageError):
    """An ExchangeClient operation failed."""


class TransportError(ExchangeError):
    """Venue unreachable, timed out or answered with a non-success status."""


class ProtocolError(ExchangeError):
    """Venue answered with something we could not parse."""


class InsufficientBalanceError(ExchangeError):
    """Order rejected because the account cannot fund it."""


class OrderTimeoutError(ArbitrageError):
    """An order leg did not reach Filled within the polling budget."""


class StrategyError(ArbitrageError):
    """A strategy could not evaluate the current market."""


class InvalidConfigError(ArbitrageError):
    """Startup configuration is invalid. Always fatal."""


class PrecisionError(ArbitrageError, ValueError):
    """A value could not be converted to a finite Decimal."""


class SinkError(ArbitrageError):
    """The result sink is unavailable or a write failed."""
