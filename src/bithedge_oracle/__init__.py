"""bithedge-oracle: BTC price oracle and options-premium engine."""

__version__ = "0.1.0"
