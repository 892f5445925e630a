"""Push-style message queue consumer core: allocation strategies, statistics, options and callback dispatch."""

__version__ = "0.1.0"