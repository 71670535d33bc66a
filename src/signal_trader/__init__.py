"""Signal Trader - live indicator signals with risk-bounded execution."""

__version__ = "0.1.0"
