"""Concurrent L1/L2 transaction stress engine for a rollup test network."""

__version__ = "0.1.0"
