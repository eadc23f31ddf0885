"""Automated range rebalancer for a single concentrated-liquidity pool."""

__version__ = "0.1.0"
