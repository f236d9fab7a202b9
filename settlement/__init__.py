"""Marketplace settlement engine: split payments, held funds and seller payouts."""

__version__ = "0.1.0"
