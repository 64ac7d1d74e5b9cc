"""Shared crash-game round engine with a two-currency balance ledger."""

__version__ = "1.0.0"
