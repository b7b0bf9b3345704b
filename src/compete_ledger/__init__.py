"""Compete Ledger - balances, stakes, boosts and rewards for trading competitions."""

__version__ = "0.1.0"
