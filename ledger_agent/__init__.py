"""Stateful turn controller for the ledger assistant."""

__version__ = "0.1.0"
