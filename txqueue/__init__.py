"""Durable transaction lifecycle queue with chain reconciliation."""

__version__ = "0.1.0"
