"""Bracket order monitoring and auto-cancellation on top of a brokerage API."""

__version__ = "0.1.0"
