"""Subscription lifecycle and billing rules engine."""

__version__ = "0.1.0"
