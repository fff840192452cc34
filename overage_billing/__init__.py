"""Metered overage billing reconciliation."""

__version__ = "1.0.0"
