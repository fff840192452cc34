"""Overage billing services."""
