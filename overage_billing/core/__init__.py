"""Core infrastructure: database, logging, async helpers, errors."""
