"""Stale-tolerant cache for remote Wikibase entity data."""

__version__ = "1.0.0"
