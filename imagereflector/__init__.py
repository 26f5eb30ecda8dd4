"""Decide when container image repositories need scanning, and store and filter their tags."""

__version__ = "0.1.0"
__all__ = ["database", "features", "gc", "repository"]