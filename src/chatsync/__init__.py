"""Realtime conversation sync engine for a direct-messaging client."""

__all__ = ["__version__"]

__version__ = "0.1.0"
