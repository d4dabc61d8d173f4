"""Offline-first mail cache and synchronization core."""

__version__ = "0.1.0"
