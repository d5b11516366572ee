"""Synchronization backend for offline-first client applications."""

__version__ = "0.1.0"
