"""HTTP front end for the sync engine."""

from .app import create_app

__all__ = ["create_app"]
