"""Tally election core: voter credentials, notifications and background jobs."""

__version__ = "0.1.0"
