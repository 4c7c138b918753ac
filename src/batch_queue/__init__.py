"""Lease-based batch processing over a shared SQLite task store."""

__version__ = "0.1.0"
