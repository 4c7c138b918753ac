"""Persistent task store backed by SQLModel + SQLite."""

from batch_queue.store.repository import TaskStore

__all__ = ["TaskStore"]
