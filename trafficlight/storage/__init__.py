"""Persistent state storage."""

from trafficlight.storage.db import StateStore, StorageError

__all__ = ["StateStore", "StorageError"]
