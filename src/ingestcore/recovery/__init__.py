"""Retry queue for items that failed on a storage fault."""

from __future__ import annotations

from .dead_letter import FailedItem, FailedItemQueue

__all__ = ["FailedItem", "FailedItemQueue"]
