"""Shared utility functions for offline sync storage."""

from __future__ import annotations

import copy
import time
import uuid
from typing import Any


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


def generate_queue_id() -> str:
    """Generate a sync queue row id, sortable by creation time."""
    return f"{now_ms()}-{uuid.uuid4().hex[:9]}"


def deep_merge(base: dict[str, Any], updates: dict[str, Any]) -> dict[str, Any]:
    """Merge ``updates`` over ``base`` recursively, without mutating either.

    Nested dicts are merged key by key; any other value in ``updates``
    replaces the value in ``base``.
    """
    merged = copy.deepcopy(base)
    for key, value in updates.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged
