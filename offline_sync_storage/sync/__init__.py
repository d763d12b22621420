"""
Queue draining and conflict resolution.

SyncManager replays queued mutations against the remote store;
ConflictResolver decides what happens when the remote copy of a record
changed after a queued local edit.
"""

from .conflict import (
    ConflictDecision,
    ConflictResolver,
    ConflictStrategy,
    Resolution,
    SyncConflict,
    merge_records,
)
from .manager import SyncConfig, SyncManager, SyncOptions, SyncResult, SyncStats

__all__ = [
    "SyncManager",
    "SyncOptions",
    "SyncConfig",
    "SyncResult",
    "SyncStats",
    "ConflictResolver",
    "ConflictStrategy",
    "ConflictDecision",
    "Resolution",
    "SyncConflict",
    "merge_records",
]
