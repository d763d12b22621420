"""
Conflict resolution for queued updates.

A queued update conflicts with the remote copy when the remote record
was modified after the local edit was made. Timestamps are compared on
a single numeric field (``lastModified``, epoch milliseconds); the local
side falls back to the queue item's enqueue time when the payload does
not carry one. There is no field-level diffing: two edits to different
fields of the same record still count as one conflict.

Strategies:
- last-write-wins: the newer timestamp applies (default)
- local-wins: the queued payload is pushed regardless
- remote-wins: the remote copy is kept and mirrored locally
- merge: shallow field-level merge, local fields win
- user-choice: the conflict is reported and left for manual resolution
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from ..local.queue import SyncQueueItem
from ..providers.base import Record
from ..tables import LAST_MODIFIED

logger = logging.getLogger(__name__)


class ConflictStrategy(str, Enum):
    """Configured policy for diverged records."""

    LAST_WRITE_WINS = "last-write-wins"
    LOCAL_WINS = "local-wins"
    REMOTE_WINS = "remote-wins"
    MERGE = "merge"
    USER_CHOICE = "user-choice"


class Resolution(str, Enum):
    """Outcome applied to one conflict."""

    LOCAL = "local"
    REMOTE = "remote"
    MERGED = "merged"


@dataclass
class SyncConflict:
    """A queued mutation whose remote record diverged."""

    item: SyncQueueItem
    local_data: Record
    remote_data: Record
    resolution: Resolution | None = None
    detected_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def resolved(self) -> bool:
        return self.resolution is not None

    def to_dict(self) -> dict[str, Any]:
        return {
            "item": self.item.to_dict(),
            "local_data": self.local_data,
            "remote_data": self.remote_data,
            "resolution": self.resolution.value if self.resolution else None,
            "detected_at": self.detected_at.isoformat(),
        }


@dataclass
class ConflictDecision:
    """What to do with a queued update.

    ``data`` is the payload to push remotely; it is None when the remote
    copy is kept.
    """

    resolution: Resolution
    data: Record | None
    conflict: SyncConflict | None = None


class ConflictResolver:
    """Resolves queued updates against the current remote record."""

    def __init__(
        self,
        strategy: ConflictStrategy | str = ConflictStrategy.LAST_WRITE_WINS,
        timestamp_field: str = LAST_MODIFIED,
    ) -> None:
        self.strategy = ConflictStrategy(strategy)
        self.timestamp_field = timestamp_field

    def local_timestamp(self, item: SyncQueueItem) -> int:
        value = item.data.get(self.timestamp_field) if isinstance(item.data, dict) else None
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return int(value)
        return item.timestamp

    def remote_timestamp(self, remote: Record) -> int | None:
        value = remote.get(self.timestamp_field)
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return int(value)
        return None

    def has_conflict(self, item: SyncQueueItem, remote: Record | None) -> bool:
        """True when the remote record changed after the local edit."""
        if remote is None:
            return False
        remote_ts = self.remote_timestamp(remote)
        if remote_ts is None:
            return False
        return remote_ts > self.local_timestamp(item)

    def decide(
        self,
        item: SyncQueueItem,
        remote: Record | None,
        strategy: ConflictStrategy | str | None = None,
    ) -> ConflictDecision:
        """Pick what to push for ``item`` given the remote record.

        Under ``user-choice`` a conflicting item gets a decision with an
        unresolved ``conflict`` and no data; the caller must leave the
        item queued and surface the conflict.
        """
        local_data: Record = item.data
        if not self.has_conflict(item, remote):
            return ConflictDecision(Resolution.LOCAL, local_data)

        assert remote is not None
        active = ConflictStrategy(strategy) if strategy is not None else self.strategy
        conflict = SyncConflict(item=item, local_data=local_data, remote_data=remote)
        logger.info(
            f"Conflict on {item.table}/{local_data.get('id')}: "
            f"remote={self.remote_timestamp(remote)} local={self.local_timestamp(item)}, "
            f"strategy={active.value}"
        )

        if active == ConflictStrategy.USER_CHOICE:
            return ConflictDecision(Resolution.REMOTE, None, conflict)

        if active == ConflictStrategy.LOCAL_WINS:
            resolution = Resolution.LOCAL
        elif active == ConflictStrategy.MERGE:
            resolution = Resolution.MERGED
        else:
            # last-write-wins: a conflict means the remote copy is newer
            resolution = Resolution.REMOTE

        return self.apply(conflict, resolution)

    def apply(self, conflict: SyncConflict, resolution: Resolution | str) -> ConflictDecision:
        """Apply an explicit resolution, automatic or manual."""
        resolution = Resolution(resolution)
        conflict.resolution = resolution
        if resolution == Resolution.LOCAL:
            data: Record | None = conflict.local_data
        elif resolution == Resolution.MERGED:
            data = merge_records(conflict.local_data, conflict.remote_data)
        else:
            data = None
        return ConflictDecision(resolution, data, conflict)


def merge_records(local: Record, remote: Record) -> Record:
    """Shallow field-level merge favouring local values."""
    return {**remote, **local}
