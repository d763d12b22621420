"""Provider contract and capability interfaces."""

from .base import Record, RecordLookup, StorageProvider, TableHandle, TimerStateStore

__all__ = [
    "Record",
    "RecordLookup",
    "StorageProvider",
    "TableHandle",
    "TimerStateStore",
]
