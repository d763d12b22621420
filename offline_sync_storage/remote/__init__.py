"""
Remote store adapters.

The remote store is treated as an opaque CRUD provider over the
network. Failures are classified into NetworkError (transient),
AuthenticationError (session invalid) and StorageError (anything else).
"""

from .cosmos import CosmosRemoteStore, classify_error

__all__ = ["CosmosRemoteStore", "classify_error"]
