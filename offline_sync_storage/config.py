"""
Storage configuration.

Build a ``StorageConfig`` directly, or read one with
``StorageConfig.from_environment()``, which understands:
    OFFLINE_SYNC_PROVIDER: Primary provider, "local" or "remote" (default: local)
    OFFLINE_SYNC_DISABLE_FALLBACK: "true" disables local fallback
    OFFLINE_SYNC_LOCAL_PATH: SQLite database path (default: offline_sync.db)
    OFFLINE_SYNC_COSMOS_ENDPOINT: Cosmos DB endpoint URL
    OFFLINE_SYNC_COSMOS_KEY: Cosmos DB key (if using key auth)
    OFFLINE_SYNC_COSMOS_DATABASE: Database name (default: offline-sync)
    OFFLINE_SYNC_COSMOS_CONTAINER: Container name (default: records)
    OFFLINE_SYNC_COSMOS_AUTH_METHOD: Auth method (default: default_credential)
    OFFLINE_SYNC_CONNECTIVITY_URL: URL probed to detect connectivity
    OFFLINE_SYNC_MAX_RETRIES: Retry ceiling for queued mutations (default: 3)
    OFFLINE_SYNC_BATCH_SIZE: Queue items per batch (default: 10)
    AZURE_TENANT_ID, AZURE_CLIENT_ID, AZURE_CLIENT_SECRET: standard azure-identity
        variables, read for service principal and user-assigned managed identity auth
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from enum import Enum

_AZURE_IDENTITY_VARS = ("AZURE_TENANT_ID", "AZURE_CLIENT_ID", "AZURE_CLIENT_SECRET")


class ProviderKind(str, Enum):
    """Which store the storage manager treats as primary."""

    LOCAL = "local"
    REMOTE = "remote"


class CosmosAuthMethod(str, Enum):
    """How the remote store authenticates against Cosmos DB.

    Everything except KEY goes through azure-identity; DEFAULT_CREDENTIAL
    suits both developer machines and hosted deployments.
    """

    KEY = "key"
    DEFAULT_CREDENTIAL = "default_credential"
    MANAGED_IDENTITY = "managed_identity"
    SERVICE_PRINCIPAL = "service_principal"


@dataclass
class ProviderConfig:
    """Primary provider selection for the storage manager."""

    provider: ProviderKind = ProviderKind.LOCAL
    fallback_enabled: bool = True


@dataclass
class StorageConfig:
    """Configuration for the whole data layer.

    Attributes:
        provider: Primary provider for the storage manager
        fallback_enabled: Retry failed remote operations locally

        local_path: SQLite database file, or ":memory:"

        cosmos_endpoint: Account URL; required when a remote store is built
        cosmos_auth_method: See ``CosmosAuthMethod``
        cosmos_key: Account key, read only with ``CosmosAuthMethod.KEY``
        cosmos_database, cosmos_container: Where synced records live

        azure_tenant_id, azure_client_id, azure_client_secret: Service principal
            credentials; ``azure_client_id`` alone selects a user-assigned
            managed identity

        connectivity_url: URL probed by the polling connectivity observer
        connectivity_interval: Seconds between connectivity probes

        enable_offline_mode: Allow remote writes from the offline-first manager
        sync_on_reconnect: Drain the queue when connectivity returns
        import_sync_delay: Seconds to wait after a bulk import before draining
        max_retries: Retry ceiling for queued mutations
        batch_size: Queue items per batch
    """

    provider: ProviderKind = ProviderKind.LOCAL
    fallback_enabled: bool = True

    local_path: str = "offline_sync.db"

    cosmos_endpoint: str | None = None
    cosmos_auth_method: CosmosAuthMethod = CosmosAuthMethod.DEFAULT_CREDENTIAL
    cosmos_key: str | None = None
    cosmos_database: str = "offline-sync"
    cosmos_container: str = "records"

    azure_tenant_id: str | None = None
    azure_client_id: str | None = None
    azure_client_secret: str | None = None

    connectivity_url: str = "https://login.microsoftonline.com"
    connectivity_interval: float = 15.0

    enable_offline_mode: bool = True
    sync_on_reconnect: bool = True
    import_sync_delay: float = 1.0
    max_retries: int = 3
    batch_size: int = 10

    @property
    def provider_config(self) -> ProviderConfig:
        return ProviderConfig(provider=self.provider, fallback_enabled=self.fallback_enabled)

    @classmethod
    def from_environment(cls) -> StorageConfig:
        """Create configuration from environment variables."""
        try:
            provider = ProviderKind(os.environ.get("OFFLINE_SYNC_PROVIDER", "local").lower())
        except ValueError:
            provider = ProviderKind.LOCAL

        auth = os.environ.get("OFFLINE_SYNC_COSMOS_AUTH_METHOD", "default_credential").lower()
        try:
            cosmos_auth_method = CosmosAuthMethod(auth)
        except ValueError:
            cosmos_auth_method = CosmosAuthMethod.DEFAULT_CREDENTIAL

        return cls(
            provider=provider,
            fallback_enabled=os.environ.get("OFFLINE_SYNC_DISABLE_FALLBACK", "").lower() != "true",
            local_path=os.environ.get("OFFLINE_SYNC_LOCAL_PATH", "offline_sync.db"),
            cosmos_endpoint=os.environ.get("OFFLINE_SYNC_COSMOS_ENDPOINT"),
            cosmos_auth_method=cosmos_auth_method,
            cosmos_key=os.environ.get("OFFLINE_SYNC_COSMOS_KEY"),
            cosmos_database=os.environ.get("OFFLINE_SYNC_COSMOS_DATABASE", "offline-sync"),
            cosmos_container=os.environ.get("OFFLINE_SYNC_COSMOS_CONTAINER", "records"),
            **{name.lower(): os.environ.get(name) for name in _AZURE_IDENTITY_VARS},
            connectivity_url=os.environ.get(
                "OFFLINE_SYNC_CONNECTIVITY_URL", "https://login.microsoftonline.com"
            ),
            max_retries=int(os.environ.get("OFFLINE_SYNC_MAX_RETRIES", "3")),
            batch_size=int(os.environ.get("OFFLINE_SYNC_BATCH_SIZE", "10")),
        )
