"""
Cosmos DB remote store.

The remote store is the authoritative copy of every synced table. All
records live in one container partitioned by table name, so every
table-level operation stays inside a single partition.

Document shape::

    {
        "id": "{record key}",
        "table": "{table name}",
        "record": {...},
        "_ts": 1718000000          # Cosmos system timestamp (seconds)
    }

Creates are upserts keyed by record id, which makes replaying a queued
create idempotent. Deletes of missing records succeed silently.

Supports multiple authentication methods:
- Key-based authentication (if org policy allows)
- Azure AD via DefaultAzureCredential (recommended)
- Azure Managed Identity
- Service Principal
"""

from __future__ import annotations

import asyncio
import logging
from datetime import UTC, datetime
from typing import Any

import aiohttp
from azure.core.exceptions import (
    ClientAuthenticationError,
    ServiceRequestError,
    ServiceResponseError,
)
from azure.cosmos import PartitionKey
from azure.cosmos.aio import ContainerProxy, CosmosClient, DatabaseProxy
from azure.cosmos.exceptions import CosmosHttpResponseError, CosmosResourceNotFoundError

from ..config import CosmosAuthMethod, StorageConfig
from ..exceptions import (
    AuthenticationError,
    NetworkError,
    RecordNotFoundError,
    StorageError,
    ValidationError,
)
from ..providers.base import Record, RecordLookup, StorageProvider, iter_import_records
from ..tables import LAST_MODIFIED, SYNCED_TABLES, get_table

logger = logging.getLogger(__name__)

PROVIDER_NAME = "cosmos"

_AUTH_STATUS_CODES = {401, 403}
_TRANSIENT_STATUS_CODES = {408, 429, 449, 500, 502, 503, 504}
_TRANSPORT_ERRORS = (
    ServiceRequestError,
    ServiceResponseError,
    aiohttp.ClientError,
    OSError,
    asyncio.TimeoutError,
)


def _require_fields(config: StorageConfig, *names: str) -> None:
    missing = [name for name in names if not getattr(config, name)]
    if missing:
        raise AuthenticationError(
            PROVIDER_NAME,
            "connect",
            reason=(
                f"{', '.join(missing)} required for "
                f"{config.cosmos_auth_method.value} authentication"
            ),
        )


def build_credential(config: StorageConfig) -> Any:
    """Credential for ``CosmosClient`` matching ``config.cosmos_auth_method``.

    Key auth returns the key string; every other method returns an async
    azure-identity credential that the caller must close.

    Raises:
        AuthenticationError: If a field the method needs is not configured
    """
    method = config.cosmos_auth_method

    if method == CosmosAuthMethod.KEY:
        _require_fields(config, "cosmos_key")
        return config.cosmos_key

    from azure.identity.aio import (
        ClientSecretCredential,
        DefaultAzureCredential,
        ManagedIdentityCredential,
    )

    if method == CosmosAuthMethod.DEFAULT_CREDENTIAL:
        return DefaultAzureCredential()
    if method == CosmosAuthMethod.MANAGED_IDENTITY:
        # A client id selects a user-assigned identity
        if config.azure_client_id:
            return ManagedIdentityCredential(client_id=config.azure_client_id)
        return ManagedIdentityCredential()
    if method == CosmosAuthMethod.SERVICE_PRINCIPAL:
        _require_fields(config, "azure_tenant_id", "azure_client_id", "azure_client_secret")
        return ClientSecretCredential(
            config.azure_tenant_id, config.azure_client_id, config.azure_client_secret
        )

    raise AuthenticationError(PROVIDER_NAME, "connect", reason=f"Unsupported auth method: {method}")


def classify_error(error: Exception, operation: str) -> StorageError:
    """Translate a Cosmos / transport exception into the storage taxonomy."""
    if isinstance(error, StorageError):
        return error
    if isinstance(error, CosmosHttpResponseError):
        status = error.status_code or 0
        if status in _AUTH_STATUS_CODES:
            return AuthenticationError(PROVIDER_NAME, operation, error, reason=f"HTTP {status}")
        if status in _TRANSIENT_STATUS_CODES:
            return NetworkError(PROVIDER_NAME, operation, error)
        return StorageError(
            f"Cosmos DB request failed during {operation}: HTTP {status}",
            PROVIDER_NAME,
            operation,
            error,
        )
    if isinstance(error, ClientAuthenticationError):
        return AuthenticationError(PROVIDER_NAME, operation, error)
    if isinstance(error, _TRANSPORT_ERRORS):
        return NetworkError(PROVIDER_NAME, operation, error)
    return StorageError(
        f"Unexpected Cosmos DB error during {operation}: {error}", PROVIDER_NAME, operation, error
    )


class CosmosRemoteStore(StorageProvider, RecordLookup):
    """Remote store backed by a single Cosmos DB container."""

    def __init__(self, config: StorageConfig) -> None:
        if not config.cosmos_endpoint:
            raise StorageError("Cosmos endpoint is required", PROVIDER_NAME, "connect")

        self.config = config
        self._credential: Any = None
        self._client: CosmosClient | None = None
        self._database: DatabaseProxy | None = None
        self._container: ContainerProxy | None = None
        self._init_lock = asyncio.Lock()
        self._initialized = False

    @property
    def provider_name(self) -> str:
        return PROVIDER_NAME

    async def _ensure_initialized(self) -> ContainerProxy:
        """Connect and create the database/container on first use."""
        if self._initialized and self._container is not None:
            return self._container

        async with self._init_lock:
            if self._initialized and self._container is not None:
                return self._container

            self._credential = build_credential(self.config)
            try:
                client = CosmosClient(
                    self.config.cosmos_endpoint,  # type: ignore[arg-type]
                    credential=self._credential,
                )
                self._client = client
                self._database = await client.create_database_if_not_exists(
                    id=self.config.cosmos_database
                )
                self._container = await self._database.create_container_if_not_exists(
                    id=self.config.cosmos_container,
                    partition_key=PartitionKey(path="/table"),
                )
            except Exception as e:
                await self._close_client()
                raise classify_error(e, "connect") from e

            self._initialized = True
            logger.info(
                f"Connected to Cosmos DB: {self.config.cosmos_endpoint} "
                f"(database={self.config.cosmos_database}, "
                f"container={self.config.cosmos_container}, "
                f"auth={self.config.cosmos_auth_method.value})"
            )
            return self._container

    @staticmethod
    def _record_to_document(table: str, key: str, record: Record) -> dict[str, Any]:
        return {"id": key, "table": table, "record": record}

    @staticmethod
    def _document_to_record(doc: dict[str, Any]) -> Record:
        record = dict(doc.get("record") or {})
        # The server write time wins over any timestamp stored in the record
        if doc.get("_ts") is not None:
            record[LAST_MODIFIED] = int(doc["_ts"]) * 1000
        return record

    async def is_online(self) -> bool:
        try:
            await self._ensure_initialized()
            await self._database.read()  # type: ignore[union-attr]
            return True
        except Exception as e:
            logger.debug(f"Cosmos DB connectivity check failed: {e}")
            return False

    async def get_all(self, table: str) -> list[Record]:
        get_table(table)
        container = await self._ensure_initialized()
        try:
            records: list[Record] = []
            async for doc in container.query_items(
                query="SELECT * FROM c WHERE c.table = @table",
                parameters=[{"name": "@table", "value": table}],
                partition_key=table,
            ):
                records.append(self._document_to_record(doc))
            return records
        except Exception as e:
            raise classify_error(e, f"get_all:{table}") from e

    async def get(self, table: str, record_id: str) -> Record | None:
        spec = get_table(table)
        container = await self._ensure_initialized()
        try:
            doc = await container.read_item(
                item=spec.singleton_key or record_id, partition_key=table
            )
        except CosmosResourceNotFoundError:
            return None
        except Exception as e:
            raise classify_error(e, f"get:{table}") from e
        return self._document_to_record(doc)

    async def save(self, table: str, record: Record) -> Record:
        spec = get_table(table)
        key = spec.record_key(record)
        if key is None:
            raise ValidationError(
                f"Invalid {table} record: missing {spec.key_field}",
                field=spec.key_field,
                table=table,
            )
        if spec.singleton_key is not None:
            record = {**record, spec.key_field: key}

        container = await self._ensure_initialized()
        try:
            doc = await container.upsert_item(body=self._record_to_document(table, key, record))
        except Exception as e:
            raise classify_error(e, f"save:{table}") from e
        return self._document_to_record(doc)

    async def update(self, table: str, record_id: str, updates: Record) -> Record:
        spec = get_table(table)
        key = spec.singleton_key or record_id
        container = await self._ensure_initialized()
        try:
            existing = await container.read_item(item=key, partition_key=table)
        except CosmosResourceNotFoundError:
            if spec.singleton_key is None:
                raise RecordNotFoundError(table, key, PROVIDER_NAME) from None
            existing = self._record_to_document(table, key, {spec.key_field: key})
        except Exception as e:
            raise classify_error(e, f"update:{table}") from e

        merged = {**(existing.get("record") or {}), **updates, spec.key_field: key}
        try:
            doc = await container.upsert_item(body=self._record_to_document(table, key, merged))
        except Exception as e:
            raise classify_error(e, f"update:{table}") from e
        return self._document_to_record(doc)

    async def delete(self, table: str, record_id: str) -> None:
        spec = get_table(table)
        container = await self._ensure_initialized()
        try:
            await container.delete_item(item=spec.singleton_key or record_id, partition_key=table)
        except CosmosResourceNotFoundError:
            logger.debug(f"Delete of missing {table}/{record_id} ignored")
        except Exception as e:
            raise classify_error(e, f"delete:{table}") from e

    async def export_all_data(self) -> dict[str, Any]:
        exported: dict[str, Any] = {}
        for table in SYNCED_TABLES:
            records = await self.get_all(table)
            if get_table(table).singleton_key is not None:
                exported[table] = records[0] if records else None
            else:
                exported[table] = records
        exported["exported_at"] = datetime.now(UTC).isoformat()
        return exported

    async def import_all_data(self, data: dict[str, Any]) -> None:
        if not isinstance(data, dict):
            raise ValidationError("Invalid import data")
        for table, record in iter_import_records(data, SYNCED_TABLES):
            await self.save(table, record)

    async def _close_client(self) -> None:
        if self._client is not None:
            await self._client.close()
            self._client = None
        if self._credential is not None and hasattr(self._credential, "close"):
            await self._credential.close()
        self._credential = None
        self._database = None
        self._container = None
        self._initialized = False

    async def close(self) -> None:
        """Close the Cosmos DB connection."""
        await self._close_client()

    async def __aenter__(self) -> CosmosRemoteStore:
        await self._ensure_initialized()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()
