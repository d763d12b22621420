"""
Tests for the Cosmos DB remote store.

The container proxy is mocked; no Cosmos DB account is needed.
"""

from unittest.mock import AsyncMock, MagicMock

import aiohttp
import pytest
from azure.core.exceptions import ClientAuthenticationError, ServiceRequestError
from azure.cosmos.exceptions import CosmosHttpResponseError, CosmosResourceNotFoundError

from offline_sync_storage.config import CosmosAuthMethod, StorageConfig
from offline_sync_storage.exceptions import (
    AuthenticationError,
    NetworkError,
    RecordNotFoundError,
    StorageError,
    ValidationError,
)
from offline_sync_storage.remote import CosmosRemoteStore
from offline_sync_storage.remote.cosmos import build_credential, classify_error


class TestClassifyError:
    @pytest.mark.parametrize("status", [401, 403])
    def test_auth_status_codes(self, status):
        error = classify_error(CosmosHttpResponseError(status_code=status, message="no"), "save")
        assert isinstance(error, AuthenticationError)
        assert error.reason == f"HTTP {status}"

    @pytest.mark.parametrize("status", [408, 429, 503])
    def test_transient_status_codes(self, status):
        error = classify_error(CosmosHttpResponseError(status_code=status, message="busy"), "save")
        assert isinstance(error, NetworkError)

    def test_other_status_is_generic(self):
        error = classify_error(CosmosHttpResponseError(status_code=400, message="bad"), "save")
        assert type(error) is StorageError
        assert "HTTP 400" in str(error)

    def test_credential_failure(self):
        error = classify_error(ClientAuthenticationError("expired"), "get_all")
        assert isinstance(error, AuthenticationError)

    @pytest.mark.parametrize(
        "cause",
        [aiohttp.ClientConnectionError("reset"), ServiceRequestError("dns"), TimeoutError()],
    )
    def test_transport_errors(self, cause):
        assert isinstance(classify_error(cause, "save"), NetworkError)

    def test_storage_errors_pass_through(self):
        original = ValidationError("bad")
        assert classify_error(original, "save") is original

    def test_unexpected_error(self):
        error = classify_error(KeyError("x"), "delete")
        assert type(error) is StorageError
        assert error.cause is not None


class AsyncIterator:
    def __init__(self, items):
        self._items = list(items)

    def __aiter__(self):
        return self

    async def __anext__(self):
        if not self._items:
            raise StopAsyncIteration
        return self._items.pop(0)


@pytest.fixture
def container():
    container = MagicMock()
    container.upsert_item = AsyncMock(side_effect=lambda body: {**body, "_ts": 1_700_000_000})
    container.read_item = AsyncMock()
    container.delete_item = AsyncMock()
    return container


@pytest.fixture
def store(container):
    store = CosmosRemoteStore(
        StorageConfig(
            cosmos_endpoint="https://test.documents.azure.com:443/",
            cosmos_auth_method=CosmosAuthMethod.KEY,
            cosmos_key="test-key",
        )
    )
    store._ensure_initialized = AsyncMock(return_value=container)
    return store


class TestCosmosRemoteStore:
    def test_requires_endpoint(self):
        with pytest.raises(StorageError, match="endpoint is required"):
            CosmosRemoteStore(StorageConfig())

    async def test_save_upserts_document(self, store, container):
        saved = await store.save("players", {"id": "p1", "name": "Ada"})

        container.upsert_item.assert_awaited_once_with(
            body={"id": "p1", "table": "players", "record": {"id": "p1", "name": "Ada"}}
        )
        assert saved == {"id": "p1", "name": "Ada", "lastModified": 1_700_000_000_000}

    async def test_save_without_key(self, store, container):
        with pytest.raises(ValidationError):
            await store.save("players", {"name": "Ada"})
        container.upsert_item.assert_not_awaited()

    async def test_singleton_save(self, store, container):
        await store.save("app_settings", {"language": "fi"})
        body = container.upsert_item.await_args.kwargs["body"]
        assert body["id"] == "default"
        assert body["record"] == {"language": "fi", "id": "default"}

    async def test_get_missing(self, store, container):
        container.read_item.side_effect = CosmosResourceNotFoundError(
            status_code=404, message="missing"
        )
        assert await store.get("players", "p1") is None

    async def test_get_reports_server_write_time(self, store, container):
        container.read_item.return_value = {
            "id": "p1",
            "table": "players",
            "record": {"id": "p1", "lastModified": 5},
            "_ts": 1_700_000_000,
        }
        assert (await store.get("players", "p1"))["lastModified"] == 1_700_000_000_000

    async def test_get_all_queries_partition(self, store, container):
        container.query_items = MagicMock(
            return_value=AsyncIterator([{"id": "p1", "table": "players", "record": {"id": "p1"}}])
        )

        assert await store.get_all("players") == [{"id": "p1"}]
        assert container.query_items.call_args.kwargs["partition_key"] == "players"

    async def test_update_merges(self, store, container):
        container.read_item.return_value = {
            "id": "p1",
            "table": "players",
            "record": {"id": "p1", "name": "Ada", "number": 7},
        }

        updated = await store.update("players", "p1", {"number": 9})

        assert updated["name"] == "Ada"
        assert updated["number"] == 9

    async def test_update_missing_record(self, store, container):
        container.read_item.side_effect = CosmosResourceNotFoundError(
            status_code=404, message="missing"
        )
        with pytest.raises(RecordNotFoundError):
            await store.update("players", "p1", {"number": 9})

    async def test_update_missing_singleton_creates(self, store, container):
        container.read_item.side_effect = CosmosResourceNotFoundError(
            status_code=404, message="missing"
        )
        updated = await store.update("app_settings", "x", {"theme": "dark"})
        assert updated["id"] == "default"
        assert updated["theme"] == "dark"

    async def test_delete_missing_is_ignored(self, store, container):
        container.delete_item.side_effect = CosmosResourceNotFoundError(
            status_code=404, message="missing"
        )
        await store.delete("players", "p1")

    async def test_errors_are_classified(self, store, container):
        container.upsert_item.side_effect = CosmosHttpResponseError(
            status_code=503, message="unavailable"
        )
        with pytest.raises(NetworkError):
            await store.save("players", {"id": "p1"})

    async def test_import_upserts_every_record(self, store, container):
        await store.import_all_data(
            {"players": [{"id": "p1"}, {"id": "p2"}], "app_settings": {"language": "en"}}
        )
        assert container.upsert_item.await_count == 3

    async def test_key_auth_without_key(self):
        store = CosmosRemoteStore(
            StorageConfig(
                cosmos_endpoint="https://test.documents.azure.com:443/",
                cosmos_auth_method=CosmosAuthMethod.KEY,
            )
        )
        with pytest.raises(AuthenticationError, match="cosmos_key required"):
            await store._ensure_initialized()


class TestBuildCredential:
    def test_key_auth_returns_key(self):
        config = StorageConfig(cosmos_auth_method=CosmosAuthMethod.KEY, cosmos_key="k")
        assert build_credential(config) == "k"

    def test_service_principal_names_missing_fields(self):
        config = StorageConfig(
            cosmos_auth_method=CosmosAuthMethod.SERVICE_PRINCIPAL, azure_tenant_id="t"
        )
        with pytest.raises(AuthenticationError) as exc_info:
            build_credential(config)
        assert exc_info.value.reason == (
            "azure_client_id, azure_client_secret required for service_principal authentication"
        )

    async def test_default_credential(self):
        from azure.identity.aio import DefaultAzureCredential

        credential = build_credential(StorageConfig())
        assert isinstance(credential, DefaultAzureCredential)
        await credential.close()
