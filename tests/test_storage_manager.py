"""Tests for the storage manager facade and its local fallback."""

import asyncio

import pytest

from offline_sync_storage.config import ProviderConfig, ProviderKind
from offline_sync_storage.exceptions import (
    AuthenticationError,
    FallbackError,
    NetworkError,
    StorageError,
    ValidationError,
)
from offline_sync_storage.manager import StorageManager


@pytest.fixture
def manager(local_provider, remote):
    return StorageManager(local_provider, remote, ProviderConfig(ProviderKind.REMOTE))


class TestProviderSelection:
    def test_defaults_to_local(self, local_provider):
        manager = StorageManager(local_provider)
        assert manager.get_current_provider_name() == "local"

    def test_remote_requires_provider(self, local_provider):
        with pytest.raises(StorageError, match="not configured"):
            StorageManager(local_provider, config=ProviderConfig(ProviderKind.REMOTE))

    async def test_switch_provider(self, manager):
        await manager.switch_provider("local")
        assert manager.get_current_provider_name() == "local"
        await manager.switch_provider(ProviderKind.REMOTE)
        assert manager.get_current_provider_name() == "fake_remote"

    def test_bad_config_is_reverted(self, local_provider):
        manager = StorageManager(local_provider)
        with pytest.raises(StorageError):
            manager.set_config(ProviderConfig(ProviderKind.REMOTE))
        assert manager.get_config().provider == ProviderKind.LOCAL
        assert manager.get_current_provider_name() == "local"

    def test_get_config_returns_copy(self, manager):
        config = manager.get_config()
        config.fallback_enabled = False
        assert manager.get_config().fallback_enabled is True

    async def test_connection_status(self, manager, remote):
        status = await manager.test_connection()
        assert status.provider == "fake_remote"
        assert status.online is True

        remote.online = False
        assert (await manager.test_connection()).online is False


class TestFallback:
    async def test_network_error_falls_back_to_local(self, manager, remote, local_provider):
        remote.fail(NetworkError("fake_remote", "save"))

        saved = await manager.save("players", {"id": "p1", "name": "Ada"})

        assert saved["name"] == "Ada"
        assert await local_provider.get("players", "p1") == {"id": "p1", "name": "Ada"}
        assert manager.get_current_provider_name() == "fake_remote"

    async def test_auth_error_falls_back(self, manager, remote, local_provider):
        await local_provider.save("players", {"id": "p1"})
        remote.fail(AuthenticationError("fake_remote", "get_all"))

        assert await manager.get_all("players") == [{"id": "p1"}]

    async def test_fallback_is_one_shot(self, manager, remote):
        remote.fail(NetworkError("fake_remote", "save"), times=1)

        await manager.save("players", {"id": "p1"})
        await manager.save("players", {"id": "p2"})

        assert "p2" in remote.tables["players"]
        assert "p1" not in remote.tables["players"]

    async def test_fallback_does_not_reroute_concurrent_calls(
        self, manager, remote, local_provider, monkeypatch
    ):
        remote.fail(NetworkError("fake_remote", "save"), times=1)
        fallback_started = asyncio.Event()
        release = asyncio.Event()
        local_save = local_provider.save

        async def slow_local_save(table, record):
            fallback_started.set()
            await release.wait()
            return await local_save(table, record)

        monkeypatch.setattr(local_provider, "save", slow_local_save)

        first = asyncio.create_task(manager.save("players", {"id": "p1"}))
        await fallback_started.wait()
        assert manager.get_current_provider_name() == "fake_remote"

        await manager.save("players", {"id": "p2"})
        release.set()
        await first

        assert "p2" in remote.tables["players"]
        assert remote.count("save") == 2

    async def test_both_failing_raises_fallback_error(self, manager, remote):
        primary = NetworkError("fake_remote", "save")
        remote.fail(primary)

        with pytest.raises(FallbackError) as exc_info:
            await manager.save("players", {"name": "no id"})

        assert exc_info.value.primary_error is primary
        assert isinstance(exc_info.value.fallback_error, ValidationError)
        assert manager.get_current_provider_name() == "fake_remote"

    async def test_validation_error_does_not_fall_back(self, manager, remote, local_provider):
        remote.fail(ValidationError("bad record"))

        with pytest.raises(ValidationError):
            await manager.save("players", {"id": "p1"})
        assert await local_provider.get_all("players") == []

    async def test_generic_error_does_not_fall_back(self, manager, remote):
        remote.fail(StorageError("quota exceeded", "fake_remote", "save"))

        with pytest.raises(StorageError, match="quota exceeded"):
            await manager.save("players", {"id": "p1"})

    async def test_fallback_disabled(self, local_provider, remote):
        manager = StorageManager(
            local_provider, remote, ProviderConfig(ProviderKind.REMOTE, fallback_enabled=False)
        )
        remote.fail(NetworkError("fake_remote", "delete"))

        with pytest.raises(NetworkError):
            await manager.delete("players", "p1")

    async def test_local_primary_never_falls_back(self, local_provider, remote):
        manager = StorageManager(local_provider, remote)

        with pytest.raises(ValidationError):
            await manager.save("players", {"name": "no id"})
        assert remote.calls == []


class TestDegradedReads:
    async def test_auth_failure_without_fallback_returns_empty(self, local_provider, remote):
        manager = StorageManager(
            local_provider, remote, ProviderConfig(ProviderKind.REMOTE, fallback_enabled=False)
        )
        remote.fail(AuthenticationError("fake_remote", "get_all", reason="token expired"))

        assert await manager.get_all("players") == []

    async def test_auth_failure_with_failing_fallback_returns_empty(self, manager, remote):
        remote.fail(AuthenticationError("fake_remote", "get_all"))

        # Unknown table makes the local read fail too
        assert await manager.get_all("teams") == []

    async def test_network_failure_with_failing_fallback_raises(self, manager, remote):
        remote.fail(NetworkError("fake_remote", "get_all"))

        with pytest.raises(FallbackError):
            await manager.get_all("teams")


class TestDataTransfer:
    async def test_update_through_manager(self, manager, remote):
        await manager.save("players", {"id": "p1", "name": "Ada"})
        updated = await manager.update("players", "p1", {"name": "Grace"})
        assert updated == {"id": "p1", "name": "Grace"}

    async def test_import_and_export_through_local(self, local_provider):
        manager = StorageManager(local_provider)
        await manager.import_all_data({"players": [{"id": "p1"}]})
        exported = await manager.export_all_data()
        assert exported["players"] == [{"id": "p1"}]
