"""
Storage manager facade.

Selects the primary provider from a ProviderConfig and runs every record
operation against it. When the remote primary fails with a connectivity
or authentication error and fallback is enabled, the identical operation
is retried once against the local provider. The detour applies to that
single call only; the configured provider stays current throughout, so
concurrent calls keep going to the primary.
"""

from __future__ import annotations

import dataclasses
import logging
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

from .config import ProviderConfig, ProviderKind
from .exceptions import AuthenticationError, FallbackError, NetworkError, StorageError
from .logging_utils import error_fields
from .providers.base import Record, StorageProvider

logger = logging.getLogger(__name__)

T = TypeVar("T")

_FALLBACK_ERRORS = (NetworkError, AuthenticationError)


@dataclasses.dataclass
class ConnectionStatus:
    provider: str
    online: bool
    error: str | None = None


class StorageManager(StorageProvider):
    """Provider selection with transparent local fallback.

    Args:
        local: Local provider, also the fallback target
        remote: Remote provider, required when the config selects it
        config: Primary selection and fallback switch
    """

    def __init__(
        self,
        local: StorageProvider,
        remote: StorageProvider | None = None,
        config: ProviderConfig | None = None,
    ) -> None:
        self.local = local
        self.remote = remote
        self._config = config or ProviderConfig()
        self._current = self._select_provider()

    def _select_provider(self) -> StorageProvider:
        if self._config.provider == ProviderKind.REMOTE:
            if self.remote is None:
                raise StorageError(
                    "Remote provider selected but not configured", "storage_manager", "configure"
                )
            return self.remote
        return self.local

    @property
    def provider_name(self) -> str:
        return f"storage_manager({self._current.provider_name})"

    @property
    def current_provider(self) -> StorageProvider:
        return self._current

    # Configuration

    def set_config(self, config: ProviderConfig) -> None:
        previous = self._config
        self._config = config
        try:
            self._current = self._select_provider()
        except StorageError:
            self._config = previous
            raise

    def get_config(self) -> ProviderConfig:
        return dataclasses.replace(self._config)

    def get_current_provider_name(self) -> str:
        return self._current.provider_name

    async def switch_provider(self, provider: ProviderKind | str) -> None:
        self.set_config(dataclasses.replace(self._config, provider=ProviderKind(provider)))
        logger.info(f"Switched storage provider to {self._current.provider_name}")

    async def test_connection(self) -> ConnectionStatus:
        try:
            online = await self._current.is_online()
            return ConnectionStatus(provider=self._current.provider_name, online=online)
        except Exception as e:
            return ConnectionStatus(
                provider=self._current.provider_name, online=False, error=str(e)
            )

    # Fallback

    def _can_fall_back(self, provider: StorageProvider, error: Exception) -> bool:
        return (
            isinstance(error, _FALLBACK_ERRORS)
            and self._config.fallback_enabled
            and self._config.provider == ProviderKind.REMOTE
            and provider is not self.local
        )

    async def _execute_with_fallback(
        self,
        operation: Callable[[StorageProvider], Awaitable[T]],
        operation_name: str,
    ) -> T:
        """Run ``operation`` on the current provider, detouring locally on failure.

        Raises:
            FallbackError: If both the primary and the local provider failed
            StorageError: Any non-fallback error from the primary, unchanged
        """
        primary = self._current
        try:
            return await operation(primary)
        except Exception as e:
            if not self._can_fall_back(primary, e):
                raise
            primary_error = e

        logger.warning(
            f"{operation_name} failed on {primary.provider_name}, "
            f"falling back to {self.local.provider_name}: {primary_error}",
            extra=error_fields(primary_error),
        )
        try:
            return await operation(self.local)
        except Exception as fallback_error:
            raise FallbackError(operation_name, primary_error, fallback_error) from fallback_error

    # Record operations

    async def is_online(self) -> bool:
        return await self._current.is_online()

    async def get_all(self, table: str) -> list[Record]:
        try:
            return await self._execute_with_fallback(
                lambda provider: provider.get_all(table), f"get_all:{table}"
            )
        except AuthenticationError as e:
            logger.warning(f"Not authenticated, returning no {table}: {e}")
            return []
        except FallbackError as e:
            if isinstance(e.primary_error, AuthenticationError):
                logger.warning(f"Not authenticated and local read failed, returning no {table}")
                return []
            raise

    async def save(self, table: str, record: Record) -> Record:
        return await self._execute_with_fallback(
            lambda provider: provider.save(table, record), f"save:{table}"
        )

    async def update(self, table: str, record_id: str, updates: Record) -> Record:
        return await self._execute_with_fallback(
            lambda provider: provider.update(table, record_id, updates), f"update:{table}"
        )

    async def delete(self, table: str, record_id: str) -> None:
        await self._execute_with_fallback(
            lambda provider: provider.delete(table, record_id), f"delete:{table}"
        )

    async def export_all_data(self) -> dict[str, Any]:
        return await self._execute_with_fallback(
            lambda provider: provider.export_all_data(), "export_all_data"
        )

    async def import_all_data(self, data: dict[str, Any]) -> None:
        await self._execute_with_fallback(
            lambda provider: provider.import_all_data(data), "import_all_data"
        )
