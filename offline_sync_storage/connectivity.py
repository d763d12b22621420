"""
Connectivity observation.

The offline-first manager needs two things from the network layer: the
current state, and a notification when it changes. Observers expose
``is_online`` plus subscribe/unsubscribe for change listeners.

- ManualConnectivityObserver: state set by the host application (or tests)
- PollingConnectivityObserver: periodic HTTP probe with aiohttp
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable

import aiohttp

from .config import StorageConfig

logger = logging.getLogger(__name__)

ConnectivityListener = Callable[[bool], Awaitable[None] | None]


class ConnectivityObserver(ABC):
    """Abstract source of online/offline transitions."""

    def __init__(self) -> None:
        self._listeners: list[ConnectivityListener] = []

    @property
    @abstractmethod
    def is_online(self) -> bool:
        """Last known connectivity state."""
        ...

    def subscribe(self, listener: ConnectivityListener) -> Callable[[], None]:
        """Register ``listener(online)``; returns an unsubscribe function."""
        self._listeners.append(listener)
        return lambda: self.unsubscribe(listener)

    def unsubscribe(self, listener: ConnectivityListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    async def _notify(self, online: bool) -> None:
        """Call listeners in order. Listeners must return promptly and start
        long-running work (such as a queue drain) as a task of their own.
        """
        logger.info(f"Connectivity changed: {'online' if online else 'offline'}")
        for listener in list(self._listeners):
            try:
                outcome = listener(online)
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception as e:
                logger.error(f"Connectivity listener failed: {e}")

    async def start(self) -> None:
        """Begin observing. Default: nothing to start."""
        return None

    async def stop(self) -> None:
        """Stop observing and release resources."""
        return None


class ManualConnectivityObserver(ConnectivityObserver):
    """Connectivity state driven explicitly via ``set_online``."""

    def __init__(self, online: bool = True) -> None:
        super().__init__()
        self._online = online

    @property
    def is_online(self) -> bool:
        return self._online

    async def set_online(self, online: bool) -> None:
        """Update the state, notifying listeners only on a transition."""
        if online == self._online:
            return
        self._online = online
        await self._notify(online)


class PollingConnectivityObserver(ConnectivityObserver):
    """Probes a URL periodically and reports transitions.

    Any HTTP response counts as online; transport errors and timeouts
    count as offline.
    """

    def __init__(
        self,
        url: str,
        interval: float = 15.0,
        timeout: float = 5.0,
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        super().__init__()
        self.url = url
        self.interval = interval
        self.timeout = timeout
        self._session = session
        self._owns_session = session is None
        self._online = False
        self._task: asyncio.Task[None] | None = None

    @classmethod
    def from_config(cls, config: StorageConfig) -> PollingConnectivityObserver:
        return cls(config.connectivity_url, interval=config.connectivity_interval)

    @property
    def is_online(self) -> bool:
        return self._online

    async def check(self) -> bool:
        """Probe once and update the state."""
        if self._session is None:
            self._session = aiohttp.ClientSession()
            self._owns_session = True

        try:
            async with self._session.head(
                self.url,
                timeout=aiohttp.ClientTimeout(total=self.timeout),
                allow_redirects=False,
            ):
                online = True
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.debug(f"Connectivity probe to {self.url} failed: {e}")
            online = False

        if online != self._online:
            self._online = online
            await self._notify(online)
        return online

    async def start(self) -> None:
        if self._task is not None and not self._task.done():
            return
        await self.check()
        self._task = asyncio.create_task(self._poll_loop())

    async def _poll_loop(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            await self.check()

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None
