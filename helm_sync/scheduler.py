"""Scheduling of HelmRelease reconciliation.

Releases are reconciled on three triggers:
  - A HelmRelease is added to or updated in the store
  - The periodic sweep over every HelmRelease, which reverts drift of the
    deployed releases
  - The git sync loop, which refreshes the mirrors and reconciles the
    HelmReleases whose chart source moved to a new commit

Passes for different HelmReleases run concurrently, passes for the same
HelmRelease run one at a time.
"""

import asyncio
from collections import defaultdict
from collections.abc import AsyncGenerator, Awaitable, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass
import logging

from helm_sync.helm_controller import HelmReleaseController
from helm_sync.manifest import BaseManifest, HelmRelease, NamedResource
from helm_sync.store import Store, StoreEvent
from helm_sync.task import get_task_service

_LOGGER = logging.getLogger(__name__)

__all__ = ["ReleaseScheduler", "SchedulerConfig"]


@dataclass
class SchedulerConfig:
    """Configuration for the ReleaseScheduler."""

    reconcile_interval: float = 180.0
    """Seconds between sweeps over every HelmRelease."""

    git_poll_interval: float = 300.0
    """Seconds between refreshes of the git mirrors."""


class ReleaseScheduler:
    """Drives the HelmReleaseController from store events and timers."""

    def __init__(
        self,
        store: Store,
        controller: HelmReleaseController,
        config: SchedulerConfig | None = None,
    ) -> None:
        """Initialize ReleaseScheduler and subscribe to store events."""
        self._store = store
        self._controller = controller
        self._config = config or SchedulerConfig()
        self._task_service = get_task_service()
        self._locks: dict[NamedResource, asyncio.Lock] = {}
        self._lock_users: defaultdict[NamedResource, int] = defaultdict(int)
        self._remove_listeners = [
            store.add_listener(StoreEvent.OBJECT_ADDED, self._added_listener),
            store.add_listener(StoreEvent.OBJECT_DELETED, self._deleted_listener),
        ]

    def _added_listener(self, resource_id: NamedResource, obj: BaseManifest) -> None:
        if not isinstance(obj, HelmRelease):
            return
        self._task_service.create_task(
            self.reconcile(obj), name=f"reconcile {resource_id}"
        )

    def _deleted_listener(self, resource_id: NamedResource, obj: BaseManifest) -> None:
        if not isinstance(obj, HelmRelease):
            return
        self._task_service.create_task(self.delete(obj), name=f"delete {resource_id}")

    @asynccontextmanager
    async def _serialized(
        self, resource_id: NamedResource
    ) -> AsyncGenerator[None, None]:
        """Hold the lock of a resource, dropping it once nobody uses it."""
        lock = self._locks.setdefault(resource_id, asyncio.Lock())
        self._lock_users[resource_id] += 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[resource_id] -= 1
            if not self._lock_users[resource_id]:
                del self._lock_users[resource_id]
                del self._locks[resource_id]

    async def reconcile(self, hr: HelmRelease) -> None:
        """Run a single reconciliation pass for a HelmRelease."""
        async with self._serialized(hr.named_resource):
            try:
                await self._controller.reconcile_release_def(hr)
            except Exception:
                _LOGGER.exception("Unexpected error reconciling %s", hr.resource_id)

    async def reconcile_all(self) -> None:
        """Reconcile every HelmRelease in the store."""
        releases = self._store.list_helm_releases()
        _LOGGER.debug("Reconciling %d HelmReleases", len(releases))
        await asyncio.gather(*(self.reconcile(hr) for hr in releases))

    async def sync_once(self) -> None:
        """Refresh the git mirrors and reconcile the HelmReleases that changed."""
        changed = await self._controller.sync_mirrors()
        releases = []
        for resource_id in changed:
            if (hr := self._store.get_helm_release(resource_id)) is None:
                _LOGGER.debug("HelmRelease %s no longer exists", resource_id)
                continue
            releases.append(hr)
        await asyncio.gather(*(self.reconcile(hr) for hr in releases))

    async def delete(self, hr: HelmRelease) -> None:
        """Uninstall the release of a deleted HelmRelease."""
        async with self._serialized(hr.named_resource):
            try:
                await self._controller.delete_release(hr)
            except Exception:
                _LOGGER.exception("Unexpected error deleting %s", hr.resource_id)

    async def _loop(
        self, name: str, interval: float, func: Callable[[], Awaitable[None]]
    ) -> None:
        while True:
            await asyncio.sleep(interval)
            _LOGGER.debug("Running %s", name)
            try:
                await func()
            except Exception:
                _LOGGER.exception("Unexpected error in %s", name)

    def start(self) -> None:
        """Start the periodic sweep and the git sync loop."""
        self._task_service.create_background_task(
            self._loop("release sweep", self._config.reconcile_interval, self.reconcile_all),
            name="release sweep",
        )
        self._task_service.create_background_task(
            self._loop("git sync", self._config.git_poll_interval, self.sync_once),
            name="git sync",
        )

    async def close(self) -> None:
        """Stop the background loops and unsubscribe from the store."""
        for remove in self._remove_listeners:
            remove()
        self._remove_listeners.clear()
        await self._task_service.cancel_background_tasks()
