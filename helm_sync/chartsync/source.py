"""Chart sources backed by git repositories.

Releases are reconciled on two independent schedules that both look at the
charts in git: a periodic sweep checking that every release matches its
HelmRelease, and a sync sweep run when a mirror fetched new commits. Since
they run non-deterministically they could fight each other, e.g. a periodic
sweep could pick up new commits that the sync sweep then treats as a change.

To keep them consistent, every HelmRelease with a git chart gets its own
`ChartSource` holding an export of one revision (its Head). Reconciliation
only reads a source through `ChartSource.locked()`, and only
`GitChartSourceSync.sync_mirrors` replaces the export and advances the Head,
while holding the same lock.
"""

import asyncio
from collections import defaultdict
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from dataclasses import dataclass
import logging
from pathlib import Path
import tempfile

from helm_sync.exceptions import GitError
from helm_sync.manifest import GitChartSource, HelmRelease, NamedResource

from .mirror import Export, GitMirror

_LOGGER = logging.getLogger(__name__)

__all__ = [
    "ChartSource",
    "ChartSourceView",
    "GitChartSourceSync",
    "GitSyncConfig",
]


@dataclass
class GitSyncConfig:
    """Configuration for GitChartSourceSync."""

    cache_dir: Path = Path(tempfile.gettempdir()) / "helm-sync-git"
    """Directory holding repository mirrors and exports."""


@dataclass(frozen=True)
class ChartSourceView:
    """A consistent read of a ChartSource, valid while its lock is held."""

    export_dir: Path
    """Directory holding the exported revision."""

    head: str
    """The revision that was exported."""

    def chart_path(self, path: str) -> Path:
        """Return the path of a chart inside the export."""
        return self.export_dir / path


class _ExportSlot:
    """Holds the current export of a ChartSource.

    Only GitChartSourceSync keeps a reference to the slot, so it is the only
    writer.
    """

    def __init__(self, export: Export) -> None:
        self.export = export


class ChartSource:
    """The chart source of one HelmRelease, guarded by its own lock."""

    def __init__(
        self, spec: GitChartSource, slot: _ExportSlot, lock: asyncio.Lock
    ) -> None:
        """Initialize ChartSource."""
        self._spec = spec
        self._slot = slot
        self._lock = lock

    @property
    def url(self) -> str:
        """URL of the git repository."""
        return self._spec.git

    @property
    def ref(self) -> str:
        """The ref followed by this source."""
        return self._spec.ref

    def matches(self, spec: GitChartSource) -> bool:
        """Return True if this source follows the same repository and ref."""
        return self._spec.git == spec.git and self._spec.ref == spec.ref

    @asynccontextmanager
    async def locked(self) -> AsyncGenerator[ChartSourceView, None]:
        """Acquire the source lock, yielding a view of the export and Head.

        The export won't be replaced until the context exits, including when
        it exits with an exception.
        """
        async with self._lock:
            export = self._slot.export
            yield ChartSourceView(export_dir=export.dir, head=export.revision)


@dataclass
class _Tracked:
    source: ChartSource
    slot: _ExportSlot
    lock: asyncio.Lock


class GitChartSourceSync:
    """Registry of the git chart sources of all HelmReleases."""

    def __init__(self, config: GitSyncConfig | None = None) -> None:
        """Initialize GitChartSourceSync."""
        self._config = config or GitSyncConfig()
        self._export_dir = self._config.cache_dir / "exports"
        self._mirrors: dict[str, GitMirror] = {}
        self._sources: dict[NamedResource, _Tracked] = {}
        self._creating: defaultdict[NamedResource, asyncio.Lock] = defaultdict(
            asyncio.Lock
        )
        self._sync_lock = asyncio.Lock()

    async def _mirror(self, url: str) -> GitMirror:
        if (mirror := self._mirrors.get(url)) is None:
            mirror = GitMirror(url, self._config.cache_dir)
            self._mirrors[url] = mirror
        if not mirror.ready:
            await mirror.refresh()
        return mirror

    def get(self, hr: HelmRelease) -> ChartSource | None:
        """Return the tracked source of a HelmRelease without creating one."""
        spec = hr.spec.git_chart_source
        if spec is None or (tracked := self._sources.get(hr.named_resource)) is None:
            return None
        if not tracked.source.matches(spec):
            return None
        return tracked.source

    async def load(self, hr: HelmRelease) -> ChartSource | None:
        """Return the source of a HelmRelease, creating it on first use.

        Returns None when the HelmRelease does not use a git chart or the
        repository could not be mirrored yet.
        """
        if (spec := hr.spec.git_chart_source) is None:
            return None
        key = hr.named_resource
        async with self._creating[key]:
            if (source := self.get(hr)) is not None:
                return source
            try:
                mirror = await self._mirror(spec.git)
                revision = await mirror.revision(spec.ref)
                export = await mirror.export(revision, self._export_dir)
            except GitError as err:
                _LOGGER.warning(
                    "Unable to load chart source for %s: %s", hr.resource_id, err
                )
                return None
            lock = asyncio.Lock()
            slot = _ExportSlot(export)
            tracked = _Tracked(source=ChartSource(spec, slot, lock), slot=slot, lock=lock)
            previous = self._sources.get(key)
            self._sources[key] = tracked
            _LOGGER.info(
                "Tracking %s at %s for %s", spec.git, revision, hr.resource_id
            )
        if previous is not None:
            # The HelmRelease now follows a different repository or ref
            async with previous.lock:
                previous.slot.export.clean()
        return tracked.source

    async def sync_mirrors(self) -> list[NamedResource]:
        """Refresh all mirrors from upstream and advance the sources.

        Returns the HelmReleases whose source moved to a new revision.
        """
        changed: list[NamedResource] = []
        async with self._sync_lock:
            for url, mirror in list(self._mirrors.items()):
                try:
                    await mirror.refresh()
                except GitError as err:
                    _LOGGER.warning("Failed to refresh mirror %s: %s", url, err)

            for key, tracked in list(self._sources.items()):
                if await self._advance(key, tracked):
                    changed.append(key)
        if changed:
            _LOGGER.info("Chart sources changed: %s", [str(key) for key in changed])
        return changed

    async def _advance(self, key: NamedResource, tracked: _Tracked) -> bool:
        source = tracked.source
        if (mirror := self._mirrors.get(source.url)) is None or not mirror.ready:
            return False
        try:
            revision = await mirror.revision(source.ref)
            async with tracked.lock:
                head = tracked.slot.export.revision
            if revision == head:
                return False
            if await mirror.is_ancestor(revision, head):
                _LOGGER.warning(
                    "Ignoring %s of %s for %s: it is older than the current head %s",
                    revision,
                    source.url,
                    key,
                    head,
                )
                return False
            export = await mirror.export(revision, self._export_dir)
        except GitError as err:
            _LOGGER.warning("Failed to sync chart source for %s: %s", key, err)
            return False

        async with tracked.lock:
            if self._sources.get(key) is not tracked:
                # Deleted or replaced while exporting
                export.clean()
                return False
            previous = tracked.slot.export
            tracked.slot.export = export
        previous.clean()
        _LOGGER.info("Advanced chart source of %s from %s to %s", key, head, revision)
        return True

    async def delete(self, hr: HelmRelease) -> None:
        """Stop tracking the source of a deleted HelmRelease."""
        key = hr.named_resource
        self._creating.pop(key, None)
        if (tracked := self._sources.pop(key, None)) is None:
            return
        async with tracked.lock:
            tracked.slot.export.clean()
        _LOGGER.debug("Stopped tracking chart source for %s", hr.resource_id)
