"""Cache of chart packages downloaded from Helm chart repositories.

Chart versions are immutable, so a package is downloaded at most once and
then served from the cache directory. Concurrent requests for a package that
is still being downloaded wait for that download instead of starting another.
"""

import asyncio
from collections.abc import Awaitable, Callable
import hashlib
import logging
from pathlib import Path

from slugify import slugify

from helm_sync import command
from helm_sync.exceptions import FetchError, HelmException
from helm_sync.manifest import RepoChartSource

_LOGGER = logging.getLogger(__name__)

__all__ = ["PackageCache", "helm_pull"]


HELM_BIN = "helm"

Fetcher = Callable[[RepoChartSource, Path], Awaitable[Path]]


def package_filename(source: RepoChartSource) -> str:
    """Name of the package file as written by `helm pull`."""
    return f"{source.name}-{source.version}.tgz"


async def helm_pull(source: RepoChartSource, destination: Path) -> Path:
    """Download a chart package with `helm pull`."""
    destination.mkdir(parents=True, exist_ok=True)
    args = [
        HELM_BIN,
        "pull",
        source.name,
        "--repo",
        source.repository,
        "--version",
        source.version,
        "--destination",
        str(destination),
    ]
    try:
        await command.run(command.Command(args, exc=HelmException))
    except HelmException as err:
        raise FetchError(
            f"chart {source.name} {source.version} from {source.repository}: {err}"
        ) from err
    path = destination / package_filename(source)
    if not path.exists():
        raise FetchError(
            f"chart {source.name} {source.version} from {source.repository} was not written to {path}"
        )
    return path


class PackageCache:
    """Downloads and caches chart packages by repository, name and version."""

    def __init__(self, cache_dir: Path, fetcher: Fetcher = helm_pull) -> None:
        """Initialize PackageCache."""
        self._cache_dir = cache_dir
        self._fetcher = fetcher
        self._fetched: dict[tuple[str, str, str], Path] = {}
        self._inflight: dict[tuple[str, str, str], asyncio.Future[Path]] = {}

    def _destination(self, source: RepoChartSource) -> Path:
        repository = source.cache_key[0]
        digest = hashlib.sha256(repository.encode("utf-8")).hexdigest()[:16]
        slug = slugify(repository, max_length=50, lowercase=True, separator="-")
        return self._cache_dir / f"{slug}-{digest}"

    def cached_path(self, source: RepoChartSource) -> Path | None:
        """Return the local package if it was already downloaded."""
        if (path := self._fetched.get(source.cache_key)) is not None:
            return path
        path = self._destination(source) / package_filename(source)
        if path.exists():
            self._fetched[source.cache_key] = path
            return path
        return None

    async def fetch(self, source: RepoChartSource) -> Path:
        """Return the local path of a chart package, downloading it if needed.

        Raises `FetchError` when the repository is unreachable or the version
        does not exist. Failures are not retried.
        """
        if (path := self.cached_path(source)) is not None:
            return path
        key = source.cache_key
        if (future := self._inflight.get(key)) is not None:
            _LOGGER.debug("Waiting for in flight download of %s", key)
            return await asyncio.shield(future)

        future = asyncio.get_running_loop().create_future()
        self._inflight[key] = future
        try:
            _LOGGER.info(
                "Downloading chart %s %s from %s",
                source.name,
                source.version,
                source.repository,
            )
            path = await self._fetcher(source, self._destination(source))
        except asyncio.CancelledError:
            # Waiters see a failed download
            future.set_exception(
                FetchError(
                    f"download of chart {source.name} {source.version} was cancelled"
                )
            )
            future.exception()
            raise
        except Exception as err:
            future.set_exception(err)
            # Mark retrieved, waiters (if any) still receive the exception
            future.exception()
            raise
        else:
            self._fetched[key] = path
            future.set_result(path)
            return path
        finally:
            del self._inflight[key]
