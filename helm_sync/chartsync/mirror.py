"""Local mirrors of git repositories holding charts.

A `GitMirror` keeps a bare mirror clone of one upstream repository. Charts are
never read from the mirror directly: each revision in use is exported into
its own directory, so a newer revision can be exported while readers still
use the previous one.
"""

import asyncio
from dataclasses import dataclass
import hashlib
import io
import logging
from pathlib import Path
from shutil import rmtree
import tarfile
import tempfile
from urllib.parse import urlparse

import git
from slugify import slugify

from helm_sync.exceptions import GitError

_LOGGER = logging.getLogger(__name__)


def _slugify_url(url: str) -> str:
    """Extract and slugify a repository name from a URL."""
    path = urlparse(url).path
    if path.endswith(".git"):
        path = path[:-4]
    # SSH URLs (git@github.com:user/repo.git) parse as a bare path
    slug = path.rstrip("/").split("/")[-1].split(":")[-1]
    return slugify(slug, max_length=50, lowercase=True, separator="-") or "repo"


def mirror_path(cache_dir: Path, url: str) -> Path:
    """Return the directory used to mirror a repository URL.

    e.g. <cache_dir>/my-repo/ab1234567890abcd
    """
    digest = hashlib.sha256(url.encode("utf-8")).hexdigest()[:16]
    return cache_dir / _slugify_url(url) / digest


@dataclass(frozen=True)
class Export:
    """A checkout of a single revision of a repository."""

    dir: Path
    """Directory holding the exported files."""

    revision: str
    """The commit that was exported."""

    def clean(self) -> None:
        """Remove the exported files."""
        _LOGGER.debug("Removing export %s of %s", self.dir, self.revision)
        rmtree(self.dir, ignore_errors=True)


class GitMirror:
    """A bare mirror of an upstream git repository."""

    def __init__(self, url: str, cache_dir: Path) -> None:
        """Initialize GitMirror."""
        self._url = url
        self._path = mirror_path(cache_dir, url)
        self._repo: git.Repo | None = None
        self._lock = asyncio.Lock()

    @property
    def url(self) -> str:
        """URL of the upstream repository."""
        return self._url

    @property
    def ready(self) -> bool:
        """True once the mirror has been cloned."""
        return self._repo is not None

    def _refresh(self) -> git.Repo:
        if self._repo is not None:
            _LOGGER.debug("Fetching %s into %s", self._url, self._path)
            self._repo.git.remote("update", "--prune")
            return self._repo
        if (self._path / "HEAD").exists():
            _LOGGER.info("Reusing existing mirror of %s at %s", self._url, self._path)
            repo = git.Repo(str(self._path))
            repo.git.remote("update", "--prune")
            return repo
        _LOGGER.info("Cloning mirror of %s to %s", self._url, self._path)
        self._path.mkdir(parents=True, exist_ok=True)
        return git.Repo.clone_from(self._url, str(self._path), mirror=True)

    async def refresh(self) -> None:
        """Clone the mirror, or fetch new commits from upstream."""
        async with self._lock:
            try:
                self._repo = await asyncio.to_thread(self._refresh)
            except git.exc.GitError as err:
                raise GitError(f"Unable to fetch {self._url}: {err}") from err

    def _require_repo(self) -> git.Repo:
        if self._repo is None:
            raise GitError(f"Mirror of {self._url} is not ready")
        return self._repo

    async def revision(self, ref: str) -> str:
        """Resolve a branch, tag or commit to a commit id."""
        repo = self._require_repo()
        try:
            return await asyncio.to_thread(repo.git.rev_parse, f"{ref}^{{commit}}")
        except git.exc.GitCommandError as err:
            raise GitError(f"Unable to resolve ref {ref} in {self._url}: {err}") from err

    async def is_ancestor(self, ancestor: str, revision: str) -> bool:
        """Return True if `ancestor` is reachable from `revision`."""
        repo = self._require_repo()
        try:
            return await asyncio.to_thread(repo.is_ancestor, ancestor, revision)
        except git.exc.GitCommandError as err:
            raise GitError(f"Unable to compare {ancestor} and {revision}: {err}") from err

    def _export(self, revision: str, export_dir: Path) -> Path:
        repo = self._require_repo()
        export_dir.mkdir(parents=True, exist_ok=True)
        target = Path(
            tempfile.mkdtemp(prefix=f"{_slugify_url(self._url)}-", dir=export_dir)
        )
        buf = io.BytesIO()
        try:
            repo.archive(buf, treeish=revision, format="tar")
            buf.seek(0)
            with tarfile.open(fileobj=buf, mode="r") as archive:
                archive.extractall(target, filter="data")
        except (git.exc.GitCommandError, tarfile.TarError, OSError):
            rmtree(target, ignore_errors=True)
            raise
        return target

    async def export(self, revision: str, export_dir: Path) -> Export:
        """Export a revision into a new directory under `export_dir`."""
        try:
            path = await asyncio.to_thread(self._export, revision, export_dir)
        except (git.exc.GitCommandError, tarfile.TarError, OSError) as err:
            raise GitError(
                f"Unable to export {revision} of {self._url}: {err}"
            ) from err
        _LOGGER.debug("Exported %s of %s to %s", revision, self._url, path)
        return Export(dir=path, revision=revision)
