"""Fixtures for the helm controller tests."""

import asyncio
from collections.abc import Awaitable, Callable, Generator
import copy
from pathlib import Path
import tempfile

import git
import pytest
import yaml

from helm_sync.chartsync import GitChartSourceSync, GitSyncConfig, PackageCache
from helm_sync.chartsync.cache import package_filename
from helm_sync.exceptions import (
    DependencyUpdateError,
    FetchError,
    HelmException,
    InstallError,
    RollbackError,
    UninstallError,
    UpgradeError,
)
from helm_sync.helm_controller import HelmControllerConfig, HelmReleaseController
from helm_sync.manifest import (
    ANTECEDENT_LABEL,
    HelmRelease,
    NamedResource,
    RepoChartSource,
)
from helm_sync.release import (
    ChartDefinition,
    InstallAction,
    InstallOptions,
    Release,
    ReleaseGateway,
    antecedent_marker,
)
from helm_sync.store import Condition, InMemoryStore
from helm_sync.task import TaskService, task_service_context
from helm_sync.values import resolve_values


class RecordingStore(InMemoryStore):
    """InMemoryStore that remembers the order conditions were set in."""

    def __init__(self) -> None:
        super().__init__()
        self.condition_log: list[tuple[NamedResource, str, str, str]] = []

    def set_condition(self, resource_id: NamedResource, condition: Condition) -> None:
        self.condition_log.append(
            (resource_id, condition.type, condition.status, condition.reason)
        )
        super().set_condition(resource_id, condition)


def _chart_definition(chart_path: Path) -> ChartDefinition:
    if (chart_yaml := chart_path / "Chart.yaml").exists():
        doc = yaml.safe_load(chart_yaml.read_text())
        return ChartDefinition(name=doc["name"], version=str(doc["version"]))
    return ChartDefinition(name=chart_path.name, version="")


class FakeGateway(ReleaseGateway):
    """ReleaseGateway keeping releases in memory.

    Set `errors[call]` to a message to make a call fail, where call is one of
    get, owner, dry-run, install, upgrade, rollback, uninstall or
    dependency_update.
    """

    def __init__(self, store: InMemoryStore) -> None:
        self._store = store
        self.releases: dict[str, Release] = {}
        self.calls: list[tuple[str, str]] = []
        self.chart_paths: list[tuple[str, Path]] = []
        self.errors: dict[str, str] = {}
        self.on_dry_run: Callable[[], Awaitable[None]] | None = None

    def actions(self) -> list[str]:
        """Return the calls that change or render a release."""
        return [call for call, _ in self.calls if call not in ("get", "owner")]

    async def get_upgradable_release(
        self, namespace: str, name: str
    ) -> Release | None:
        self.calls.append(("get", name))
        if message := self.errors.get("get"):
            raise HelmException(message)
        if (rel := self.releases.get(name)) is None:
            return None
        return copy.deepcopy(rel)

    async def install(
        self,
        chart_path: Path,
        release_name: str,
        hr: HelmRelease,
        action: InstallAction,
        options: InstallOptions,
    ) -> tuple[Release, str]:
        call = "dry-run" if options.dry_run else str(action)
        self.calls.append((call, release_name))
        self.chart_paths.append((call, chart_path))
        assert chart_path.exists(), f"{call} of {chart_path} which no longer exists"
        values = resolve_values(
            self._store.cluster_config(),
            hr.namespace,
            chart_path,
            hr.spec.values_from,
            hr.spec.values,
        )
        checksum = values.checksum()
        if options.dry_run and self.on_dry_run:
            await self.on_dry_run()
        if message := self.errors.get(call):
            if action == InstallAction.UPGRADE:
                raise UpgradeError(message, checksum=checksum)
            raise InstallError(message, checksum=checksum)
        previous = self.releases.get(release_name)
        rel = Release(
            name=release_name,
            namespace=hr.release_namespace,
            chart=_chart_definition(chart_path),
            values=copy.deepcopy(values.data),
            revision=previous.revision + 1 if previous else 1,
            labels={ANTECEDENT_LABEL: antecedent_marker(hr)},
        )
        if not options.dry_run:
            self.releases[release_name] = rel
        return copy.deepcopy(rel), checksum

    async def managed_by_resource(self, release: Release, hr: HelmRelease) -> bool:
        self.calls.append(("owner", release.name))
        if message := self.errors.get("owner"):
            raise HelmException(message)
        return await super().managed_by_resource(release, hr)

    async def rollback(self, hr: HelmRelease) -> Release:
        self.calls.append(("rollback", hr.release_name))
        if message := self.errors.get("rollback"):
            raise RollbackError(message)
        return copy.deepcopy(self.releases[hr.release_name])

    async def uninstall(self, hr: HelmRelease) -> None:
        self.calls.append(("uninstall", hr.release_name))
        if message := self.errors.get("uninstall"):
            raise UninstallError(message)
        self.releases.pop(hr.release_name, None)

    async def dependency_update(self, chart_path: Path) -> None:
        self.calls.append(("dependency_update", str(chart_path)))
        if message := self.errors.get("dependency_update"):
            raise DependencyUpdateError(message)


class FakeFetcher:
    """Writes an empty chart package instead of downloading it."""

    def __init__(self) -> None:
        self.calls: list[RepoChartSource] = []
        self.error: str | None = None

    async def __call__(self, source: RepoChartSource, destination: Path) -> Path:
        self.calls.append(source)
        await asyncio.sleep(0)
        if self.error:
            raise FetchError(self.error)
        destination.mkdir(parents=True, exist_ok=True)
        path = destination / package_filename(source)
        path.write_bytes(b"chart")
        return path


@pytest.fixture(name="task_service", autouse=True)
def task_service_fixture() -> Generator[TaskService, None, None]:
    """Create a task service for testing."""
    with task_service_context() as service:
        yield service


@pytest.fixture(name="tmp_dir")
def tmp_dir_fixture() -> Generator[Path, None, None]:
    """Create a temporary directory for test resources."""
    with tempfile.TemporaryDirectory() as td:
        yield Path(td)


@pytest.fixture(name="upstream")
def upstream_fixture(tmp_dir: Path) -> git.Repo:
    """Create an upstream git repository holding a chart."""
    repo_path = tmp_dir / "charts-repo"
    chart_dir = repo_path / "charts" / "podinfo"
    chart_dir.mkdir(parents=True)

    repo = git.Repo.init(repo_path)
    repo.config_writer().set_value("user", "name", "myusername").release()
    repo.config_writer().set_value("user", "email", "myemail").release()

    (chart_dir / "Chart.yaml").write_text(
        "apiVersion: v2\nname: podinfo\nversion: 1.0.0\n", encoding="utf-8"
    )
    (chart_dir / "values-production.yaml").write_text(
        "replicaCount: 3\n", encoding="utf-8"
    )
    repo.git.add(".")
    repo.git.commit(m="Add podinfo chart")
    repo.git.branch("-M", "main")
    return repo


@pytest.fixture(name="commit_chart")
def commit_chart_fixture(upstream: git.Repo) -> Callable[[str], str]:
    """Return a function that commits a new chart version upstream."""

    def commit(version: str) -> str:
        chart_yaml = Path(upstream.working_dir) / "charts" / "podinfo" / "Chart.yaml"
        chart_yaml.write_text(
            f"apiVersion: v2\nname: podinfo\nversion: {version}\n", encoding="utf-8"
        )
        upstream.git.add(".")
        upstream.git.commit(m=f"Release {version}")
        return upstream.head.commit.hexsha

    return commit


@pytest.fixture(name="store")
def store_fixture() -> RecordingStore:
    """Create a test store."""
    return RecordingStore()


@pytest.fixture(name="gateway")
def gateway_fixture(store: RecordingStore) -> FakeGateway:
    """Create a fake gateway."""
    return FakeGateway(store)


@pytest.fixture(name="fetcher")
def fetcher_fixture() -> FakeFetcher:
    """Create a fake chart package fetcher."""
    return FakeFetcher()


@pytest.fixture(name="git_sync")
def git_sync_fixture(tmp_dir: Path) -> GitChartSourceSync:
    """Create the chart source registry."""
    return GitChartSourceSync(GitSyncConfig(cache_dir=tmp_dir / "git"))


@pytest.fixture(name="controller_config")
def controller_config_fixture(tmp_dir: Path) -> HelmControllerConfig:
    """Create the controller configuration."""
    return HelmControllerConfig(chart_cache=tmp_dir / "charts", log_diffs=True)


@pytest.fixture(name="controller")
def controller_fixture(
    store: RecordingStore,
    gateway: FakeGateway,
    git_sync: GitChartSourceSync,
    fetcher: FakeFetcher,
    controller_config: HelmControllerConfig,
) -> HelmReleaseController:
    """Create the controller under test."""
    return HelmReleaseController(
        store,
        gateway,
        git_sync,
        controller_config,
        PackageCache(controller_config.chart_cache, fetcher),
    )
