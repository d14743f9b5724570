"""Tests for git chart sources."""

import asyncio
from collections.abc import Generator
from pathlib import Path
import tempfile

import git
import pytest

from helm_sync.chartsync import GitChartSourceSync, GitSyncConfig
from helm_sync.chartsync.mirror import mirror_path
from helm_sync.manifest import (
    GitChartSource,
    HelmRelease,
    HelmReleaseSpec,
    RepoChartSource,
)


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
    (chart_dir / "values.yaml").write_text("replicaCount: 1\n", encoding="utf-8")
    repo.git.add(".")
    repo.git.commit(m="Add podinfo chart")
    repo.git.branch("-M", "main")
    repo.git.tag("v1.0.0")
    return repo


@pytest.fixture(name="git_sync")
def git_sync_fixture(tmp_dir: Path) -> GitChartSourceSync:
    """Create the chart source registry under test."""
    return GitChartSourceSync(GitSyncConfig(cache_dir=tmp_dir / "cache"))


def _commit(repo: git.Repo, version: str) -> str:
    chart_yaml = Path(repo.working_dir) / "charts" / "podinfo" / "Chart.yaml"
    chart_yaml.write_text(
        f"apiVersion: v2\nname: podinfo\nversion: {version}\n", encoding="utf-8"
    )
    repo.git.add(".")
    repo.git.commit(m=f"Release {version}")
    return repo.head.commit.hexsha


def _helm_release(upstream: git.Repo, ref: str = "main", name: str = "podinfo") -> HelmRelease:
    return HelmRelease(
        name=name,
        namespace="apps",
        spec=HelmReleaseSpec(
            git_chart_source=GitChartSource(
                git=f"file://{upstream.working_dir}", path="charts/podinfo", ref=ref
            ),
        ),
    )


def _chart_version(chart_path: Path) -> str:
    for line in (chart_path / "Chart.yaml").read_text().splitlines():
        if line.startswith("version:"):
            return line.split(":", 1)[1].strip()
    raise AssertionError(f"No version in {chart_path}")


async def test_load(upstream: git.Repo, git_sync: GitChartSourceSync) -> None:
    """Test loading the source of a HelmRelease exports the current head."""
    hr = _helm_release(upstream)
    assert git_sync.get(hr) is None

    source = await git_sync.load(hr)
    assert source is not None
    assert git_sync.get(hr) is source
    assert await git_sync.load(hr) is source

    async with source.locked() as view:
        assert view.head == upstream.head.commit.hexsha
        chart_path = view.chart_path("charts/podinfo")
        assert _chart_version(chart_path) == "1.0.0"
        # Only committed content is exported
        assert not (view.export_dir / ".git").exists()


async def test_load_not_found(
    upstream: git.Repo, git_sync: GitChartSourceSync, tmp_dir: Path
) -> None:
    """Test sources that can't be loaded."""
    repo_hr = HelmRelease(
        name="redis",
        namespace="cache",
        spec=HelmReleaseSpec(
            repo_chart_source=RepoChartSource(
                repository="https://charts.bitnami.com/bitnami",
                name="redis",
                version="17.11.3",
            )
        ),
    )
    assert await git_sync.load(repo_hr) is None

    missing_repo = _helm_release(upstream)
    assert missing_repo.spec.git_chart_source
    missing_repo.spec.git_chart_source.git = f"file://{tmp_dir / 'does-not-exist'}"
    assert await git_sync.load(missing_repo) is None

    assert await git_sync.load(_helm_release(upstream, ref="no-such-branch")) is None


async def test_sync_mirrors(upstream: git.Repo, git_sync: GitChartSourceSync) -> None:
    """Test new commits advance the head of the source."""
    hr = _helm_release(upstream)
    source = await git_sync.load(hr)
    assert source
    async with source.locked() as view:
        old_head = view.head
        old_export = view.export_dir

    assert await git_sync.sync_mirrors() == []

    new_head = _commit(upstream, "1.1.0")
    assert await git_sync.sync_mirrors() == [hr.named_resource]

    async with source.locked() as view:
        assert view.head == new_head
        assert view.head != old_head
        assert _chart_version(view.chart_path("charts/podinfo")) == "1.1.0"
    assert not old_export.exists()

    assert await git_sync.sync_mirrors() == []


async def test_sync_mirrors_pinned_ref(
    upstream: git.Repo, git_sync: GitChartSourceSync
) -> None:
    """Test a source following a tag does not move with the branch."""
    tagged = _helm_release(upstream, ref="v1.0.0", name="tagged")
    branch = _helm_release(upstream, name="branch")
    assert await git_sync.load(tagged)
    assert await git_sync.load(branch)

    _commit(upstream, "1.1.0")
    assert await git_sync.sync_mirrors() == [branch.named_resource]


async def test_head_never_moves_backward(
    upstream: git.Repo, git_sync: GitChartSourceSync
) -> None:
    """Test the head is not moved to an ancestor of the current head."""
    first = upstream.head.commit.hexsha
    hr = _helm_release(upstream)
    second = _commit(upstream, "1.1.0")
    source = await git_sync.load(hr)
    assert source
    async with source.locked() as view:
        assert view.head == second

    # Force the branch back to an older commit
    upstream.git.reset("--hard", first)
    assert await git_sync.sync_mirrors() == []
    async with source.locked() as view:
        assert view.head == second
        assert _chart_version(view.chart_path("charts/podinfo")) == "1.1.0"


async def test_sync_waits_for_lock(
    upstream: git.Repo, git_sync: GitChartSourceSync
) -> None:
    """Test the head does not move while a reconciliation holds the source."""
    hr = _helm_release(upstream)
    source = await git_sync.load(hr)
    assert source
    new_head = _commit(upstream, "1.1.0")

    async with source.locked() as view:
        old_head = view.head
        task = asyncio.create_task(git_sync.sync_mirrors())
        done, _ = await asyncio.wait({task}, timeout=1.0)
        assert not done
        assert view.export_dir.exists()
        assert _chart_version(view.chart_path("charts/podinfo")) == "1.0.0"
        assert view.head == old_head

    assert await task == [hr.named_resource]
    async with source.locked() as view:
        assert view.head == new_head


async def test_ref_change_replaces_source(
    upstream: git.Repo, git_sync: GitChartSourceSync
) -> None:
    """Test a HelmRelease that now follows another ref gets a new source."""
    _commit(upstream, "1.1.0")
    hr = _helm_release(upstream)
    source = await git_sync.load(hr)
    assert source
    async with source.locked() as view:
        old_export = view.export_dir

    pinned = _helm_release(upstream, ref="v1.0.0")
    assert git_sync.get(pinned) is None
    new_source = await git_sync.load(pinned)
    assert new_source
    assert new_source is not source
    assert not old_export.exists()
    async with new_source.locked() as view:
        assert _chart_version(view.chart_path("charts/podinfo")) == "1.0.0"


async def test_delete(upstream: git.Repo, git_sync: GitChartSourceSync) -> None:
    """Test deleting a source removes its export."""
    hr = _helm_release(upstream)
    source = await git_sync.load(hr)
    assert source
    async with source.locked() as view:
        export_dir = view.export_dir

    await git_sync.delete(hr)
    assert git_sync.get(hr) is None
    assert not export_dir.exists()

    _commit(upstream, "1.1.0")
    assert await git_sync.sync_mirrors() == []

    # Deleting again is a no-op
    await git_sync.delete(hr)


def test_mirror_path(tmp_dir: Path) -> None:
    """Test mirrors of different URLs don't collide."""
    https = mirror_path(tmp_dir, "https://github.com/example/charts.git")
    ssh = mirror_path(tmp_dir, "git@github.com:example/charts.git")
    assert https.parent.name == "charts"
    assert ssh.parent.name == "charts"
    assert https != ssh
    assert len(https.name) == 16
