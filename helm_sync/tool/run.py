"""Helm-sync run action."""

import asyncio
import logging
from argparse import (
    ArgumentParser,
    BooleanOptionalAction,
    _SubParsersAction as SubParsersAction,
)
from collections.abc import Iterator
import os
import pathlib
import sys
import tempfile
from typing import Any, cast

import yaml

from helm_sync.chartsync import GitChartSourceSync, GitSyncConfig, PackageCache
from helm_sync.exceptions import InputException
from helm_sync.helm_controller import HelmControllerConfig, HelmReleaseController
from helm_sync.manifest import BaseManifest, parse_doc
from helm_sync.release import HelmCli
from helm_sync.scheduler import ReleaseScheduler, SchedulerConfig
from helm_sync.store import InMemoryStore, Store
from helm_sync.task import task_service_context

_LOGGER = logging.getLogger(__name__)

IGNORE_DIRS = {".git", "venv", ".venv"}


def load_manifests(path: pathlib.Path) -> Iterator[BaseManifest]:
    """Parse every HelmRelease, ConfigMap and Secret in the yaml files under path."""
    if path.is_file():
        files = [path]
    else:
        files = []
        for root, dirs, filenames in os.walk(str(path)):
            dirs[:] = sorted(d for d in dirs if d not in IGNORE_DIRS)
            files.extend(
                pathlib.Path(root) / name
                for name in sorted(filenames)
                if name.endswith(".yaml") or name.endswith(".yml")
            )
    for file in files:
        try:
            docs = list(yaml.safe_load_all(file.read_text()))
        except yaml.YAMLError as err:
            raise InputException(f"`{file}` failed to parse as yaml: {err}") from err
        for doc in docs:
            if not isinstance(doc, dict):
                continue
            if (obj := parse_doc(doc)) is not None:
                _LOGGER.debug("Loaded %s from %s", type(obj).__name__, file)
                yield obj


def status_documents(store: Store) -> list[dict[str, Any]]:
    """Return the status of every HelmRelease in the store."""
    docs = []
    for hr in sorted(store.list_helm_releases(), key=lambda hr: hr.named_resource):
        status = store.get_status(hr.named_resource)
        docs.append(
            {
                "name": hr.name,
                "namespace": hr.namespace,
                "releaseName": hr.release_name,
                "status": status.as_dict() if status else {},
            }
        )
    return docs


class RunAction:
    """Helm-sync run action."""

    @classmethod
    def register(
        cls, subparsers: SubParsersAction  # type: ignore[type-arg]
    ) -> ArgumentParser:
        """Register the subparser commands."""
        args = cast(
            ArgumentParser,
            subparsers.add_parser(
                "run",
                help="Reconcile Helm releases with local HelmRelease resources",
                description=(
                    "Load HelmRelease, ConfigMap and Secret resources from local "
                    "yaml files and install or upgrade their releases."
                ),
            ),
        )
        args.add_argument(
            "--path",
            help="Path to a file or directory of HelmRelease resources",
            type=pathlib.Path,
            required=True,
        )
        args.add_argument(
            "--chart-cache",
            help="Directory where charts from chart repositories are cached",
            type=pathlib.Path,
            default=None,
        )
        args.add_argument(
            "--git-cache",
            help="Directory where git repositories are mirrored",
            type=pathlib.Path,
            default=None,
        )
        args.add_argument(
            "--log-diffs",
            action=BooleanOptionalAction,
            default=False,
            help="Log the differences that trigger an upgrade",
        )
        args.add_argument(
            "--update-deps",
            action=BooleanOptionalAction,
            default=True,
            help="Update the dependencies of git charts before installing",
        )
        args.add_argument(
            "--once",
            action=BooleanOptionalAction,
            default=False,
            help="Reconcile every release once and exit",
        )
        args.add_argument(
            "--interval",
            help="Seconds between sweeps over every HelmRelease",
            type=float,
            default=SchedulerConfig.reconcile_interval,
        )
        args.add_argument(
            "--git-poll-interval",
            help="Seconds between refreshes of the git repositories",
            type=float,
            default=SchedulerConfig.git_poll_interval,
        )
        args.set_defaults(cls=cls)
        return args

    async def run(  # type: ignore[no-untyped-def]
        self,
        path: pathlib.Path,
        chart_cache: pathlib.Path | None,
        git_cache: pathlib.Path | None,
        log_diffs: bool,
        update_deps: bool,
        once: bool,
        interval: float,
        git_poll_interval: float,
        **kwargs,  # pylint: disable=unused-argument
    ) -> None:
        """Async Action implementation."""
        store = InMemoryStore()
        controller_config = HelmControllerConfig(
            log_diffs=log_diffs, update_deps=update_deps
        )
        if chart_cache:
            controller_config.chart_cache = chart_cache
        git_sync = GitChartSourceSync(
            GitSyncConfig(cache_dir=git_cache) if git_cache else None
        )

        with (
            tempfile.TemporaryDirectory() as tmp_dir,
            task_service_context() as task_service,
        ):
            controller = HelmReleaseController(
                store,
                HelmCli(pathlib.Path(tmp_dir), store.cluster_config()),
                git_sync,
                controller_config,
                PackageCache(controller_config.chart_cache),
            )
            scheduler = ReleaseScheduler(
                store,
                controller,
                SchedulerConfig(
                    reconcile_interval=interval, git_poll_interval=git_poll_interval
                ),
            )
            try:
                for obj in load_manifests(path):
                    store.add_object(obj)
                await task_service.block_till_done()
                if not once:
                    scheduler.start()
                    # Runs until interrupted
                    await asyncio.Event().wait()
            finally:
                await scheduler.close()
                await task_service.block_till_done()
                print(
                    yaml.safe_dump_all(status_documents(store), sort_keys=False),
                    end="",
                    file=sys.stdout,
                )
