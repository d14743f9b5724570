"""HelmRelease Controller implementation.

This controller makes sure the Helm releases in the cluster match what is
defined in the HelmRelease resources. There are several ways they can be
mismatched:

  1. There is a HelmRelease, but no corresponding release. This happens
     when a HelmRelease is first created, for example. The release is
     installed.
  2. The release was changed by some other means, or the values of the
     HelmRelease changed. This is detected by doing a dry-run install and
     comparing the result to the deployed release, then upgrading.
  3. The chart changed in git. The chart source sync advances the source of
     every HelmRelease using that repository, which is then reconciled
     like (2).

Key Concepts:
    - HelmRelease: A resource that defines which chart to deploy and how
    - ChartSource: The locked export of a git repository a chart is read from
    - Store: Holds the HelmRelease resources and receives their status
"""

from dataclasses import asdict, dataclass, field
import hashlib
import logging
from pathlib import Path
import tempfile
from typing import Any

from helm_sync.chartsync import GitChartSourceSync, PackageCache
from helm_sync.diff import render_diff, structurally_equal
from helm_sync.exceptions import (
    HelmSyncException,
    OwnershipConflictError,
    ReleaseActionError,
    SpecDivergedError,
)
from helm_sync.manifest import HelmRelease, NamedResource
from helm_sync.release import (
    ChartDefinition,
    InstallAction,
    InstallOptions,
    Release,
    ReleaseGateway,
    decode_template,
)
from helm_sync.store import ConditionStatus, ConditionType, Reason, Store
from helm_sync.values import resolve_values

_LOGGER = logging.getLogger(__name__)


@dataclass
class HelmControllerConfig:
    """Configuration for the HelmReleaseController."""

    chart_cache: Path = field(default_factory=lambda: Path(tempfile.gettempdir()))
    """Directory where chart packages from chart repositories are cached."""

    log_diffs: bool = False
    """Log the values or chart differences that trigger an upgrade."""

    update_deps: bool = True
    """Run `helm dependency update` on git charts before installing."""


def _describe(hr: HelmRelease) -> str:
    return (
        f"release={hr.release_name} targetNamespace={hr.release_namespace} "
        f"resource={hr.resource_id}"
    )


def _dry_run_release_name(hr: HelmRelease) -> str:
    """Release name used to render the desired state without clashing."""
    if hr.uid:
        return hr.uid
    digest = hashlib.sha256(hr.resource_id.encode("utf-8")).hexdigest()[:24]
    return f"dry-run-{digest}"


def _chart_for_diff(chart: ChartDefinition) -> dict[str, Any]:
    result = asdict(chart)
    result["templates"] = {
        name: decode_template(data) for name, data in chart.templates.items()
    }
    return result


class HelmReleaseController:
    """
    Controller for reconciling HelmRelease resources.

    Each call reconciles a single HelmRelease. Calls for different
    HelmReleases may run concurrently; calls for HelmReleases sharing a git
    chart source are serialized by the lock of that source.
    """

    def __init__(
        self,
        store: Store,
        gateway: ReleaseGateway,
        git_sync: GitChartSourceSync,
        config: HelmControllerConfig,
        package_cache: PackageCache | None = None,
    ) -> None:
        """
        Initialize the controller.

        Args:
            store: Holds HelmReleases and receives their status
            gateway: Performs release actions against the cluster
            git_sync: Registry of git chart sources
            config: The configuration for the controller
            package_cache: Cache of charts from chart repositories
        """
        self._store = store
        self._gateway = gateway
        self._git_sync = git_sync
        self._config = config
        self._package_cache = package_cache or PackageCache(config.chart_cache)

    async def reconcile_release_def(self, hr: HelmRelease) -> None:
        """Install or upgrade the release of a HelmRelease if it diverged.

        Failures are reported as conditions on the HelmRelease and are never
        raised; the next sweep retries.
        """
        _LOGGER.info("Reconciling HelmRelease %s", hr.namespaced_name)
        try:
            if (git_source := hr.spec.git_chart_source) is not None:
                source = await self._git_sync.load(hr)
                if source is None:
                    self._set_condition(
                        hr,
                        ConditionType.CHART_FETCHED,
                        ConditionStatus.FALSE,
                        Reason.DOWNLOAD_FAILED,
                        f"chart source {git_source.git} is not available",
                    )
                    return
                # The export must not move until the release is applied
                async with source.locked() as view:
                    chart_path = view.chart_path(git_source.path)
                    if not await self._update_dependencies(hr, chart_path):
                        return
                    await self._reconcile(hr, chart_path, view.head)
            elif (repo_source := hr.spec.repo_chart_source) is not None:
                if (chart_path := await self._fetch_repo_chart(hr)) is None:
                    return
                await self._reconcile(hr, chart_path, repo_source.version)
            else:
                _LOGGER.warning("HelmRelease %s has no chart source", hr.resource_id)
        finally:
            self._update_observed_generation(hr)

    async def _update_dependencies(self, hr: HelmRelease, chart_path: Path) -> bool:
        git_source = hr.spec.git_chart_source
        if not self._config.update_deps or (git_source and git_source.skip_dep_update):
            return True
        try:
            await self._gateway.dependency_update(chart_path)
        except HelmSyncException as err:
            self._set_condition(
                hr,
                ConditionType.RELEASED,
                ConditionStatus.FALSE,
                Reason.DEPENDENCY_FAILED,
                str(err),
            )
            _LOGGER.warning(
                "Failed to update chart dependencies for %s: %s", _describe(hr), err
            )
            return False
        return True

    async def _fetch_repo_chart(self, hr: HelmRelease) -> Path | None:
        if (repo_source := hr.spec.repo_chart_source) is None:
            return None
        try:
            chart_path = await self._package_cache.fetch(repo_source)
        except HelmSyncException as err:
            self._set_condition(
                hr,
                ConditionType.CHART_FETCHED,
                ConditionStatus.FALSE,
                Reason.DOWNLOAD_FAILED,
                f"chart download failed: {err}",
            )
            _LOGGER.info("Chart download failed for %s: %s", hr.resource_id, err)
            return None
        self._set_condition(
            hr,
            ConditionType.CHART_FETCHED,
            ConditionStatus.TRUE,
            Reason.DOWNLOADED,
            f"chart fetched: {chart_path.name}",
        )
        return chart_path

    async def _reconcile(
        self, hr: HelmRelease, chart_path: Path, chart_revision: str
    ) -> None:
        release_name = hr.release_name
        try:
            current = await self._gateway.get_upgradable_release(
                hr.release_namespace, release_name
            )
        except HelmSyncException as err:
            _LOGGER.warning("Unable to proceed with %s: %s", _describe(hr), err)
            return

        if current is None:
            await self._install(hr, chart_path, chart_revision)
            return

        try:
            owned = await self._gateway.managed_by_resource(current, hr)
        except HelmSyncException as err:
            _LOGGER.warning(
                "Unable to determine the owner of %s: %s", _describe(hr), err
            )
            return
        if not owned:
            conflict = OwnershipConflictError(release_name, hr.resource_id)
            self._set_condition(
                hr,
                ConditionType.RELEASED,
                ConditionStatus.FALSE,
                Reason.UPGRADE_FAILED,
                str(conflict),
            )
            _LOGGER.warning(
                "%s, this may be an indication that multiple HelmReleases with the same release name exist",
                conflict,
            )
            return

        try:
            changed = await self.should_upgrade(chart_path, current, hr)
        except HelmSyncException as err:
            _LOGGER.warning(
                "Unable to determine if %s has changed: %s", _describe(hr), err
            )
            return
        if not changed:
            _LOGGER.debug("Release %s is up to date", release_name)
            return

        try:
            self._check_spec_unchanged(hr)
        except SpecDivergedError as err:
            _LOGGER.warning("%s, skipping upgrade", err)
            return
        await self._upgrade(hr, chart_path, chart_revision)

    async def _install(
        self, hr: HelmRelease, chart_path: Path, chart_revision: str
    ) -> None:
        try:
            _, checksum = await self._gateway.install(
                chart_path,
                hr.release_name,
                hr,
                InstallAction.INSTALL,
                InstallOptions(),
            )
        except HelmSyncException as err:
            self._set_condition(
                hr,
                ConditionType.RELEASED,
                ConditionStatus.FALSE,
                Reason.INSTALL_FAILED,
                str(err),
            )
            _LOGGER.warning("Failed to install chart for %s: %s", _describe(hr), err)
            return
        self._set_condition(
            hr,
            ConditionType.RELEASED,
            ConditionStatus.TRUE,
            Reason.SUCCESS,
            "helm install succeeded",
        )
        self._persist_release(hr, chart_revision, checksum)

    async def _upgrade(
        self, hr: HelmRelease, chart_path: Path, chart_revision: str
    ) -> None:
        try:
            _, checksum = await self._gateway.install(
                chart_path,
                hr.release_name,
                hr,
                InstallAction.UPGRADE,
                InstallOptions(),
            )
        except HelmSyncException as err:
            self._set_condition(
                hr,
                ConditionType.RELEASED,
                ConditionStatus.FALSE,
                Reason.UPGRADE_FAILED,
                str(err),
            )
            if isinstance(err, ReleaseActionError) and err.checksum:
                self._persist_release(hr, None, err.checksum)
            _LOGGER.warning("Failed to upgrade chart for %s: %s", _describe(hr), err)
            await self.rollback_release(hr)
            return
        self._set_condition(
            hr,
            ConditionType.RELEASED,
            ConditionStatus.TRUE,
            Reason.SUCCESS,
            "helm upgrade succeeded",
        )
        self._persist_release(hr, chart_revision, checksum)

    def _check_spec_unchanged(self, hr: HelmRelease) -> None:
        """Raise SpecDivergedError if the HelmRelease changed since it was read."""
        latest = self._store.get_helm_release(hr.named_resource)
        if latest is None or not structurally_equal(
            hr.spec.to_dict(), latest.spec.to_dict()
        ):
            raise SpecDivergedError(hr.resource_id)

    async def should_upgrade(
        self, chart_path: Path, current: Release, hr: HelmRelease
    ) -> bool:
        """Return True if the deployed release differs from the desired release.

        The desired release is rendered with a dry-run install of the chart,
        then its values and chart are compared to the deployed release.
        """
        desired, _ = await self._gateway.install(
            chart_path,
            _dry_run_release_name(hr),
            hr,
            InstallAction.INSTALL,
            InstallOptions(dry_run=True),
        )

        if not structurally_equal(current.values, desired.values):
            if self._config.log_diffs:
                _LOGGER.info(
                    "Release %s values have diverged (%s):\n%s",
                    current.name,
                    _describe(hr),
                    render_diff(current.values, desired.values),
                )
            return True

        current_chart, desired_chart = asdict(current.chart), asdict(desired.chart)
        if not structurally_equal(current_chart, desired_chart):
            if self._config.log_diffs:
                _LOGGER.info(
                    "Release %s chart has diverged (%s):\n%s",
                    current.name,
                    _describe(hr),
                    render_diff(
                        _chart_for_diff(current.chart), _chart_for_diff(desired.chart)
                    ),
                )
            return True

        return False

    async def rollback_release(self, hr: HelmRelease) -> None:
        """Roll back the release of a HelmRelease, if its rollback policy allows it."""
        try:
            if not hr.spec.rollback.enable:
                return
            try:
                await self._gateway.rollback(hr)
            except HelmSyncException as err:
                _LOGGER.warning(
                    "Unable to roll back chart release for %s: %s", _describe(hr), err
                )
                self._set_condition(
                    hr,
                    ConditionType.ROLLED_BACK,
                    ConditionStatus.FALSE,
                    Reason.ROLLBACK_FAILED,
                    str(err),
                )
                return
            self._set_condition(
                hr,
                ConditionType.ROLLED_BACK,
                ConditionStatus.TRUE,
                Reason.SUCCESS,
                "helm rollback succeeded",
            )
        finally:
            self._update_observed_generation(hr)

    async def delete_release(self, hr: HelmRelease) -> None:
        """Uninstall the release of a deleted HelmRelease and forget its source."""
        try:
            await self._gateway.uninstall(hr)
        except HelmSyncException as err:
            _LOGGER.warning("Chart release not deleted for %s: %s", _describe(hr), err)
        await self._git_sync.delete(hr)

    async def sync_mirrors(self) -> list[NamedResource]:
        """Refresh all git mirrors, returning the HelmReleases whose chart changed."""
        return await self._git_sync.sync_mirrors()

    async def compare_values_checksum(self, hr: HelmRelease) -> bool:
        """Recalculate the checksum of the values and compare it to the recorded one.

        This never installs, fetches or updates anything. Returns False when
        the values can't be resolved.
        """
        status = self._store.get_status(hr.named_resource)
        if status is None or status.values_checksum is None:
            return False
        try:
            if (git_source := hr.spec.git_chart_source) is not None:
                if (source := self._git_sync.get(hr)) is None:
                    return False
                async with source.locked() as view:
                    checksum = self._values_checksum(
                        hr, view.chart_path(git_source.path)
                    )
            elif (repo_source := hr.spec.repo_chart_source) is not None:
                if (chart_path := self._package_cache.cached_path(repo_source)) is None:
                    return False
                checksum = self._values_checksum(hr, chart_path)
            else:
                return False
        except (HelmSyncException, OSError, ValueError) as err:
            _LOGGER.debug("Unable to compute values checksum for %s: %s", hr.resource_id, err)
            return False
        return status.values_checksum == checksum

    def _values_checksum(self, hr: HelmRelease, chart_path: Path) -> str:
        values = resolve_values(
            self._store.cluster_config(),
            hr.namespace,
            chart_path,
            hr.spec.values_from,
            hr.spec.values,
        )
        return values.checksum()

    def _set_condition(
        self,
        hr: HelmRelease,
        condition_type: ConditionType,
        status: ConditionStatus,
        reason: Reason,
        message: str,
    ) -> None:
        try:
            self._store.update_condition(
                hr.named_resource, condition_type, status, reason, message
            )
        except HelmSyncException as err:
            _LOGGER.warning(
                "Could not set condition %s on %s: %s", condition_type, hr.resource_id, err
            )

    def _persist_release(
        self, hr: HelmRelease, revision: str | None, checksum: str
    ) -> None:
        key = hr.named_resource
        if revision is not None:
            try:
                self._store.set_release_revision(key, revision)
            except HelmSyncException as err:
                _LOGGER.warning(
                    "Could not update the release revision of %s: %s", hr.resource_id, err
                )
        try:
            self._store.set_values_checksum(key, checksum)
        except HelmSyncException as err:
            _LOGGER.warning(
                "Could not update the values checksum of %s: %s", hr.resource_id, err
            )

    def _update_observed_generation(self, hr: HelmRelease) -> None:
        try:
            self._store.set_observed_generation(hr.named_resource, hr.generation)
        except HelmSyncException as err:
            _LOGGER.warning(
                "Could not update the observed generation of %s: %s",
                hr.resource_id,
                err,
            )
