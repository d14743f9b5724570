"""Library for performing release actions against the deployment runtime.

`ReleaseGateway` is the interface used by the controller to read the currently
deployed release and to install, upgrade, roll back and uninstall it.
`HelmCli` implements it by running the `helm` binary, for example:

```python
from helm_sync.release import HelmCli, InstallAction, InstallOptions

gateway = HelmCli(tmp_dir, store.cluster_config())
release = await gateway.get_upgradable_release("default", "default-podinfo")
if release is None:
    release, checksum = await gateway.install(
        chart_path, hr.release_name, hr, InstallAction.INSTALL, InstallOptions()
    )
```
"""

from abc import ABC, abstractmethod
import base64
import hashlib
from dataclasses import dataclass, field
from enum import StrEnum
import json
import logging
from pathlib import Path
from typing import Any

import aiofiles
import aiofiles.tempfile
import yaml

from . import command
from .exceptions import (
    DependencyUpdateError,
    HelmException,
    InstallError,
    InvalidValuesReference,
    ReleaseActionError,
    RollbackError,
    UninstallError,
    UpgradeError,
)
from .manifest import ANTECEDENT_LABEL, HelmRelease
from .values import ClusterConfig, resolve_values

__all__ = [
    "ChartDefinition",
    "Release",
    "InstallAction",
    "InstallOptions",
    "ReleaseGateway",
    "HelmCli",
    "antecedent_marker",
    "decode_template",
]

_LOGGER = logging.getLogger(__name__)


HELM_BIN = "helm"

# Release states that can't be upgraded until another operation completes
_PENDING_STATES = {"pending-install", "pending-upgrade", "pending-rollback"}
_UNINSTALLED_STATES = {"uninstalled", "uninstalling"}
_ANTECEDENT_ANNOTATION = ANTECEDENT_LABEL
_MAX_LABEL_LENGTH = 63
_DIGEST_LENGTH = 12


@dataclass
class ChartDefinition:
    """The chart a release was rendered from."""

    name: str
    version: str
    app_version: str | None = None
    templates: dict[str, str] = field(default_factory=dict)
    values: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_json(cls, doc: dict[str, Any]) -> "ChartDefinition":
        """Parse the chart of a release as reported by `helm -o json`."""
        metadata = doc.get("metadata") or {}
        return cls(
            name=metadata.get("name", ""),
            version=metadata.get("version", ""),
            app_version=metadata.get("appVersion"),
            templates={
                template["name"]: template.get("data", "")
                for template in doc.get("templates") or ()
            },
            values=doc.get("values") or {},
        )


@dataclass
class Release:
    """A deployed instance of a chart."""

    name: str
    namespace: str
    chart: ChartDefinition
    values: dict[str, Any]
    revision: int
    status: str = "deployed"
    labels: dict[str, str] = field(default_factory=dict)
    manifest: str = ""

    @classmethod
    def from_json(cls, doc: dict[str, Any]) -> "Release":
        """Parse a release as reported by `helm -o json`."""
        return cls(
            name=doc["name"],
            namespace=doc.get("namespace", ""),
            chart=ChartDefinition.from_json(doc.get("chart") or {}),
            values=doc.get("config") or {},
            revision=int(doc.get("version", 0)),
            status=(doc.get("info") or {}).get("status", ""),
            labels=doc.get("labels") or {},
            manifest=doc.get("manifest") or "",
        )

    def manifest_annotations(self, key: str) -> set[str]:
        """Return the distinct values of an annotation across the rendered objects."""
        found: set[str] = set()
        try:
            docs = list(yaml.safe_load_all(self.manifest))
        except yaml.YAMLError as err:
            _LOGGER.debug("Unable to parse manifest of release %s: %s", self.name, err)
            return found
        for doc in docs:
            if not isinstance(doc, dict):
                continue
            annotations = (doc.get("metadata") or {}).get("annotations") or {}
            if (value := annotations.get(key)) is not None:
                found.add(value)
        return found


class InstallAction(StrEnum):
    """The kind of release action performed by `ReleaseGateway.install`."""

    INSTALL = "install"
    UPGRADE = "upgrade"


@dataclass
class InstallOptions:
    """Options for installing or upgrading a release."""

    dry_run: bool = False
    """Render the release without applying it."""


def antecedent_marker(hr: HelmRelease) -> str:
    """Value of the ownership label written on releases managed by a HelmRelease.

    Label values may not contain ':' or '/', so the resource id is flattened.
    Values longer than a label allows are shortened and suffixed with a hash
    of the resource id to keep them unique.
    """
    marker = f"{hr.namespace}.{hr.kind.lower()}.{hr.name}"
    if len(marker) <= _MAX_LABEL_LENGTH:
        return marker
    digest = hashlib.sha256(hr.resource_id.encode("utf-8")).hexdigest()[:_DIGEST_LENGTH]
    prefix = marker[: _MAX_LABEL_LENGTH - _DIGEST_LENGTH - 1].rstrip("-_.")
    return f"{prefix}-{digest}"


def _annotations_match(release: Release, hr: HelmRelease) -> bool:
    annotations = release.manifest_annotations(_ANTECEDENT_ANNOTATION)
    if not annotations:
        return True
    return annotations == {hr.resource_id}


class ReleaseGateway(ABC):
    """Performs release actions against the deployment runtime."""

    @abstractmethod
    async def get_upgradable_release(
        self, namespace: str, name: str
    ) -> Release | None:
        """Return the deployed release, or None if there is no release yet.

        Raises an exception when the release exists but can't be upgraded
        right now, for example while another operation is pending.
        """

    @abstractmethod
    async def install(
        self,
        chart_path: Path,
        release_name: str,
        hr: HelmRelease,
        action: InstallAction,
        options: InstallOptions,
    ) -> tuple[Release, str]:
        """Install or upgrade a release, returning it and the values checksum.

        Raises `InstallError` or `UpgradeError` on failure, carrying the
        checksum of the values that were attempted when known.
        """

    @abstractmethod
    async def rollback(self, hr: HelmRelease) -> Release:
        """Roll back the release of a HelmRelease to its previous revision."""

    @abstractmethod
    async def uninstall(self, hr: HelmRelease) -> None:
        """Uninstall the release of a HelmRelease."""

    @abstractmethod
    async def dependency_update(self, chart_path: Path) -> None:
        """Update the dependencies of a chart in place."""

    async def managed_by_resource(self, release: Release, hr: HelmRelease) -> bool:
        """Return True if the release belongs to the HelmRelease.

        The ownership label is checked first, then the annotations of the
        rendered objects. Releases without any ownership marker are adopted,
        which allows migrating existing releases to a HelmRelease.
        """
        if (label := release.labels.get(ANTECEDENT_LABEL)) is not None:
            return label == antecedent_marker(hr)
        return _annotations_match(release, hr)


class HelmCli(ReleaseGateway):
    """A ReleaseGateway that runs the `helm` binary."""

    def __init__(self, tmp_dir: Path, cluster_config: ClusterConfig) -> None:
        """Initialize HelmCli."""
        self._tmp_dir = tmp_dir
        self._cluster_config = cluster_config

    async def _status(self, namespace: str, name: str) -> dict[str, Any] | None:
        args = [HELM_BIN, "status", name, "--namespace", namespace, "--output", "json"]
        try:
            out = await command.run(command.Command(args, exc=HelmException))
        except HelmException as err:
            if "not found" in str(err):
                return None
            raise
        return json.loads(out)  # type: ignore[no-any-return]

    async def get_upgradable_release(
        self, namespace: str, name: str
    ) -> Release | None:
        """Return the deployed release, or None if there is no release yet."""
        if (doc := await self._status(namespace, name)) is None:
            return None
        release = Release.from_json(doc)
        if release.status in _UNINSTALLED_STATES:
            return None
        if release.status in _PENDING_STATES:
            raise HelmException(
                f"release {namespace}/{name} is in state {release.status} and can't be upgraded"
            )
        return release

    async def _release_listed(self, namespace: str, name: str, selector: str) -> bool:
        """Return True if `helm list` reports the release for a label selector.

        Release labels are only kept by the storage driver and never appear
        in `helm status`, so they can only be matched with a selector.
        """
        args = [
            HELM_BIN,
            "list",
            "--all",
            "--namespace",
            namespace,
            "--filter",
            f"^{name}$",
            "--selector",
            selector,
            "--output",
            "json",
        ]
        out = await command.run(command.Command(args, exc=HelmException))
        try:
            listed = json.loads(out) or []
        except ValueError as err:
            raise HelmException(f"unable to parse helm list output: {err}") from err
        return any(item.get("name") == name for item in listed)

    async def managed_by_resource(self, release: Release, hr: HelmRelease) -> bool:
        """Return True if the release belongs to the HelmRelease.

        Raises `HelmException` if the release labels can't be listed.
        """
        namespace, name = hr.release_namespace, hr.release_name
        marker = f"{ANTECEDENT_LABEL}={antecedent_marker(hr)}"
        if await self._release_listed(namespace, name, marker):
            return True
        if await self._release_listed(namespace, name, ANTECEDENT_LABEL):
            _LOGGER.debug("Release %s is labeled for another HelmRelease", name)
            return False
        return _annotations_match(release, hr)

    async def install(
        self,
        chart_path: Path,
        release_name: str,
        hr: HelmRelease,
        action: InstallAction,
        options: InstallOptions,
    ) -> tuple[Release, str]:
        """Install or upgrade a release using `helm install` or `helm upgrade`."""
        exc: type[ReleaseActionError] = (
            UpgradeError if action == InstallAction.UPGRADE else InstallError
        )
        try:
            values = resolve_values(
                self._cluster_config,
                hr.namespace,
                chart_path,
                hr.spec.values_from,
                hr.spec.values,
            )
        except InvalidValuesReference as err:
            raise exc(f"failed to compose values for chart release: {err}") from err
        checksum = values.checksum()

        # Release names are only unique within a namespace, so each call gets
        # its own values file
        async with aiofiles.tempfile.NamedTemporaryFile(
            mode="w",
            dir=self._tmp_dir,
            prefix=f"{release_name}-",
            suffix="-values.yaml",
        ) as values_file:
            await values_file.write(values.yaml())
            await values_file.flush()

            args: list[str] = [
                HELM_BIN,
                str(action),
                release_name,
                str(chart_path),
                "--namespace",
                hr.release_namespace,
                "--values",
                str(values_file.name),
                "--labels",
                f"{ANTECEDENT_LABEL}={antecedent_marker(hr)}",
                "--output",
                "json",
            ]
            if options.dry_run:
                args.append("--dry-run")
            try:
                out = await command.run(command.Command(args, exc=HelmException))
            except HelmException as err:
                raise exc(str(err), checksum=checksum) from err
        try:
            release = Release.from_json(json.loads(out))
        except (ValueError, KeyError) as err:
            raise exc(f"unable to parse helm output: {err}", checksum=checksum) from err
        return release, checksum

    async def rollback(self, hr: HelmRelease) -> Release:
        """Roll back the release using `helm rollback`."""
        args = [
            HELM_BIN,
            "rollback",
            hr.release_name,
            "--namespace",
            hr.release_namespace,
        ]
        try:
            await command.run(command.Command(args, exc=HelmException))
            release = await self.get_upgradable_release(
                hr.release_namespace, hr.release_name
            )
        except HelmException as err:
            raise RollbackError(str(err)) from err
        if release is None:
            raise RollbackError(f"release {hr.release_name} not found after rollback")
        return release

    async def uninstall(self, hr: HelmRelease) -> None:
        """Uninstall the release using `helm uninstall`."""
        args = [
            HELM_BIN,
            "uninstall",
            hr.release_name,
            "--namespace",
            hr.release_namespace,
        ]
        try:
            await command.run(command.Command(args, exc=HelmException))
        except HelmException as err:
            raise UninstallError(str(err)) from err

    async def dependency_update(self, chart_path: Path) -> None:
        """Run `helm dependency update` in the chart directory."""
        args = [HELM_BIN, "dependency", "update", str(chart_path)]
        try:
            await command.run(command.Command(args, exc=HelmException))
        except HelmException as err:
            raise DependencyUpdateError(str(err)) from err


def decode_template(data: str) -> str:
    """Decode the base64 content of a chart template, for diff output."""
    try:
        return base64.b64decode(data).decode("utf-8")
    except ValueError:
        return data
