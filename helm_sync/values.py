"""Module for computing the effective values of a HelmRelease.

Values are merged from the `valuesFrom` sources in order and then the inline
`values` of the HelmRelease, the same way Helm merges multiple values files.
The merged result is serialized canonically so that its checksum only changes
when the content changes.
"""

from collections.abc import Callable, Iterable
import hashlib
import logging
from pathlib import Path
from typing import Any, TypeVar

import yaml

from .manifest import (
    CHART_FILE_KIND,
    CONFIG_MAP_KIND,
    SECRET_KIND,
    ConfigMap,
    Secret,
    ValuesReference,
)
from .exceptions import InvalidValuesReference

__all__ = [
    "ClusterConfig",
    "cluster_config",
    "Values",
    "resolve_values",
    "values_checksum",
]

_LOGGER = logging.getLogger(__name__)


_T = TypeVar("_T", bound=ConfigMap | Secret)


class ClusterConfig:
    """Interface for accessing all cluster configuration."""

    def __init__(
        self,
        secrets: Callable[[], Iterable[Secret]],
        config_maps: Callable[[], Iterable[ConfigMap]],
    ) -> None:
        """Initialize ClusterConfig."""
        self._secrets = secrets
        self._config_maps = config_maps

    @property
    def secrets(self) -> Iterable[Secret]:
        """Available Secret objects in the cluster."""
        return iter(self._secrets())

    @property
    def config_maps(self) -> Iterable[ConfigMap]:
        """Available ConfigMap objects in the cluster."""
        return iter(self._config_maps())


def cluster_config(
    secrets: list[Secret], config_maps: list[ConfigMap]
) -> ClusterConfig:
    """Create a ClusterConfig from a list of secrets and configmaps."""
    return ClusterConfig(
        lambda: secrets,
        lambda: config_maps,
    )


def _find_object(name: str, namespace: str, objects: Iterable[_T]) -> _T | None:
    """Find the object in the list of objects."""
    for obj in objects:
        if obj.name == name and obj.namespace == namespace:
            return obj
    return None


def _read_reference(
    ref: ValuesReference,
    namespace: str,
    chart_path: Path | None,
    config: ClusterConfig,
) -> str | None:
    """Return the raw YAML content of a values reference, or None if missing."""
    if ref.kind in (CONFIG_MAP_KIND, SECRET_KIND):
        ref_namespace = ref.namespace or namespace
        objects: Iterable[ConfigMap | Secret] = (
            config.config_maps if ref.kind == CONFIG_MAP_KIND else config.secrets
        )
        if (found := _find_object(ref.name or "", ref_namespace, objects)) is None:
            return None
        return found.get(ref.key)
    if ref.kind == CHART_FILE_KIND:
        if chart_path is None:
            return None
        file_path = (chart_path / (ref.path or "")).resolve()
        if not file_path.is_relative_to(chart_path.resolve()):
            raise InvalidValuesReference(
                f"chartFileRef {ref.path} points outside of the chart"
            )
        if not file_path.is_file():
            return None
        return file_path.read_text(encoding="utf-8")
    raise InvalidValuesReference(f"Unsupported valuesFrom kind {ref.kind}")


def _describe(ref: ValuesReference) -> str:
    if ref.kind == CHART_FILE_KIND:
        return f"chart file {ref.path}"
    return f"{ref.kind} {ref.name} key {ref.key}"


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Recursively merge two dictionaries, similar to how Helm merges values. Lists are replaced entirely (Helm behavior)."""
    result = base.copy()
    for key, override_value in override.items():
        base_value = result.get(key)
        if (
            base_value is not None
            and isinstance(base_value, dict)
            and isinstance(override_value, dict)
        ):
            result[key] = _deep_merge(base_value, override_value)
        else:
            result[key] = override_value
    return result


class Values:
    """The effective values used to render a chart."""

    def __init__(self, values: dict[str, Any]) -> None:
        """Initialize Values."""
        self._values = values

    @property
    def data(self) -> dict[str, Any]:
        """The merged values."""
        return self._values

    def yaml(self) -> str:
        """Serialize the values canonically, with sorted keys."""
        return yaml.safe_dump(self._values, sort_keys=True, default_flow_style=False)

    def checksum(self) -> str:
        """Return the checksum of the canonical serialization."""
        return values_checksum(self.yaml().encode("utf-8"))

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Values):
            return NotImplemented
        return self._values == other._values

    def __repr__(self) -> str:
        return f"Values({self._values!r})"


def values_checksum(content: bytes) -> str:
    """Return the hex encoded sha256 digest of serialized values."""
    return hashlib.sha256(content).hexdigest()


def resolve_values(
    config: ClusterConfig,
    namespace: str,
    chart_path: Path | None,
    values_from: list[ValuesReference] | None,
    inline_values: dict[str, Any] | None,
) -> Values:
    """Compute the effective values for a HelmRelease.

    Each `valuesFrom` source is parsed as YAML and merged in order, then the
    inline values are merged last. A missing optional source is skipped and a
    missing required source raises `InvalidValuesReference`.
    """
    values: dict[str, Any] = {}
    for ref in values_from or ():
        _LOGGER.debug("Expanding value reference %s", ref)
        try:
            content = _read_reference(ref, namespace, chart_path, config)
        except InvalidValuesReference:
            if ref.optional:
                _LOGGER.info("Skipping optional values source %s", _describe(ref))
                continue
            raise
        if content is None:
            if ref.optional:
                _LOGGER.debug("Optional values source %s not found", _describe(ref))
                continue
            raise InvalidValuesReference(
                f"Unable to find values source {_describe(ref)} in namespace {ref.namespace or namespace}"
            )
        try:
            obj = yaml.safe_load(content)
        except yaml.YAMLError as err:
            raise InvalidValuesReference(
                f"Values source {_describe(ref)} is not valid yaml: {err}"
            ) from err
        # Handle empty YAML file case
        if obj is None:
            obj = {}
        if not isinstance(obj, dict):
            raise InvalidValuesReference(
                f"Expected values source {_describe(ref)} to be a mapping, found {type(obj).__name__}"
            )
        values = _deep_merge(values, obj)

    if inline_values:
        values = _deep_merge(values, inline_values)
    return Values(values)
