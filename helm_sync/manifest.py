"""Representation of the desired-state resources read by the controller.

A `HelmRelease` declares which chart should be deployed, where the chart comes
from (a git repository or a Helm chart repository) and which values to use.
`ConfigMap` and `Secret` objects are modeled as well since a `HelmRelease`
may reference them as values sources.
"""

import base64
from dataclasses import dataclass, field
import logging
from typing import Any, ClassVar

from mashumaro import DataClassDictMixin, field_options
from mashumaro.codecs.yaml import yaml_encode
from mashumaro.config import BaseConfig

from .exceptions import InputException

__all__ = [
    "NamedResource",
    "HelmRelease",
    "HelmReleaseSpec",
    "GitChartSource",
    "RepoChartSource",
    "ValuesReference",
    "Rollback",
    "ConfigMap",
    "Secret",
    "parse_doc",
]

_LOGGER = logging.getLogger(__name__)


# Match a prefix of apiVersion to ensure we have the right type of object.
# We don't check specific versions for forward compatibility on upgrade.
HELM_RELEASE_DOMAIN = "helm.fluxcd.io"
HELM_RELEASE = "HelmRelease"
SECRET_KIND = "Secret"
CONFIG_MAP_KIND = "ConfigMap"
CHART_FILE_KIND = "ChartFile"
EXTERNAL_SOURCE_KIND = "ExternalSource"
DEFAULT_NAMESPACE = "default"
DEFAULT_GIT_REF = "master"
DEFAULT_VALUES_KEY = "values.yaml"

# Label written on a release to record which HelmRelease manages it
ANTECEDENT_LABEL = "helm.fluxcd.io/antecedent"


def _check_version(doc: dict[str, Any], version: str) -> None:
    """Assert that the resource has the specified version."""
    if not (api_version := doc.get("apiVersion")):
        raise InputException(f"Invalid object missing apiVersion: {doc}")
    if not api_version.startswith(version):
        raise InputException(f"Invalid object expected '{version}': {doc}")


def _metadata(cls: type, doc: dict[str, Any]) -> tuple[dict[str, Any], str]:
    if not (metadata := doc.get("metadata")):
        raise InputException(f"Invalid {cls} missing metadata: {doc}")
    if not (name := metadata.get("name")):
        raise InputException(f"Invalid {cls} missing metadata.name: {doc}")
    return metadata, name


@dataclass
class BaseManifest(DataClassDictMixin):
    """Base class for all manifest objects."""

    def yaml(self) -> str:
        """Return a YAML string representation of the object."""
        return yaml_encode(self, self.__class__)  # type: ignore[return-value]

    class Config(BaseConfig):
        omit_none = True


@dataclass(frozen=True, order=True)
class NamedResource:
    """Identifier for a kubernetes resource."""

    kind: str
    namespace: str | None
    name: str

    @property
    def namespaced_name(self) -> str:
        if self.namespace:
            return f"{self.namespace}/{self.name}"
        return self.name

    def __str__(self) -> str:
        """Return the kind and namespaced name concatenated as an id."""
        return f"{self.kind}/{self.namespaced_name}"


@dataclass
class GitChartSource(BaseManifest):
    """A chart stored at a path inside a git repository."""

    git: str
    """The URL of the git repository."""

    path: str
    """The path of the chart relative to the repository root."""

    ref: str = DEFAULT_GIT_REF
    """The branch, tag or commit to follow."""

    skip_dep_update: bool = field(
        metadata=field_options(alias="skipDepUpdate"), default=False
    )
    """Don't run `helm dependency update` before installing the chart."""

    @classmethod
    def parse_doc(cls, doc: dict[str, Any]) -> "GitChartSource":
        """Parse a GitChartSource from the HelmRelease spec.chart."""
        if not (path := doc.get("path")):
            raise InputException(f"Invalid {cls} missing spec.chart.path: {doc}")
        return cls(
            git=doc["git"],
            path=path,
            ref=doc.get("ref") or DEFAULT_GIT_REF,
            skip_dep_update=bool(doc.get("skipDepUpdate", False)),
        )


@dataclass
class RepoChartSource(BaseManifest):
    """A packaged chart in a Helm chart repository."""

    repository: str
    """The URL of the chart repository."""

    name: str
    """The name of the chart in the repository."""

    version: str
    """The chart version."""

    @classmethod
    def parse_doc(cls, doc: dict[str, Any]) -> "RepoChartSource":
        """Parse a RepoChartSource from the HelmRelease spec.chart."""
        for key in ("repository", "name", "version"):
            if not doc.get(key):
                raise InputException(f"Invalid {cls} missing spec.chart.{key}: {doc}")
        return cls(
            repository=doc["repository"],
            name=doc["name"],
            version=str(doc["version"]),
        )

    @property
    def cache_key(self) -> tuple[str, str, str]:
        """Identity of the packaged chart, used to cache downloads."""
        return (self.repository.rstrip("/"), self.name, self.version)


@dataclass
class ValuesReference(BaseManifest):
    """A reference to a source of values for a HelmRelease."""

    kind: str
    """One of ConfigMap, Secret, ChartFile or ExternalSource."""

    name: str | None = None
    """Name of the ConfigMap or Secret."""

    namespace: str | None = None
    """Namespace of the ConfigMap or Secret, defaults to the HelmRelease namespace."""

    key: str = DEFAULT_VALUES_KEY
    """The key in the ConfigMap or Secret that holds the values."""

    path: str | None = None
    """Path of a values file relative to the chart."""

    url: str | None = None
    """URL of an external values file."""

    optional: bool = False
    """Whether the reference may be missing."""

    @classmethod
    def parse_doc(cls, doc: dict[str, Any]) -> "ValuesReference":
        """Parse a single spec.valuesFrom entry."""
        if ref := doc.get("configMapKeyRef"):
            kind = CONFIG_MAP_KIND
        elif ref := doc.get("secretKeyRef"):
            kind = SECRET_KIND
        elif ref := doc.get("chartFileRef"):
            kind = CHART_FILE_KIND
        elif ref := doc.get("externalSourceRef"):
            kind = EXTERNAL_SOURCE_KIND
        else:
            raise InputException(f"Invalid valuesFrom entry: {doc}")
        if kind in (CONFIG_MAP_KIND, SECRET_KIND) and not ref.get("name"):
            raise InputException(f"Invalid valuesFrom {kind} missing name: {doc}")
        if kind == CHART_FILE_KIND and not ref.get("path"):
            raise InputException(f"Invalid valuesFrom chartFileRef missing path: {doc}")
        if kind == EXTERNAL_SOURCE_KIND and not ref.get("url"):
            raise InputException(
                f"Invalid valuesFrom externalSourceRef missing url: {doc}"
            )
        return cls(
            kind=kind,
            name=ref.get("name"),
            namespace=ref.get("namespace"),
            key=ref.get("key") or DEFAULT_VALUES_KEY,
            path=ref.get("path"),
            url=ref.get("url"),
            optional=bool(ref.get("optional", False)),
        )


@dataclass
class Rollback(BaseManifest):
    """Rollback policy applied when an upgrade fails."""

    enable: bool = False


@dataclass
class HelmReleaseSpec(BaseManifest):
    """The desired state declared by a HelmRelease."""

    git_chart_source: GitChartSource | None = None
    repo_chart_source: RepoChartSource | None = None
    release_name: str | None = None
    target_namespace: str | None = None
    values: dict[str, Any] | None = None
    values_from: list[ValuesReference] | None = None
    rollback: Rollback = field(default_factory=Rollback)

    @classmethod
    def parse_doc(cls, doc: dict[str, Any]) -> "HelmReleaseSpec":
        """Parse the spec of a HelmRelease."""
        if not (chart := doc.get("chart")):
            raise InputException(f"Invalid {cls} missing spec.chart: {doc}")
        git_chart_source: GitChartSource | None = None
        repo_chart_source: RepoChartSource | None = None
        if chart.get("git") and chart.get("repository"):
            raise InputException(
                f"Invalid {cls} spec.chart has both git and repository: {doc}"
            )
        if chart.get("git"):
            git_chart_source = GitChartSource.parse_doc(chart)
        elif chart.get("repository"):
            repo_chart_source = RepoChartSource.parse_doc(chart)
        else:
            raise InputException(
                f"Invalid {cls} spec.chart needs one of git or repository: {doc}"
            )
        values_from: list[ValuesReference] | None = None
        if values_from_list := doc.get("valuesFrom"):
            values_from = [ValuesReference.parse_doc(ref) for ref in values_from_list]
        return cls(
            git_chart_source=git_chart_source,
            repo_chart_source=repo_chart_source,
            release_name=doc.get("releaseName"),
            target_namespace=doc.get("targetNamespace"),
            values=doc.get("values"),
            values_from=values_from,
            rollback=Rollback(enable=bool((doc.get("rollback") or {}).get("enable"))),
        )


@dataclass
class HelmRelease(BaseManifest):
    """A representation of a HelmRelease resource."""

    kind: ClassVar[str] = HELM_RELEASE
    """The kind of the object."""

    name: str
    """The name of the HelmRelease."""

    namespace: str
    """The namespace that owns the HelmRelease."""

    spec: HelmReleaseSpec
    """The desired release."""

    uid: str = ""
    """Unique id assigned by the API server."""

    generation: int = 0
    """Incremented by the API server on every change to the spec."""

    @classmethod
    def parse_doc(cls, doc: dict[str, Any]) -> "HelmRelease":
        """Parse a HelmRelease from a kubernetes resource object."""
        _check_version(doc, HELM_RELEASE_DOMAIN)
        metadata, name = _metadata(cls, doc)
        namespace = metadata.get("namespace") or DEFAULT_NAMESPACE
        if not (spec := doc.get("spec")):
            raise InputException(f"Invalid {cls} missing spec: {doc}")
        return cls(
            name=name,
            namespace=namespace,
            spec=HelmReleaseSpec.parse_doc(spec),
            uid=metadata.get("uid") or "",
            generation=int(metadata.get("generation") or 0),
        )

    @property
    def release_name(self) -> str:
        """Name of the Helm release managed by this resource."""
        if self.spec.release_name:
            return self.spec.release_name
        return f"{self.namespace}-{self.name}"

    @property
    def release_namespace(self) -> str:
        """Actual namespace where the release will be installed to."""
        if self.spec.target_namespace:
            return self.spec.target_namespace
        return self.namespace

    @property
    def resource_id(self) -> str:
        """Identity of the resource, used to mark release ownership."""
        return f"{self.namespace}:{HELM_RELEASE.lower()}/{self.name}"

    @property
    def named_resource(self) -> NamedResource:
        """Key of the resource in the store."""
        return NamedResource(HELM_RELEASE, self.namespace, self.name)

    @property
    def namespaced_name(self) -> str:
        """Return the namespace and name concatenated as an id."""
        return f"{self.namespace}/{self.name}"


@dataclass
class ConfigMap(BaseManifest):
    """A ConfigMap is an API object used to store data in key-value pairs."""

    kind: ClassVar[str] = CONFIG_MAP_KIND
    """The kind of the ConfigMap."""

    name: str
    """The name of the ConfigMap."""

    namespace: str | None = None
    """The namespace of the ConfigMap."""

    data: dict[str, Any] | None = None
    """The data in the ConfigMap."""

    binary_data: dict[str, Any] | None = None
    """The binary data in the ConfigMap."""

    @classmethod
    def parse_doc(cls, doc: dict[str, Any]) -> "ConfigMap":
        """Parse a config map object from a kubernetes resource."""
        _check_version(doc, "v1")
        metadata, name = _metadata(cls, doc)
        return ConfigMap(
            name=name,
            namespace=metadata.get("namespace"),
            data=doc.get("data"),
            binary_data=doc.get("binaryData"),
        )

    def get(self, key: str) -> str | None:
        """Return the decoded value stored under a key."""
        if self.data and key in self.data:
            return str(self.data[key])
        if self.binary_data and key in self.binary_data:
            return base64.b64decode(self.binary_data[key]).decode("utf-8")
        return None


@dataclass
class Secret(BaseManifest):
    """A Secret contains a small amount of sensitive data."""

    kind: ClassVar[str] = SECRET_KIND
    """The kind of the Secret."""

    name: str
    """The name of the Secret."""

    namespace: str | None = None
    """The namespace of the Secret."""

    data: dict[str, Any] | None = None
    """The base64 encoded data in the Secret."""

    string_data: dict[str, Any] | None = None
    """The plain text data in the Secret."""

    @classmethod
    def parse_doc(cls, doc: dict[str, Any]) -> "Secret":
        """Parse a secret object from a kubernetes resource."""
        _check_version(doc, "v1")
        metadata, name = _metadata(cls, doc)
        return Secret(
            name=name,
            namespace=metadata.get("namespace"),
            data=doc.get("data"),
            string_data=doc.get("stringData"),
        )

    def get(self, key: str) -> str | None:
        """Return the decoded value stored under a key."""
        if self.string_data and key in self.string_data:
            return str(self.string_data[key])
        if self.data and key in self.data:
            return base64.b64decode(self.data[key]).decode("utf-8")
        return None


_PARSERS: dict[str, Any] = {
    HELM_RELEASE: HelmRelease,
    CONFIG_MAP_KIND: ConfigMap,
    SECRET_KIND: Secret,
}


def parse_doc(doc: dict[str, Any]) -> BaseManifest | None:
    """Parse a kubernetes object into a manifest, or None for unknown kinds."""
    if not (parser := _PARSERS.get(doc.get("kind", ""))):
        _LOGGER.debug("Ignoring object of kind %s", doc.get("kind"))
        return None
    return parser.parse_doc(doc)  # type: ignore[no-any-return]
