"""Store module holding HelmRelease resources and their status."""

from abc import ABC, abstractmethod
from collections.abc import Callable
from enum import Enum

from helm_sync.manifest import BaseManifest, HelmRelease, NamedResource
from helm_sync.values import ClusterConfig

from .status import Condition, ConditionStatus, ConditionType, HelmReleaseStatus, Reason


class StoreEvent(str, Enum):
    """Enum for store events."""

    OBJECT_ADDED = "object_added"
    OBJECT_DELETED = "object_deleted"


class StatusReporter(ABC):
    """Persists the outcome of reconciliation on a HelmRelease status.

    All updates are independent and idempotent, the last write wins.
    """

    @abstractmethod
    def set_condition(self, resource_id: NamedResource, condition: Condition) -> None:
        """Set a single condition, leaving other conditions untouched."""

    @abstractmethod
    def set_observed_generation(
        self, resource_id: NamedResource, generation: int
    ) -> None:
        """Record the generation of the spec that was last reconciled."""

    @abstractmethod
    def set_release_revision(self, resource_id: NamedResource, revision: str) -> None:
        """Record the chart revision of the last successful release."""

    @abstractmethod
    def set_values_checksum(self, resource_id: NamedResource, checksum: str) -> None:
        """Record the checksum of the values of the last release attempt."""

    @abstractmethod
    def get_status(self, resource_id: NamedResource) -> HelmReleaseStatus | None:
        """Retrieve the status of a resource."""

    def update_condition(
        self,
        resource_id: NamedResource,
        condition_type: ConditionType,
        status: ConditionStatus,
        reason: Reason,
        message: str,
    ) -> None:
        """Build and set a condition."""
        self.set_condition(
            resource_id,
            Condition(type=condition_type, status=status, reason=reason, message=message),
        )


class Store(StatusReporter):
    """Central store of desired-state resources, their values sources and status."""

    @abstractmethod
    def add_object(self, obj: BaseManifest) -> None:
        """Add or replace a HelmRelease, ConfigMap or Secret."""

    @abstractmethod
    def delete_object(self, resource_id: NamedResource) -> BaseManifest | None:
        """Remove an object, returning it if it existed."""

    @abstractmethod
    def get_helm_release(self, resource_id: NamedResource) -> HelmRelease | None:
        """Retrieve the current version of a HelmRelease."""

    @abstractmethod
    def list_helm_releases(self) -> list[HelmRelease]:
        """List all HelmRelease resources."""

    @abstractmethod
    def cluster_config(self) -> ClusterConfig:
        """Return the ConfigMaps and Secrets available as values sources."""

    @abstractmethod
    def add_listener(
        self,
        event: StoreEvent,
        callback: Callable[[NamedResource, BaseManifest], None],
    ) -> Callable[[], None]:
        """Register a callback for a store event.

        Returns a callable that can be called to remove the listener.
        """
