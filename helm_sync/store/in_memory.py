"""Module for in memory object store."""

from collections import defaultdict
from collections.abc import Callable
import copy
import dataclasses
import logging
from typing import DefaultDict

from helm_sync.manifest import (
    BaseManifest,
    ConfigMap,
    HelmRelease,
    NamedResource,
    Secret,
)
from helm_sync.values import ClusterConfig

from .status import Condition, ConditionStatus, HelmReleaseStatus
from .store import Store, StoreEvent

_LOGGER = logging.getLogger(__name__)


class InMemoryStore(Store):
    """In-memory implementation of the Store interface.

    Stores HelmRelease, ConfigMap and Secret objects and the status of each
    HelmRelease keyed by NamedResource. Supports event listeners for objects
    being added or deleted.
    """

    def __init__(self) -> None:
        """Initialize the InMemoryStore."""
        self._objects: dict[NamedResource, BaseManifest] = {}
        self._status: DefaultDict[NamedResource, HelmReleaseStatus] = defaultdict(
            HelmReleaseStatus
        )
        self._listeners: DefaultDict[
            StoreEvent, list[Callable[[NamedResource, BaseManifest], None]]
        ] = defaultdict(list)

    def add_object(self, obj: BaseManifest) -> None:
        """Add a manifest object to the store."""
        if not hasattr(obj, "kind") or not hasattr(obj, "name"):
            raise ValueError("Object must have kind and name attributes")
        resource_id = NamedResource(obj.kind, getattr(obj, "namespace", None), obj.name)
        if (existing := self._objects.get(resource_id)) is not None:
            if dataclasses.asdict(existing) == dataclasses.asdict(obj):
                _LOGGER.debug(
                    "Object %s already exists in store, skipping", resource_id
                )
                return
            _LOGGER.debug("Updating existing object %s in store", resource_id)
        self._objects[resource_id] = obj
        self._fire_event(StoreEvent.OBJECT_ADDED, resource_id, obj)

    def delete_object(self, resource_id: NamedResource) -> BaseManifest | None:
        """Remove an object from the store."""
        if (obj := self._objects.pop(resource_id, None)) is None:
            return None
        self._status.pop(resource_id, None)
        self._fire_event(StoreEvent.OBJECT_DELETED, resource_id, obj)
        return obj

    def get_helm_release(self, resource_id: NamedResource) -> HelmRelease | None:
        """Retrieve a copy of the current version of a HelmRelease."""
        obj = self._objects.get(resource_id)
        if obj is None:
            return None
        if not isinstance(obj, HelmRelease):
            raise ValueError(
                f"Object {resource_id.namespaced_name} is not of type HelmRelease (was {obj.__class__.__name__})"
            )
        return copy.deepcopy(obj)

    def list_helm_releases(self) -> list[HelmRelease]:
        """List all HelmRelease resources."""
        return [
            copy.deepcopy(obj)
            for obj in self._objects.values()
            if isinstance(obj, HelmRelease)
        ]

    def cluster_config(self) -> ClusterConfig:
        """Return a live view of the ConfigMaps and Secrets in the store."""
        return ClusterConfig(
            lambda: [obj for obj in self._objects.values() if isinstance(obj, Secret)],
            lambda: [
                obj for obj in self._objects.values() if isinstance(obj, ConfigMap)
            ],
        )

    def set_condition(self, resource_id: NamedResource, condition: Condition) -> None:
        """Set a single condition on the status of a resource."""
        if condition.status == ConditionStatus.FALSE:
            _LOGGER.warning("Resource %s condition %s", resource_id, condition)
        else:
            _LOGGER.debug("Resource %s condition %s", resource_id, condition)
        self._status[resource_id].set_condition(condition)

    def set_observed_generation(
        self, resource_id: NamedResource, generation: int
    ) -> None:
        """Record the generation of the spec that was last reconciled."""
        self._status[resource_id].observed_generation = generation

    def set_release_revision(self, resource_id: NamedResource, revision: str) -> None:
        """Record the chart revision of the last successful release."""
        self._status[resource_id].release_revision = revision

    def set_values_checksum(self, resource_id: NamedResource, checksum: str) -> None:
        """Record the checksum of the values of the last release attempt."""
        self._status[resource_id].values_checksum = checksum

    def get_status(self, resource_id: NamedResource) -> HelmReleaseStatus | None:
        """Retrieve the status of a resource."""
        return self._status.get(resource_id)

    def add_listener(
        self,
        event: StoreEvent,
        callback: Callable[[NamedResource, BaseManifest], None],
    ) -> Callable[[], None]:
        """Register a callback for a specific event."""

        def remove() -> None:
            if callback in self._listeners[event]:
                self._listeners[event].remove(callback)

        self._listeners[event].append(callback)
        return remove

    def _fire_event(
        self, event: StoreEvent, resource_id: NamedResource, obj: BaseManifest
    ) -> None:
        for callback in list(self._listeners[event]):
            callback(resource_id, obj)
