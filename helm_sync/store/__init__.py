"""
The store module holds HelmRelease resources, the ConfigMaps and Secrets they
read values from, and the status written back by the controller.

- Uses NamedResource as the key for all objects.
- `StatusReporter` is the narrow interface used to persist reconciliation
  outcomes; `Store` adds read access to the desired-state resources.

This abstract interface allows for various implementations (in-memory, API server, etc.).
"""

from .store import Store, StoreEvent, StatusReporter
from .in_memory import InMemoryStore
from .status import (
    Condition,
    ConditionStatus,
    ConditionType,
    HelmReleaseStatus,
    Reason,
)

__all__ = [
    "Store",
    "StoreEvent",
    "StatusReporter",
    "InMemoryStore",
    "Condition",
    "ConditionStatus",
    "ConditionType",
    "HelmReleaseStatus",
    "Reason",
]
