"""Status information persisted for a HelmRelease."""

from dataclasses import dataclass, field
import datetime
from enum import StrEnum


class ConditionType(StrEnum):
    """Condition types reported on a HelmRelease."""

    CHART_FETCHED = "ChartFetched"
    RELEASED = "Released"
    ROLLED_BACK = "RolledBack"


class ConditionStatus(StrEnum):
    """Status of a condition."""

    TRUE = "True"
    FALSE = "False"


class Reason(StrEnum):
    """Machine readable reasons for a condition change."""

    DOWNLOAD_FAILED = "RepoFetchFailed"
    DOWNLOADED = "RepoChartInCache"
    INSTALL_FAILED = "HelmInstallFailed"
    DEPENDENCY_FAILED = "UpdateDependencyFailed"
    UPGRADE_FAILED = "HelmUpgradeFailed"
    ROLLBACK_FAILED = "HelmRollbackFailed"
    SUCCESS = "HelmSuccess"


def _now() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc).replace(microsecond=0)


@dataclass
class Condition:
    """An observation of one aspect of the state of a HelmRelease."""

    type: ConditionType
    status: ConditionStatus
    reason: Reason
    message: str
    last_update_time: datetime.datetime = field(default_factory=_now)
    last_transition_time: datetime.datetime = field(default_factory=_now)

    def __str__(self) -> str:
        return f"{self.type}={self.status} ({self.reason}): {self.message}"


@dataclass
class HelmReleaseStatus:
    """The status subresource of a HelmRelease."""

    conditions: dict[ConditionType, Condition] = field(default_factory=dict)
    observed_generation: int | None = None
    release_revision: str | None = None
    values_checksum: str | None = None

    def condition(self, condition_type: ConditionType) -> Condition | None:
        """Return the condition of the given type, if it was ever set."""
        return self.conditions.get(condition_type)

    def set_condition(self, condition: Condition) -> None:
        """Set a condition, keeping the transition time if the status is unchanged."""
        if (existing := self.conditions.get(condition.type)) is not None:
            if existing.status == condition.status:
                condition.last_transition_time = existing.last_transition_time
        self.conditions[condition.type] = condition

    def as_dict(self) -> dict[str, object]:
        """Return the status in the shape it is written to the API server."""
        result: dict[str, object] = {
            "conditions": [
                {
                    "type": str(c.type),
                    "status": str(c.status),
                    "reason": str(c.reason),
                    "message": c.message,
                    "lastUpdateTime": c.last_update_time.isoformat(),
                    "lastTransitionTime": c.last_transition_time.isoformat(),
                }
                for c in self.conditions.values()
            ],
        }
        if self.observed_generation is not None:
            result["observedGeneration"] = self.observed_generation
        if self.release_revision is not None:
            result["revision"] = self.release_revision
        if self.values_checksum is not None:
            result["valuesChecksum"] = self.values_checksum
        return result
