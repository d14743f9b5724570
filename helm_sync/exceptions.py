"""Exceptions related to helm-sync."""

__all__ = [
    "HelmSyncException",
    "InputException",
    "CommandException",
    "HelmException",
    "SourceResolutionError",
    "FetchError",
    "GitError",
    "DependencyUpdateError",
    "ReleaseActionError",
    "InstallError",
    "UpgradeError",
    "RollbackError",
    "UninstallError",
    "SpecDivergedError",
    "OwnershipConflictError",
    "InvalidValuesReference",
]


class HelmSyncException(Exception):
    """Generic base exception used for this library."""


class InputException(HelmSyncException):
    """Raised when the input files or values are not formatted as expected."""


class CommandException(HelmSyncException):
    """Raised when there is a failure running a subcommand."""


class HelmException(CommandException):
    """Raised when there is a failure running a helm command."""


class SourceResolutionError(HelmSyncException):
    """Raised when a chart source or package is unavailable."""


class FetchError(SourceResolutionError):
    """Raised when a chart package could not be downloaded from its repository."""


class GitError(SourceResolutionError):
    """Raised when a git mirror could not be cloned, fetched or exported."""


class DependencyUpdateError(HelmSyncException):
    """Raised when updating the dependencies of a chart failed."""


class ReleaseActionError(HelmSyncException):
    """Raised when a release action failed after the values were resolved."""

    def __init__(self, message: str, checksum: str | None = None) -> None:
        super().__init__(message)
        self.checksum = checksum


class InstallError(ReleaseActionError):
    """Raised when installing a release failed."""


class UpgradeError(ReleaseActionError):
    """Raised when upgrading a release failed."""


class RollbackError(HelmSyncException):
    """Raised when rolling back a release failed."""


class UninstallError(HelmSyncException):
    """Raised when uninstalling a release failed."""


class SpecDivergedError(HelmSyncException):
    """Raised when a HelmRelease changed between deciding and applying an upgrade."""

    def __init__(self, resource_id: str) -> None:
        super().__init__(
            f"HelmRelease {resource_id} spec has diverged since the upgrade was planned"
        )
        self.resource_id = resource_id


class OwnershipConflictError(HelmSyncException):
    """Raised when a release is managed by a different HelmRelease."""

    def __init__(self, release_name: str, resource_id: str) -> None:
        super().__init__(
            f"release '{release_name}' does not belong to HelmRelease {resource_id}"
        )
        self.release_name = release_name
        self.resource_id = resource_id


class InvalidValuesReference(HelmSyncException):
    """Raised for a valuesFrom reference that can't be resolved."""
