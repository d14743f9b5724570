"""
helm-sync keeps Helm releases in a cluster in sync with `HelmRelease` resources.
"""

__all__ = [
    "manifest",
    "values",
    "release",
    "diff",
    "command",
    "chartsync",
    "helm_controller",
    "scheduler",
    "store",
    "task",
    "exceptions",
    # Note this is exposed for CLI documentation, not to be used as a library
    "tool",
]
