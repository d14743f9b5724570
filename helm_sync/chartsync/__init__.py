"""Chart sources for HelmReleases.

This package resolves the chart of a HelmRelease to a local path, either from
an export of a mirrored git repository or from a package downloaded from a
Helm chart repository.
"""

from .cache import PackageCache, helm_pull
from .mirror import Export, GitMirror
from .source import ChartSource, ChartSourceView, GitChartSourceSync, GitSyncConfig

__all__ = [
    "ChartSource",
    "ChartSourceView",
    "Export",
    "GitChartSourceSync",
    "GitMirror",
    "GitSyncConfig",
    "PackageCache",
    "helm_pull",
]
