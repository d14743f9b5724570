"""Helm controller package.

This package contains the implementation of the HelmRelease controller,
which reconciles the releases in the cluster with HelmRelease resources.
"""

from .controller import HelmReleaseController, HelmControllerConfig

__all__ = ["HelmReleaseController", "HelmControllerConfig"]
