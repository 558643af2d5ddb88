"""Target matrix module.

This module handles:
- The static table of matrix legs
- Registry invariant checks
- Pre-flight filtering by host class and channel
"""

from cross_release.targets.registry import (
    RegistryError,
    TargetSpec,
    all_targets,
    detect_host_class,
    targets_for_host,
)

__all__ = [
    "RegistryError",
    "TargetSpec",
    "all_targets",
    "detect_host_class",
    "targets_for_host",
]
