"""Build orchestration module.

This module handles:
- Running the toolchain for one leg
- Dependency cache keys, restore and persist
- Packaging compiled binaries under deterministic names
"""

from cross_release.builds.models import CacheEntry

__all__ = ["CacheEntry"]

# Submodules are imported directly: cross_release.builds.runner, etc.
