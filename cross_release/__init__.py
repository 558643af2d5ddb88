"""cross-release - build once per target, package, and publish tagged releases.

This package expands a static target matrix into independent build legs,
packages every compiled artifact under a deterministic name, and uploads
the archives to a release host when the run is a stable-channel tag build.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
