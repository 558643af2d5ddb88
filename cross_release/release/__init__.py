"""Release module.

This module handles:
- The publish gate
- The release host client
- Publishing packaged artifacts under a tag
"""

from cross_release.release.gate import leg_may_publish, may_publish

__all__ = ["leg_may_publish", "may_publish"]
