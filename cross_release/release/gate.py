"""Publish authorization.

Only stable-channel builds of a pushed tag are released. Branch pushes,
pull requests and nightly builds always build but never upload.
"""

from cross_release.context import RunContext
from cross_release.targets.registry import TargetSpec
from cross_release.types import EventKind, ToolchainChannel


def may_publish(ctx: RunContext) -> bool:
    """Return True iff the run is a tag push built on the stable channel."""
    return ctx.event_kind is EventKind.PUSH_TAG and ctx.channel is ToolchainChannel.STABLE


def leg_may_publish(ctx: RunContext, spec: TargetSpec) -> bool:
    """Return True if the run may publish and the leg is not test-only."""
    return may_publish(ctx) and spec.publish_eligible


__all__ = ["leg_may_publish", "may_publish"]
