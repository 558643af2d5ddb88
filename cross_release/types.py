"""Shared type definitions for cross_release.

This module contains the enums shared across subpackages to avoid
circular imports.
"""

from enum import Enum


class HostClass(str, Enum):
    """Class of machine a leg must run on."""

    LINUX = "linux"
    DARWIN = "darwin"


class ToolchainChannel(str, Enum):
    """Toolchain stability track."""

    STABLE = "stable"
    NIGHTLY = "nightly"


class EventKind(str, Enum):
    """Kind of event that triggered a run."""

    PUSH_BRANCH = "push-branch"
    PUSH_TAG = "push-tag"
    PULL_REQUEST = "pull-request"


class BuildStatus(str, Enum):
    """Status of one toolchain invocation."""

    SUCCESS = "success"
    FAILURE = "failure"


class PublishStatus(str, Enum):
    """Status of one release upload."""

    NOT_ATTEMPTED = "not_attempted"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class RunStatus(str, Enum):
    """Aggregate status of a run."""

    SUCCESS = "success"
    FAILURE = "failure"


class RunState(str, Enum):
    """Lifecycle state of a run."""

    PENDING = "pending"
    EXPANDING = "expanding"
    RUNNING = "running"
    AGGREGATING = "aggregating"
    DONE = "done"


__all__ = [
    "BuildStatus",
    "EventKind",
    "HostClass",
    "PublishStatus",
    "RunState",
    "RunStatus",
    "ToolchainChannel",
]
