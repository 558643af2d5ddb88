"""Run context construction.

A RunContext describes the event that triggered a run. It is built once,
before any leg starts, and is read-only afterwards.

Supported CI environments:
- Travis CI (TRAVIS_EVENT_TYPE, TRAVIS_TAG, TRAVIS_BRANCH, TRAVIS_RUST_VERSION)
- GitHub Actions (GITHUB_EVENT_NAME, GITHUB_REF)
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Mapping

from pydantic import BaseModel, ConfigDict, Field, model_validator

from cross_release.types import EventKind, ToolchainChannel


class ContextError(Exception):
    """Raised when a run context cannot be built from its inputs."""

    def __init__(self, message: str, code: str = "context_invalid") -> None:
        super().__init__(message)
        self.code = code


class RunContext(BaseModel):
    """Process-wide description of one orchestration run.

    Attributes:
        event_kind: Kind of triggering event.
        ref: Branch or tag name.
        channel: Toolchain channel under test.
        crate_name: Name of the project being released.
        version_tag: Release tag (tag pushes only; defaults to ref).
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    event_kind: EventKind
    ref: str = Field(min_length=1)
    channel: ToolchainChannel = ToolchainChannel.STABLE
    crate_name: str = Field(min_length=1)
    version_tag: str | None = None

    @model_validator(mode="before")
    @classmethod
    def default_version_tag(cls, data: object) -> object:
        """Use the ref as version tag for tag pushes."""
        if isinstance(data, dict):
            kind = data.get("event_kind")
            if kind in (EventKind.PUSH_TAG, EventKind.PUSH_TAG.value) and not data.get(
                "version_tag"
            ):
                data = {**data, "version_tag": data.get("ref")}
        return data

    @model_validator(mode="after")
    def check_version_tag(self) -> RunContext:
        """A version tag exists exactly when the run is a tag push."""
        if self.event_kind is EventKind.PUSH_TAG and not self.version_tag:
            raise ValueError("version_tag is required for tag pushes")
        if self.event_kind is not EventKind.PUSH_TAG and self.version_tag:
            raise ValueError("version_tag is only allowed for tag pushes")
        return self

    @property
    def artifact_label(self) -> str:
        """Version component of artifact names for this run."""
        if self.version_tag:
            return self.version_tag
        return self.ref.replace("/", "-")


def parse_channel(value: str) -> ToolchainChannel:
    """Map a toolchain version string onto a channel.

    Args:
        value: Value such as 'stable', 'nightly' or 'nightly-2017-04-01'.

    Returns:
        ToolchainChannel.

    Raises:
        ContextError: For unknown channels (e.g. 'beta').
    """
    normalized = value.strip().lower()
    if normalized == "stable":
        return ToolchainChannel.STABLE
    if normalized.startswith("nightly"):
        return ToolchainChannel.NIGHTLY
    raise ContextError(f"Unsupported toolchain channel: {value}")


def _from_travis(environ: Mapping[str, str]) -> tuple[EventKind, str]:
    tag = environ.get("TRAVIS_TAG", "")
    if environ.get("TRAVIS_EVENT_TYPE") == "pull_request":
        return EventKind.PULL_REQUEST, environ.get("TRAVIS_BRANCH", "")
    if tag:
        return EventKind.PUSH_TAG, tag
    return EventKind.PUSH_BRANCH, environ.get("TRAVIS_BRANCH", "")


def _from_github(environ: Mapping[str, str]) -> tuple[EventKind, str]:
    ref = environ.get("GITHUB_REF", "")
    if environ.get("GITHUB_EVENT_NAME", "").startswith("pull_request"):
        return EventKind.PULL_REQUEST, environ.get("GITHUB_HEAD_REF") or ref
    if ref.startswith("refs/tags/"):
        return EventKind.PUSH_TAG, ref.removeprefix("refs/tags/")
    return EventKind.PUSH_BRANCH, ref.removeprefix("refs/heads/")


def context_from_env(
    environ: Mapping[str, str],
    crate_name: str | None = None,
    channel: ToolchainChannel | None = None,
) -> RunContext:
    """Build a RunContext from CI environment variables.

    Args:
        environ: Environment mapping (usually os.environ).
        crate_name: Overrides CRATE_NAME.
        channel: Overrides TRAVIS_RUST_VERSION / RUST_CHANNEL.

    Returns:
        RunContext for the triggering event.

    Raises:
        ContextError: If the environment does not describe a CI event.
    """
    if "TRAVIS_EVENT_TYPE" in environ or "TRAVIS_BRANCH" in environ:
        event_kind, ref = _from_travis(environ)
    elif "GITHUB_REF" in environ:
        event_kind, ref = _from_github(environ)
    else:
        raise ContextError("No CI event found in environment", code="context_missing")

    if channel is None:
        raw_channel = (
            environ.get("TRAVIS_RUST_VERSION") or environ.get("RUST_CHANNEL") or "stable"
        )
        channel = parse_channel(raw_channel)

    crate_name = crate_name or environ.get("CRATE_NAME")
    if not crate_name:
        raise ContextError("CRATE_NAME is not set", code="context_missing")
    if not ref:
        raise ContextError("Triggering ref is empty", code="context_missing")

    return RunContext(
        event_kind=event_kind,
        ref=ref,
        channel=channel,
        crate_name=crate_name,
    )


def is_tracked_ref(ctx: RunContext, patterns: Iterable[str]) -> bool:
    """Decide whether a run's ref is on the build whitelist.

    Pull requests always build; push events build only when the ref
    fully matches one of the patterns. An empty pattern list tracks all refs.

    Args:
        ctx: Run context.
        patterns: Regex patterns (full match).

    Returns:
        True if the run should build.
    """
    if ctx.event_kind is EventKind.PULL_REQUEST:
        return True
    compiled = [re.compile(p) for p in patterns]
    if not compiled:
        return True
    return any(p.fullmatch(ctx.ref) for p in compiled)


__all__ = [
    "ContextError",
    "RunContext",
    "context_from_env",
    "is_tracked_ref",
    "parse_channel",
]
