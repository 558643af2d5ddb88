"""Shared fixtures: an in-memory release host and a fake toolchain."""

from datetime import datetime, timezone
from pathlib import Path

import pytest

from cross_release.builds.runner import BuildResult, raw_artifact_path
from cross_release.release.host import PublishTransportFailure, UploadOutcome
from cross_release.types import BuildStatus


class FakeReleaseHost:
    """Release host keeping assets in a dict keyed by (tag, file name)."""

    def __init__(self, failure: PublishTransportFailure | None = None) -> None:
        self.assets: dict[tuple[str, str], bytes] = {}
        self.failure = failure
        self.calls = 0

    def upload(self, tag, file_name, content, credential):
        self.calls += 1
        if self.failure:
            raise self.failure
        if (tag, file_name) in self.assets:
            return UploadOutcome.ALREADY_EXISTS
        self.assets[(tag, file_name)] = content
        return UploadOutcome.CREATED


def make_fake_build(failing: set[str] | None = None, calls: list | None = None):
    """Return a build() replacement that fails for the given leg ids.

    Successful publishable legs write a binary where the toolchain would,
    and every successful leg fills its dependency directory.
    """
    failing = failing or set()

    def fake_build(
        spec, ctx, project_dir, leg_dir, toolchain=None, timeout=None, env_override=None
    ):
        if calls is not None:
            calls.append((spec.leg_id, toolchain, env_override))
        leg_dir.mkdir(parents=True, exist_ok=True)
        now = datetime.now(timezone.utc)
        ok = spec.leg_id not in failing
        raw = None
        if spec.publish_eligible:
            raw = raw_artifact_path(project_dir, spec, ctx.crate_name)
            if ok:
                raw.parent.mkdir(parents=True, exist_ok=True)
                raw.write_bytes(f"binary for {spec.triple}".encode())
        if ok and env_override:
            deps = Path(env_override["CARGO_HOME"])
            deps.mkdir(parents=True, exist_ok=True)
            (deps / "registry.json").write_text("{}")
        return BuildResult(
            target=spec,
            status=BuildStatus.SUCCESS if ok else BuildStatus.FAILURE,
            raw_artifact=raw,
            log_path=leg_dir / "build.log",
            exit_code=0 if ok else 101,
            command=f"{toolchain} build",
            started_at=now,
            finished_at=now,
            error_code=None if ok else "build_failed",
            error_message=None if ok else "Build failed with exit code 101",
        )

    return fake_build


@pytest.fixture
def fake_host():
    """Factory for FakeReleaseHost instances."""
    return FakeReleaseHost


@pytest.fixture
def fake_build():
    """Factory for fake build functions."""
    return make_fake_build
