"""Build runner for executing toolchain commands.

This module handles:
- Composing the toolchain command for one matrix leg
- Executing builds with subprocess
- Capturing stdout/stderr to per-leg log files
- Enforcing build timeouts

A failed or timed-out build is reported through BuildResult and never
raised, so one leg cannot abort its siblings.
"""

from __future__ import annotations

import logging
import os
import shlex
import subprocess
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

from cross_release.context import RunContext
from cross_release.targets.registry import TargetSpec
from cross_release.types import BuildStatus, HostClass

logger = logging.getLogger(__name__)

# Toolchain used per host class when none is configured
DEFAULT_TOOLCHAINS = {
    HostClass.LINUX: "cross",
    HostClass.DARWIN: "cargo",
}


@dataclass(frozen=True)
class BuildResult:
    """Result of one leg's toolchain invocation.

    Attributes:
        target: Leg that was built.
        status: Success or failure.
        raw_artifact: Expected location of the compiled binary (None for
            test-only legs).
        log_path: Path to the build log file.
        exit_code: Process exit code (-1 on timeout, None if never started).
        command: The command that was executed.
        started_at: Build start time.
        finished_at: Build finish time.
        error_code: Failure category (build_failed, build_timeout,
            execution_error).
        error_message: Error message if build failed.
        cancelled: Whether the build was cut short.
    """

    target: TargetSpec
    status: BuildStatus
    raw_artifact: Path | None
    log_path: Path
    exit_code: int | None
    command: str
    started_at: datetime
    finished_at: datetime
    error_code: str | None = None
    error_message: str | None = None
    cancelled: bool = False

    @property
    def succeeded(self) -> bool:
        """Whether the toolchain reported success."""
        return self.status is BuildStatus.SUCCESS


def compose_build_command(
    spec: TargetSpec,
    toolchain: str | None = None,
) -> list[str]:
    """Compose the toolchain command for a leg.

    Publishable legs produce an optimized binary; vendor conformance legs
    only run the test suite.

    Args:
        spec: Target spec of the leg.
        toolchain: Build tool (defaults per host class).

    Returns:
        Command as list of strings suitable for subprocess.
    """
    tool = toolchain or DEFAULT_TOOLCHAINS[spec.host_class]
    cmd = [tool, f"+{spec.channel.value}"]

    if spec.publish_eligible:
        cmd.extend(["build", "--target", spec.triple, "--release"])
    else:
        cmd.extend(["test", "--target", spec.triple])

    return cmd


def raw_artifact_path(project_dir: Path, spec: TargetSpec, crate_name: str) -> Path:
    """Return where the toolchain writes the release binary for a leg."""
    return project_dir / "target" / spec.triple / "release" / crate_name


def build(
    spec: TargetSpec,
    ctx: RunContext,
    project_dir: Path,
    leg_dir: Path,
    toolchain: str | None = None,
    timeout: int | None = None,
    env_override: dict[str, str] | None = None,
) -> BuildResult:
    """Execute the toolchain for one leg.

    Args:
        spec: Target spec of the leg.
        ctx: Run context (read only).
        project_dir: Source project root (toolchain working directory).
        leg_dir: Directory for this leg's log file.
        toolchain: Build tool override.
        timeout: Build timeout in seconds (None = no timeout).
        env_override: Optional environment variable overrides.

    Returns:
        BuildResult with execution details.
    """
    leg_dir.mkdir(parents=True, exist_ok=True)
    log_path = leg_dir / "build.log"

    cmd = compose_build_command(spec, toolchain)
    cmd_str = shlex.join(cmd)
    logger.info("[%s] Executing build: %s", spec.leg_id, cmd_str)

    env = dict(os.environ)
    env["TARGET"] = spec.triple
    if spec.vendor_tag:
        env["VENDOR"] = spec.vendor_tag
    if env_override:
        env.update(env_override)

    started_at = datetime.now(timezone.utc)
    exit_code: int | None = None
    error_code: str | None = None
    error_message: str | None = None
    cancelled = False

    with log_path.open("w") as log_file:
        log_file.write(f"# Command: {cmd_str}\n")
        log_file.write(f"# Started: {started_at.isoformat()}\n")
        log_file.write(f"# CWD: {project_dir}\n")
        log_file.write("# " + "=" * 70 + "\n\n")
        log_file.flush()

        try:
            result = subprocess.run(
                cmd,
                cwd=project_dir,
                stdout=log_file,
                stderr=subprocess.STDOUT,
                timeout=timeout,
                env=env,
                check=False,
            )
            exit_code = result.returncode
            if exit_code != 0:
                error_code = "build_failed"
                error_message = f"Build failed with exit code {exit_code}"

        except subprocess.TimeoutExpired:
            exit_code = -1
            cancelled = True
            error_code = "build_timeout"
            error_message = f"Build timed out after {timeout} seconds"
            log_file.write(f"\n# TIMEOUT after {timeout} seconds\n")

        except OSError as e:
            error_code = "execution_error"
            error_message = f"Failed to execute build: {e}"
            log_file.write(f"\n# {error_message}\n")

        finished_at = datetime.now(timezone.utc)
        log_file.write(f"\n# Finished: {finished_at.isoformat()}\n")
        log_file.write(f"# Exit code: {exit_code}\n")
        duration = (finished_at - started_at).total_seconds()
        log_file.write(f"# Duration: {duration:.1f}s\n")

    if error_code:
        logger.error("[%s] %s. See log: %s", spec.leg_id, error_message, log_path)
        status = BuildStatus.FAILURE
    else:
        logger.info("[%s] Build succeeded in %.1fs", spec.leg_id, duration)
        status = BuildStatus.SUCCESS

    raw_artifact = (
        raw_artifact_path(project_dir, spec, ctx.crate_name)
        if spec.publish_eligible
        else None
    )

    return BuildResult(
        target=spec,
        status=status,
        raw_artifact=raw_artifact,
        log_path=log_path,
        exit_code=exit_code,
        command=cmd_str,
        started_at=started_at,
        finished_at=finished_at,
        error_code=error_code,
        error_message=error_message,
        cancelled=cancelled,
    )


__all__ = [
    "DEFAULT_TOOLCHAINS",
    "BuildResult",
    "build",
    "compose_build_command",
    "raw_artifact_path",
]
