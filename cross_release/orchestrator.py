"""Run orchestration.

This module provides the top-level driver:
- RunOrchestrator.run(): expand the matrix, run every leg, aggregate
- Per-leg pipeline: cache restore -> build -> cache persist -> package -> publish
- RunReport / LegReport: the status table handed back to the CI provider

Legs run in a thread pool and share nothing but the read-only RunContext.
A failure in one leg is recorded on that leg and never stops its siblings.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path

from pydantic import BaseModel, ConfigDict, SecretStr

from cross_release.builds.cache import CacheManager, compute_cache_key
from cross_release.builds.packager import (
    Archiver,
    PackagingError,
    archiver_for_extension,
    package,
)
from cross_release.builds.runner import BuildResult, build
from cross_release.config import Settings, get_settings
from cross_release.context import RunContext, is_tracked_ref
from cross_release.release.gate import may_publish
from cross_release.release.host import ReleaseHost
from cross_release.release.publisher import publish
from cross_release.targets.registry import (
    TargetSpec,
    detect_host_class,
    targets_for_host,
)
from cross_release.types import (
    BuildStatus,
    HostClass,
    PublishStatus,
    RunState,
    RunStatus,
)

logger = logging.getLogger(__name__)


class LegReport(BaseModel):
    """Outcome of one leg."""

    model_config = ConfigDict(extra="forbid")

    leg_id: str
    triple: str
    channel: str
    vendor_tag: str | None = None
    build_status: BuildStatus
    build_error_code: str | None = None
    build_error_message: str | None = None
    cancelled: bool = False
    cache_hit: bool = False
    log_path: str | None = None
    artifact: str | None = None
    artifact_sha256: str | None = None
    packaging_error_code: str | None = None
    packaging_error: str | None = None
    publish_status: PublishStatus = PublishStatus.NOT_ATTEMPTED
    publish_duplicate: bool = False
    publish_error_code: str | None = None
    publish_error: str | None = None

    @property
    def failed(self) -> bool:
        """Whether the leg counts against the run verdict."""
        return self.build_status is not BuildStatus.SUCCESS or bool(
            self.packaging_error_code
        )


class RunReport(BaseModel):
    """Aggregate outcome of a run."""

    model_config = ConfigDict(extra="forbid")

    status: RunStatus
    state: RunState
    event_kind: str
    ref: str
    channel: str
    crate_name: str
    version_tag: str | None = None
    host_class: str
    publish_allowed: bool
    skipped: bool = False
    legs: list[LegReport]

    @property
    def failed_legs(self) -> list[LegReport]:
        """Legs whose build or packaging failed."""
        return [leg for leg in self.legs if leg.failed]

    @property
    def publish_failures(self) -> list[LegReport]:
        """Legs whose upload failed."""
        return [leg for leg in self.legs if leg.publish_status is PublishStatus.FAILED]


class RunOrchestrator:
    """Drives one run over the target matrix.

    Args:
        project_dir: Source project root.
        settings: Application settings.
        targets: Target table (defaults to the static registry).
        host_class: Host class of this machine (defaults to settings/detection).
        cache: Cache manager (None disables dependency caching).
        release_host: Release host client used when publishing is allowed.
        credential: Release host credential (defaults to settings.release_token).
        archiver: Archiver for packaging (defaults to settings.archive_extension).
    """

    def __init__(
        self,
        project_dir: Path,
        settings: Settings | None = None,
        targets: list[TargetSpec] | tuple[TargetSpec, ...] | None = None,
        host_class: HostClass | None = None,
        cache: CacheManager | None = None,
        release_host: ReleaseHost | None = None,
        credential: SecretStr | None = None,
        archiver: Archiver | None = None,
    ) -> None:
        self.project_dir = project_dir
        self.settings = settings or get_settings()
        self.targets = targets
        self.host_class = host_class or self.settings.host_class or detect_host_class()
        self.cache = cache
        self.release_host = release_host
        self.credential = credential or self.settings.release_token
        self.archiver = archiver or archiver_for_extension(self.settings.archive_extension)
        self.state = RunState.PENDING

    def _transition(self, state: RunState) -> None:
        logger.debug("Run state: %s -> %s", self.state.value, state.value)
        self.state = state

    @property
    def toolchain(self) -> str:
        """Build tool for this host class."""
        if self.host_class is HostClass.DARWIN:
            return self.settings.darwin_toolchain
        return self.settings.linux_toolchain

    def expand(self, ctx: RunContext) -> list[TargetSpec]:
        """Return the legs this host runs for the context's channel."""
        return targets_for_host(self.host_class, channel=ctx.channel, targets=self.targets)

    def run(self, ctx: RunContext) -> RunReport:
        """Run every compatible leg and aggregate the results.

        Args:
            ctx: Run context for the triggering event.

        Returns:
            RunReport with the aggregate status and per-leg table.
        """
        self.state = RunState.PENDING
        gate = may_publish(ctx)

        if not is_tracked_ref(ctx, self.settings.tracked_refs):
            logger.info("Ref %s is not tracked, nothing to build", ctx.ref)
            self._transition(RunState.DONE)
            return self._report(ctx, gate, [], skipped=True)

        self._transition(RunState.EXPANDING)
        legs = self.expand(ctx)
        logger.info(
            "Expanded %d leg(s) for %s host on %s channel (publish %s)",
            len(legs),
            self.host_class.value,
            ctx.channel.value,
            "allowed" if gate else "denied",
        )

        self._transition(RunState.RUNNING)
        reports: list[LegReport] = []
        if legs:
            max_workers = self.settings.max_parallel_legs or len(legs)
            with ThreadPoolExecutor(max_workers=max_workers) as pool:
                futures = [pool.submit(self._run_leg, spec, ctx, gate) for spec in legs]
                for spec, future in zip(legs, futures, strict=True):
                    try:
                        reports.append(future.result())
                    except Exception as e:
                        logger.exception("[%s] Leg crashed", spec.leg_id)
                        reports.append(
                            self._leg_report(
                                spec,
                                build_status=BuildStatus.FAILURE,
                                build_error_code="internal_error",
                                build_error_message=str(e),
                            )
                        )
        else:
            logger.warning("No legs match host class %s", self.host_class.value)

        self._transition(RunState.AGGREGATING)
        report = self._report(ctx, gate, reports)
        self._transition(RunState.DONE)
        report.state = RunState.DONE

        for leg in report.failed_legs:
            logger.error(
                "[%s] Failed: %s",
                leg.leg_id,
                leg.packaging_error or leg.build_error_message,
            )
        for leg in report.publish_failures:
            logger.warning("[%s] Not published: %s", leg.leg_id, leg.publish_error)
        logger.info("Run finished: %s", report.status.value)
        return report

    def _report(
        self,
        ctx: RunContext,
        gate: bool,
        legs: list[LegReport],
        skipped: bool = False,
    ) -> RunReport:
        status = RunStatus.FAILURE if any(leg.failed for leg in legs) else RunStatus.SUCCESS
        return RunReport(
            status=status,
            state=self.state,
            event_kind=ctx.event_kind.value,
            ref=ctx.ref,
            channel=ctx.channel.value,
            crate_name=ctx.crate_name,
            version_tag=ctx.version_tag,
            host_class=self.host_class.value,
            publish_allowed=gate,
            skipped=skipped,
            legs=legs,
        )

    @staticmethod
    def _leg_report(spec: TargetSpec, **fields: object) -> LegReport:
        return LegReport(
            leg_id=spec.leg_id,
            triple=spec.triple,
            channel=spec.channel.value,
            vendor_tag=spec.vendor_tag,
            **fields,
        )

    def _build(self, spec: TargetSpec, ctx: RunContext, leg_dir: Path) -> tuple[BuildResult, bool]:
        deps_dir = leg_dir / "deps"

        def run_build() -> BuildResult:
            return build(
                spec,
                ctx,
                project_dir=self.project_dir,
                leg_dir=leg_dir,
                toolchain=self.toolchain,
                timeout=self.settings.build_timeout,
                env_override={"CARGO_HOME": str(deps_dir)},
            )

        if self.cache is None:
            return run_build(), False

        key = compute_cache_key(spec.channel, self.project_dir / self.settings.lockfile_name)
        return self.cache.run_with_cache(key, deps_dir, run_build)

    def _run_leg(self, spec: TargetSpec, ctx: RunContext, gate: bool) -> LegReport:
        leg_dir = self.settings.work_dir / spec.leg_id
        result, cache_hit = self._build(spec, ctx, leg_dir)

        fields: dict[str, object] = {
            "build_status": result.status,
            "build_error_code": result.error_code,
            "build_error_message": result.error_message,
            "cancelled": result.cancelled,
            "cache_hit": cache_hit,
            "log_path": str(result.log_path),
        }

        if not result.succeeded or not spec.publish_eligible:
            return self._leg_report(spec, **fields)

        try:
            artifact = package(result, ctx, self.settings.dist_dir, self.archiver)
        except PackagingError as e:
            logger.error("[%s] Packaging failed: %s", spec.leg_id, e)
            fields["packaging_error_code"] = e.code
            fields["packaging_error"] = str(e)
            return self._leg_report(spec, **fields)

        fields["artifact"] = artifact.file_name
        fields["artifact_sha256"] = artifact.sha256

        if gate:
            # The build already succeeded; an upload crash is a publish failure
            try:
                published = publish(artifact, ctx, self.release_host, self.credential)
            except Exception as e:
                logger.exception("[%s] Publish crashed", spec.leg_id)
                fields["publish_status"] = PublishStatus.FAILED
                fields["publish_error_code"] = "internal_error"
                fields["publish_error"] = str(e)
            else:
                fields["publish_status"] = published.status
                fields["publish_duplicate"] = published.duplicate
                fields["publish_error_code"] = published.error_code
                fields["publish_error"] = published.error_message

        return self._leg_report(spec, **fields)


__all__ = ["LegReport", "RunOrchestrator", "RunReport"]
