"""Release publishing.

Uploads a packaged artifact to the release host when the run is allowed
to publish. Upload failures are returned, not raised: publishing is
best-effort relative to the build verdict.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from pydantic import SecretStr

from cross_release.builds.packager import PackagedArtifact
from cross_release.context import RunContext
from cross_release.release.gate import leg_may_publish
from cross_release.release.host import (
    PublishTransportFailure,
    ReleaseHost,
    UploadOutcome,
)
from cross_release.types import PublishStatus

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PublishResult:
    """Result of publishing one artifact.

    Attributes:
        status: not_attempted, succeeded or failed.
        file_name: Asset name.
        tag: Release tag (None when not attempted).
        duplicate: Whether the host already had the asset.
        error_code: Failure category.
        error_message: Failure details.
    """

    status: PublishStatus
    file_name: str
    tag: str | None = None
    duplicate: bool = False
    error_code: str | None = None
    error_message: str | None = None


def publish(
    artifact: PackagedArtifact,
    ctx: RunContext,
    host: ReleaseHost | None,
    credential: SecretStr | None,
) -> PublishResult:
    """Upload an artifact under the run's version tag.

    Args:
        artifact: Packaged archive.
        ctx: Run context (read only).
        host: Release host client.
        credential: Opaque release host credential.

    Returns:
        PublishResult; not_attempted when the gate denies the leg.
    """
    spec = artifact.source_target
    if not leg_may_publish(ctx, spec) or ctx.version_tag is None:
        logger.debug("[%s] Publish gate denied, skipping upload", spec.leg_id)
        return PublishResult(status=PublishStatus.NOT_ATTEMPTED, file_name=artifact.file_name)

    tag = ctx.version_tag
    if host is None or credential is None:
        logger.warning(
            "[%s] No release host credential configured, cannot upload %s",
            spec.leg_id,
            artifact.file_name,
        )
        return PublishResult(
            status=PublishStatus.FAILED,
            file_name=artifact.file_name,
            tag=tag,
            error_code="missing_credential",
            error_message="Release host or credential not configured",
        )

    try:
        content = artifact.content_location.read_bytes()
    except OSError as e:
        logger.warning("[%s] Cannot read %s: %s", spec.leg_id, artifact.content_location, e)
        return PublishResult(
            status=PublishStatus.FAILED,
            file_name=artifact.file_name,
            tag=tag,
            error_code="read_error",
            error_message=str(e),
        )

    try:
        outcome = host.upload(tag, artifact.file_name, content, credential)
    except PublishTransportFailure as e:
        logger.warning("[%s] Upload of %s failed: %s", spec.leg_id, artifact.file_name, e)
        return PublishResult(
            status=PublishStatus.FAILED,
            file_name=artifact.file_name,
            tag=tag,
            error_code=e.code,
            error_message=str(e),
        )

    return PublishResult(
        status=PublishStatus.SUCCEEDED,
        file_name=artifact.file_name,
        tag=tag,
        duplicate=outcome is UploadOutcome.ALREADY_EXISTS,
    )


__all__ = ["PublishResult", "publish"]
