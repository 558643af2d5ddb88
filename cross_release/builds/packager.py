"""Artifact packaging.

This module handles:
- Deterministic archive naming: {crate}-{version}-{triple}.{ext}
- Staging the compiled binary and archiving it through an Archiver
- Glob expansion of the produced archive name
- Checksums of packaged archives

The archive byte format belongs to the archiver; this module only
guarantees the name and that exactly one archive exists per leg.
"""

from __future__ import annotations

import hashlib
import logging
import shutil
import tarfile
import zipfile
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from cross_release.builds.runner import BuildResult
from cross_release.context import RunContext
from cross_release.targets.registry import TargetSpec

logger = logging.getLogger(__name__)

DEFAULT_ARCHIVE_EXTENSION = "tar.gz"

HASH_CHUNK_SIZE = 64 * 1024  # 64KB


class PackagingError(Exception):
    """Raised when a leg cannot be packaged."""

    def __init__(self, message: str, code: str = "packaging_error") -> None:
        super().__init__(message)
        self.code = code


@dataclass(frozen=True)
class PackagedArtifact:
    """A release archive for one leg.

    Attributes:
        file_name: Deterministic archive name.
        content_location: Path of the archive.
        source_target: Leg the archive was built for.
        size_bytes: Archive size.
        sha256: SHA-256 hex digest of the archive.
    """

    file_name: str
    content_location: Path
    source_target: TargetSpec
    size_bytes: int
    sha256: str


class Archiver(Protocol):
    """Bundles a directory into a named archive."""

    extension: str

    def archive(self, source_dir: Path, destination: Path) -> Path:
        """Archive the contents of source_dir into destination."""
        ...


class TarGzArchiver:
    """Gzip-compressed tarball with sorted members."""

    extension = "tar.gz"

    def archive(self, source_dir: Path, destination: Path) -> Path:
        destination.parent.mkdir(parents=True, exist_ok=True)
        with tarfile.open(destination, "w:gz") as tar:
            for path in sorted(source_dir.rglob("*")):
                tar.add(
                    path, arcname=path.relative_to(source_dir).as_posix(), recursive=False
                )
        return destination


class ZipArchiver:
    """Deflate-compressed zip with sorted members."""

    extension = "zip"

    def archive(self, source_dir: Path, destination: Path) -> Path:
        destination.parent.mkdir(parents=True, exist_ok=True)
        with zipfile.ZipFile(destination, "w", compression=zipfile.ZIP_DEFLATED) as zf:
            for path in sorted(source_dir.rglob("*")):
                zf.write(path, arcname=path.relative_to(source_dir).as_posix())
        return destination


ARCHIVERS: dict[str, type[TarGzArchiver] | type[ZipArchiver]] = {
    TarGzArchiver.extension: TarGzArchiver,
    ZipArchiver.extension: ZipArchiver,
}


def archiver_for_extension(extension: str) -> Archiver:
    """Return an archiver producing files with the given extension.

    Raises:
        PackagingError: If no archiver handles the extension.
    """
    try:
        return ARCHIVERS[extension.lstrip(".")]()
    except KeyError:
        raise PackagingError(
            f"Unsupported archive extension: {extension}", code="unsupported_archive"
        ) from None


def artifact_file_name(
    crate_name: str,
    version_tag: str,
    triple: str,
    extension: str = DEFAULT_ARCHIVE_EXTENSION,
) -> str:
    """Return the release file name for a leg.

    Args:
        crate_name: Project name.
        version_tag: Release tag (or run label for non-tag runs).
        triple: Target triple.
        extension: Archive extension without leading dot.

    Returns:
        '{crate_name}-{version_tag}-{triple}.{extension}'.
    """
    return f"{crate_name}-{version_tag}-{triple}.{extension.lstrip('.')}"


def expand_archive_glob(
    dist_dir: Path,
    crate_name: str,
    version_tag: str,
    triple: str,
) -> list[Path]:
    """Find archives matching '{crate}-{version}-{triple}.*' in dist_dir.

    Args:
        dist_dir: Directory holding packaged archives.
        crate_name: Project name.
        version_tag: Release tag or run label.
        triple: Target triple.

    Returns:
        Sorted list of matching files.
    """
    if not dist_dir.is_dir():
        return []
    pattern = f"{crate_name}-{version_tag}-{triple}.*"
    return sorted(p for p in dist_dir.glob(pattern) if p.is_file())


def compute_file_hash(file_path: Path, chunk_size: int = HASH_CHUNK_SIZE) -> str:
    """Compute SHA-256 hash of a file.

    Args:
        file_path: Path to the file.
        chunk_size: Size of chunks for streaming hash.

    Returns:
        SHA-256 hex digest.
    """
    sha256 = hashlib.sha256()
    with file_path.open("rb") as f:
        while chunk := f.read(chunk_size):
            sha256.update(chunk)
    return sha256.hexdigest()


def _check_raw_artifact(result: BuildResult) -> Path:
    raw = result.raw_artifact
    leg_id = result.target.leg_id
    if raw is None or not raw.exists():
        raise PackagingError(
            f"Build for {leg_id} reported success but produced no artifact at {raw}",
            code="missing_artifact",
        )
    if raw.is_dir():
        if not any(raw.iterdir()):
            raise PackagingError(
                f"Artifact directory for {leg_id} is empty: {raw}",
                code="missing_artifact",
            )
    elif raw.stat().st_size == 0:
        raise PackagingError(
            f"Artifact for {leg_id} is empty: {raw}",
            code="missing_artifact",
        )
    return raw


def package(
    result: BuildResult,
    ctx: RunContext,
    dist_dir: Path,
    archiver: Archiver | None = None,
) -> PackagedArtifact:
    """Archive a leg's compiled binary under its release name.

    Args:
        result: Successful build result of a publishable leg.
        ctx: Run context (read only).
        dist_dir: Directory receiving archives.
        archiver: Archiver to use (defaults to TarGzArchiver).

    Returns:
        PackagedArtifact describing the archive.

    Raises:
        PackagingError: If the build did not succeed, the leg is test-only,
            the artifact is missing or empty, or the archive is not unique.
    """
    spec = result.target
    if not result.succeeded:
        raise PackagingError(
            f"Cannot package failed build for {spec.leg_id}", code="precondition"
        )
    if not spec.publish_eligible:
        raise PackagingError(
            f"Conformance leg {spec.leg_id} is not packaged", code="precondition"
        )

    raw = _check_raw_artifact(result)
    archiver = archiver or TarGzArchiver()
    label = ctx.artifact_label
    file_name = artifact_file_name(ctx.crate_name, label, spec.triple, archiver.extension)

    # Stage into a fresh directory so only the binary lands in the archive
    stage_dir = dist_dir / ".stage" / spec.triple
    if stage_dir.exists():
        shutil.rmtree(stage_dir)
    stage_dir.mkdir(parents=True)

    try:
        if raw.is_dir():
            shutil.copytree(raw, stage_dir / raw.name)
        else:
            shutil.copy2(raw, stage_dir / raw.name)

        destination = dist_dir / file_name
        archiver.archive(stage_dir, destination)
    finally:
        shutil.rmtree(stage_dir, ignore_errors=True)

    matches = expand_archive_glob(dist_dir, ctx.crate_name, label, spec.triple)
    if matches != [destination]:
        raise PackagingError(
            f"Expected exactly one archive for {spec.leg_id}, found "
            f"{[m.name for m in matches]}",
            code="archive_not_unique",
        )

    size_bytes = destination.stat().st_size
    sha256 = compute_file_hash(destination)
    logger.info(
        "[%s] Packaged %s (%d bytes, sha256=%s)",
        spec.leg_id,
        file_name,
        size_bytes,
        sha256[:16],
    )

    return PackagedArtifact(
        file_name=file_name,
        content_location=destination,
        source_target=spec,
        size_bytes=size_bytes,
        sha256=sha256,
    )


__all__ = [
    "ARCHIVERS",
    "DEFAULT_ARCHIVE_EXTENSION",
    "Archiver",
    "PackagedArtifact",
    "PackagingError",
    "TarGzArchiver",
    "ZipArchiver",
    "archiver_for_extension",
    "artifact_file_name",
    "compute_file_hash",
    "expand_archive_glob",
    "package",
]
