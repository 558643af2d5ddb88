"""Dependency cache management.

This module handles:
- Cache key computation from toolchain channel and lockfile content
- Restoring a persisted dependency cache before a build
- Persisting the cache after a successful build
- Widening permissions so other identities can reuse the cache

The cache is shared by every later run with the same key, possibly under
a different user than the one that built it, so persisted files are made
world-readable. Restores and persists for one key are serialized with a
file lock; the last writer wins.
"""

from __future__ import annotations

import fcntl
import hashlib
import logging
import os
import shutil
import stat
import time
import uuid
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from cross_release.builds.models import CacheEntry
from cross_release.builds.runner import BuildResult
from cross_release.types import ToolchainChannel

logger = logging.getLogger(__name__)

# Mode bits added to every persisted file; directories also get search bits
CACHE_PERMISSIONS = "a+rX"
_READ_BITS = stat.S_IRUSR | stat.S_IRGRP | stat.S_IROTH
_SEARCH_BITS = stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH

HASH_CHUNK_SIZE = 64 * 1024  # 64KB


@dataclass(frozen=True)
class CacheKey:
    """Identity of a dependency cache.

    Attributes:
        channel: Toolchain channel.
        lockfile_hash: 'sha256:<hex>' digest of the lockfile.
    """

    channel: ToolchainChannel
    lockfile_hash: str

    @property
    def slug(self) -> str:
        """Filesystem-safe name for the key."""
        digest = self.lockfile_hash.split(":", 1)[-1]
        return f"{self.channel.value}-{digest}"


def compute_lockfile_hash(lockfile: Path, chunk_size: int = HASH_CHUNK_SIZE) -> str:
    """Hash a dependency lockfile.

    A missing lockfile hashes like an empty one.

    Args:
        lockfile: Path to the lockfile.
        chunk_size: Size of chunks for streaming hash.

    Returns:
        Digest as 'sha256:<hex>'.
    """
    sha256 = hashlib.sha256()
    if lockfile.is_file():
        with lockfile.open("rb") as f:
            while chunk := f.read(chunk_size):
                sha256.update(chunk)
    else:
        logger.debug("Lockfile not found, using empty hash: %s", lockfile)
    return f"sha256:{sha256.hexdigest()}"


def compute_cache_key(channel: ToolchainChannel, lockfile: Path) -> CacheKey:
    """Compute the cache key for a channel and lockfile."""
    return CacheKey(channel=channel, lockfile_hash=compute_lockfile_hash(lockfile))


def widen_permissions(root: Path) -> None:
    """Recursively make a tree readable by every identity.

    Files gain read bits for user, group and other; directories also gain
    search bits so the tree can be traversed.

    Args:
        root: Root of the tree.
    """
    paths = [root, *root.rglob("*")] if root.is_dir() else [root]
    for path in paths:
        if path.is_symlink():
            continue
        mode = path.stat().st_mode
        extra = _READ_BITS | (_SEARCH_BITS if path.is_dir() else 0)
        if mode & extra != extra:
            path.chmod(stat.S_IMODE(mode) | extra)


@contextmanager
def cache_lock(
    lock_dir: Path,
    key: CacheKey,
    timeout: float | None = None,
) -> Iterator[None]:
    """Acquire an exclusive lock for a cache key.

    Args:
        lock_dir: Directory for lock files.
        key: Cache key to lock on.
        timeout: Lock acquisition timeout in seconds (None = blocking).

    Yields:
        None when lock is acquired.

    Raises:
        TimeoutError: If lock cannot be acquired within timeout.
    """
    lock_dir.mkdir(parents=True, exist_ok=True)
    lock_file = lock_dir / f"cache_{key.slug[:72]}.lock"

    fd = os.open(str(lock_file), os.O_RDWR | os.O_CREAT, 0o644)
    lock_acquired = False
    try:
        if timeout is not None:
            start = time.monotonic()
            while True:
                try:
                    fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                    lock_acquired = True
                    break
                except BlockingIOError:
                    if time.monotonic() - start >= timeout:
                        raise TimeoutError(
                            f"Timeout waiting for cache lock on {key.slug[:32]}"
                        ) from None
                    time.sleep(0.1)
        else:
            fcntl.flock(fd, fcntl.LOCK_EX)
            lock_acquired = True

        yield
    finally:
        if lock_acquired:
            fcntl.flock(fd, fcntl.LOCK_UN)
        os.close(fd)


class CacheManager:
    """Restores and persists dependency caches keyed by CacheKey.

    Args:
        store_dir: Root directory of the cache store.
        session_factory: Session factory for the cache index.
        lock_timeout: Seconds to wait for a concurrent writer.
    """

    def __init__(
        self,
        store_dir: Path,
        session_factory: sessionmaker[Session],
        lock_timeout: float | None = 300,
    ) -> None:
        self.store_dir = store_dir
        self.session_factory = session_factory
        self.lock_timeout = lock_timeout

    def _lookup(self, session: Session, key: CacheKey) -> CacheEntry | None:
        stmt = select(CacheEntry).where(
            CacheEntry.channel == key.channel.value,
            CacheEntry.lockfile_hash == key.lockfile_hash,
        )
        return session.execute(stmt).scalar_one_or_none()

    def restore(self, key: CacheKey, destination: Path) -> CacheEntry | None:
        """Copy a persisted cache into a leg's dependency directory.

        Args:
            key: Cache key.
            destination: Directory the toolchain reads dependencies from.

        Returns:
            The restored entry, or None on a cold cache.
        """
        with self.session_factory() as session:
            entry = self._lookup(session, key)

        if entry is None:
            logger.info("Cold cache for %s", key.slug[:32])
            return None

        storage = Path(entry.storage_location)
        # Persist swaps storage under the same lock
        with cache_lock(self.store_dir / ".locks", key, timeout=self.lock_timeout):
            if not storage.is_dir():
                logger.warning(
                    "Cache entry %s points to missing storage: %s", key.slug[:32], storage
                )
                return None

            destination.mkdir(parents=True, exist_ok=True)
            shutil.copytree(storage, destination, symlinks=True, dirs_exist_ok=True)
        logger.info("Restored cache %s to %s", key.slug[:32], destination)
        return entry

    def persist(self, key: CacheKey, location: Path) -> CacheEntry:
        """Store a dependency directory as the cache for a key.

        Args:
            key: Cache key.
            location: Dependency directory produced by the build.

        Returns:
            The created or refreshed entry.
        """
        storage = self.store_dir / key.slug
        staging = self.store_dir / f".{key.slug}.{uuid.uuid4().hex[:8]}.tmp"
        self.store_dir.mkdir(parents=True, exist_ok=True)

        try:
            if location.is_dir():
                shutil.copytree(location, staging, symlinks=True)
            else:
                staging.mkdir()
            widen_permissions(staging)

            with cache_lock(self.store_dir / ".locks", key, timeout=self.lock_timeout):
                if storage.exists():
                    shutil.rmtree(storage)
                staging.rename(storage)
                entry = self._upsert(key, storage)
        finally:
            if staging.exists():
                shutil.rmtree(staging, ignore_errors=True)

        logger.info("Persisted cache %s to %s", key.slug[:32], storage)
        return entry

    def _upsert(self, key: CacheKey, storage: Path) -> CacheEntry:
        now = datetime.now(timezone.utc)
        with self.session_factory() as session:
            entry = self._lookup(session, key)
            if entry is None:
                entry = CacheEntry(
                    channel=key.channel.value,
                    lockfile_hash=key.lockfile_hash,
                    storage_location=str(storage),
                    permissions=CACHE_PERMISSIONS,
                    updated_at=now,
                    persist_count=1,
                )
                session.add(entry)
            else:
                entry.storage_location = str(storage)
                entry.permissions = CACHE_PERMISSIONS
                entry.updated_at = now
                entry.persist_count += 1
            session.commit()
            return entry

    def run_with_cache(
        self,
        key: CacheKey,
        location: Path,
        build_fn: Callable[[], BuildResult],
    ) -> tuple[BuildResult, bool]:
        """Wrap a build with restore before and persist after.

        Nothing is persisted unless the build succeeded and ran to completion.
        Cache errors are logged and never change the build result.

        Args:
            key: Cache key of the leg.
            location: Leg's dependency directory.
            build_fn: Zero-argument callable running the build.

        Returns:
            Tuple of (BuildResult, is_cache_hit).
        """
        try:
            restored = self.restore(key, location)
        except (OSError, SQLAlchemyError) as e:
            logger.warning("Cache restore for %s failed, building cold: %s", key.slug[:32], e)
            restored = None

        result = build_fn()

        if result.succeeded and not result.cancelled:
            try:
                self.persist(key, location)
            except (OSError, TimeoutError, SQLAlchemyError) as e:
                logger.warning(
                    "[%s] Cache persist failed: %s", result.target.leg_id, e
                )
        else:
            logger.info(
                "[%s] Skipping cache persist after unsuccessful build",
                result.target.leg_id,
            )

        return result, restored is not None

    def list_entries(self) -> list[CacheEntry]:
        """Return every cache entry, most recently updated first."""
        with self.session_factory() as session:
            stmt = select(CacheEntry).order_by(
                CacheEntry.updated_at.desc(), CacheEntry.id.desc()
            )
            return list(session.execute(stmt).scalars().all())


__all__ = [
    "CACHE_PERMISSIONS",
    "CacheKey",
    "CacheManager",
    "cache_lock",
    "compute_cache_key",
    "compute_lockfile_hash",
    "widen_permissions",
]
