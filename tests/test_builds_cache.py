"""Tests for builds/cache.py module."""

import shutil
import stat
from datetime import datetime, timezone
from pathlib import Path

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from cross_release.builds.cache import (
    CACHE_PERMISSIONS,
    CacheKey,
    CacheManager,
    cache_lock,
    compute_cache_key,
    compute_lockfile_hash,
    widen_permissions,
)
from cross_release.builds.runner import BuildResult
from cross_release.db import Base
from cross_release.targets.registry import TargetSpec
from cross_release.types import BuildStatus, ToolchainChannel


@pytest.fixture
def engine():
    """Create an in-memory SQLite engine for testing."""
    engine = create_engine("sqlite:///:memory:", echo=False)
    Base.metadata.create_all(bind=engine)
    return engine


@pytest.fixture
def session_factory(engine):
    """Create a session factory for testing."""
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@pytest.fixture
def manager(tmp_path, session_factory) -> CacheManager:
    return CacheManager(tmp_path / "store", session_factory, lock_timeout=5)


@pytest.fixture
def key(tmp_path) -> CacheKey:
    lockfile = tmp_path / "Cargo.lock"
    lockfile.write_text('[[package]]\nname = "svd-parser"\n')
    return compute_cache_key(ToolchainChannel.STABLE, lockfile)


def _result(status: BuildStatus, cancelled: bool = False) -> BuildResult:
    now = datetime.now(timezone.utc)
    return BuildResult(
        target=TargetSpec(triple="x86_64-unknown-linux-gnu"),
        status=status,
        raw_artifact=None,
        log_path=Path("build.log"),
        exit_code=0 if status is BuildStatus.SUCCESS else 1,
        command="cross +stable build",
        started_at=now,
        finished_at=now,
        cancelled=cancelled,
    )


def _fill(deps: Path) -> None:
    (deps / "registry").mkdir(parents=True)
    (deps / "registry" / "index.json").write_text("{}")


class TestCacheKey:
    """Tests for key computation."""

    def test_hash_format(self, tmp_path):
        lockfile = tmp_path / "Cargo.lock"
        lockfile.write_text("content")
        digest = compute_lockfile_hash(lockfile)
        assert digest.startswith("sha256:")
        assert len(digest) == len("sha256:") + 64

    def test_missing_lockfile_hashes_as_empty(self, tmp_path):
        empty = tmp_path / "empty.lock"
        empty.write_text("")
        assert compute_lockfile_hash(tmp_path / "absent") == compute_lockfile_hash(empty)

    def test_channel_changes_key(self, tmp_path):
        lockfile = tmp_path / "Cargo.lock"
        lockfile.write_text("content")
        stable = compute_cache_key(ToolchainChannel.STABLE, lockfile)
        nightly = compute_cache_key(ToolchainChannel.NIGHTLY, lockfile)
        assert stable != nightly
        assert stable.lockfile_hash == nightly.lockfile_hash

    def test_lockfile_changes_key(self, tmp_path):
        lockfile = tmp_path / "Cargo.lock"
        lockfile.write_text("a")
        first = compute_cache_key(ToolchainChannel.STABLE, lockfile)
        lockfile.write_text("b")
        assert compute_cache_key(ToolchainChannel.STABLE, lockfile) != first

    def test_slug(self, key):
        assert key.slug.startswith("stable-")
        assert ":" not in key.slug


class TestWidenPermissions:
    """Tests for widen_permissions."""

    def test_files_and_dirs_become_readable(self, tmp_path):
        root = tmp_path / "deps"
        sub = root / "git"
        sub.mkdir(parents=True)
        file = sub / "checkout"
        file.write_text("x")
        file.chmod(0o600)
        sub.chmod(0o700)

        widen_permissions(root)

        file_mode = stat.S_IMODE(file.stat().st_mode)
        dir_mode = stat.S_IMODE(sub.stat().st_mode)
        assert file_mode & 0o444 == 0o444
        assert file_mode & 0o111 == 0
        assert dir_mode & 0o555 == 0o555


class TestCacheLock:
    def test_lock_is_reentrant_after_release(self, tmp_path, key):
        with cache_lock(tmp_path / "locks", key, timeout=1):
            pass
        with cache_lock(tmp_path / "locks", key, timeout=1):
            pass
        assert any((tmp_path / "locks").iterdir())


class TestCacheManager:
    """Tests for restore/persist."""

    def test_cold_cache(self, manager, key, tmp_path):
        assert manager.restore(key, tmp_path / "deps") is None

    def test_persist_then_restore(self, manager, key, tmp_path):
        deps = tmp_path / "leg-a" / "deps"
        _fill(deps)

        entry = manager.persist(key, deps)
        assert entry.permissions == CACHE_PERMISSIONS
        assert entry.persist_count == 1
        assert Path(entry.storage_location).is_dir()

        target = tmp_path / "leg-b" / "deps"
        restored = manager.restore(key, target)
        assert restored is not None
        assert (target / "registry" / "index.json").read_text() == "{}"

    def test_persist_twice_refreshes_entry(self, manager, key, tmp_path):
        deps = tmp_path / "deps"
        _fill(deps)
        manager.persist(key, deps)
        entry = manager.persist(key, deps)

        assert entry.persist_count == 2
        assert len(manager.list_entries()) == 1

    def test_missing_storage_is_cold(self, manager, key, tmp_path):
        deps = tmp_path / "deps"
        _fill(deps)
        entry = manager.persist(key, deps)
        shutil.rmtree(entry.storage_location)

        assert manager.restore(key, tmp_path / "other") is None

    def test_restore_waits_for_persist_lock(self, session_factory, key, tmp_path):
        """Restore never copies storage while a persist holds the key."""
        manager = CacheManager(tmp_path / "store", session_factory, lock_timeout=0.2)
        deps = tmp_path / "deps"
        _fill(deps)
        manager.persist(key, deps)

        target = tmp_path / "other"
        with cache_lock(manager.store_dir / ".locks", key):
            with pytest.raises(TimeoutError):
                manager.restore(key, target)
        assert not target.exists()

        assert manager.restore(key, target) is not None


class TestRunWithCache:
    """Tests for the build wrapper."""

    def test_success_persists(self, manager, key, tmp_path):
        deps = tmp_path / "deps"

        def build_fn():
            _fill(deps)
            return _result(BuildStatus.SUCCESS)

        result, hit = manager.run_with_cache(key, deps, build_fn)
        assert result.succeeded
        assert hit is False
        assert len(manager.list_entries()) == 1

        _, hit_again = manager.run_with_cache(
            key, tmp_path / "deps2", lambda: _result(BuildStatus.SUCCESS)
        )
        assert hit_again is True

    def test_failure_does_not_persist(self, manager, key, tmp_path):
        result, hit = manager.run_with_cache(
            key, tmp_path / "deps", lambda: _result(BuildStatus.FAILURE)
        )
        assert not result.succeeded
        assert hit is False
        assert manager.list_entries() == []

    def test_cancelled_does_not_persist(self, manager, key, tmp_path):
        manager.run_with_cache(
            key,
            tmp_path / "deps",
            lambda: _result(BuildStatus.FAILURE, cancelled=True),
        )
        assert manager.list_entries() == []

    def test_persist_error_keeps_verdict(self, manager, key, tmp_path, monkeypatch):
        """A cache write error never fails the build."""

        def broken_persist(*args, **kwargs):
            raise OSError("disk full")

        monkeypatch.setattr(manager, "persist", broken_persist)
        result, _ = manager.run_with_cache(
            key, tmp_path / "deps", lambda: _result(BuildStatus.SUCCESS)
        )
        assert result.succeeded

    def test_locked_restore_builds_cold(self, session_factory, key, tmp_path):
        manager = CacheManager(tmp_path / "store", session_factory, lock_timeout=0.2)
        deps = tmp_path / "deps"
        _fill(deps)
        manager.persist(key, deps)

        with cache_lock(manager.store_dir / ".locks", key):
            result, hit = manager.run_with_cache(
                key, tmp_path / "leg", lambda: _result(BuildStatus.SUCCESS)
            )
        assert result.succeeded
        assert hit is False
