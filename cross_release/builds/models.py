"""Cache index ORM models.

A CacheEntry records where the dependency cache for one
(channel, lockfile hash) key is stored. Entries are created or refreshed
after a successful build and are never removed by the orchestrator.
"""

from datetime import datetime

from sqlalchemy import DateTime, Integer, String, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column

from cross_release.db import Base


class CacheEntry(Base):
    """ORM model for a persisted dependency cache.

    Attributes:
        id: Primary key.
        channel: Toolchain channel of the builds that filled the cache.
        lockfile_hash: Hash of the dependency lockfile.
        storage_location: Directory holding the cached files.
        permissions: Permission bits granted to every identity (e.g. 'a+r').
        created_at: Timestamp of the first persist.
        updated_at: Timestamp of the latest persist.
        persist_count: Number of times the entry was written.
    """

    __tablename__ = "cache_entries"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    channel: Mapped[str] = mapped_column(String(20), nullable=False)
    lockfile_hash: Mapped[str] = mapped_column(String(80), nullable=False)

    storage_location: Mapped[str] = mapped_column(String(500), nullable=False)
    permissions: Mapped[str] = mapped_column(String(20), nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, server_default=func.now()
    )
    updated_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    persist_count: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    __table_args__ = (
        UniqueConstraint("channel", "lockfile_hash", name="uq_cache_entries_key"),
    )

    def __repr__(self) -> str:
        """Return string representation of CacheEntry."""
        return (
            f"<CacheEntry(channel='{self.channel}', "
            f"lockfile_hash='{self.lockfile_hash[:16]}...', "
            f"location='{self.storage_location}')>"
        )


__all__ = ["CacheEntry"]
