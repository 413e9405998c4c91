"""Persistent cache tier over the local store."""

import logging
import re
from typing import Optional

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..models.cache_entry import CacheEntry

logger = logging.getLogger(__name__)


def glob_to_regex(pattern: str) -> re.Pattern:
    """Compile a ``*``/``?`` glob; every other character matches literally."""
    parts = []
    for char in pattern:
        if char == "*":
            parts.append(".*")
        elif char == "?":
            parts.append(".")
        else:
            parts.append(re.escape(char))
    return re.compile("".join(parts) + r"\Z", re.DOTALL)


def glob_to_like(pattern: str) -> str:
    """Translate a ``*``/``?`` glob into a LIKE pattern escaped with backslash."""
    out = []
    for char in pattern:
        if char == "*":
            out.append("%")
        elif char == "?":
            out.append("_")
        elif char in ("%", "_", "\\"):
            out.append("\\" + char)
        else:
            out.append(char)
    return "".join(out)


class CacheStore:
    """Reads and writes ``cache_entries`` rows, one short session per call."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def get(self, key: str, now: float) -> Optional[tuple[str, float]]:
        """Return ``(payload, expires_at)`` for a live entry, else None."""
        async with self.session_factory() as session:
            entry = await session.get(CacheEntry, key)
            if entry is None or entry.expires_at <= now:
                return None
            return entry.value, entry.expires_at

    async def set(self, key: str, payload: str, expires_at: float) -> None:
        async with self.session_factory() as session:
            await session.merge(CacheEntry(key=key, value=payload, expires_at=expires_at))
            await session.commit()

    async def delete(self, key: str) -> bool:
        async with self.session_factory() as session:
            result = await session.execute(delete(CacheEntry).where(CacheEntry.key == key))
            await session.commit()
            return result.rowcount > 0

    async def delete_matching(self, pattern: str) -> list[str]:
        """Delete entries whose key matches the glob and return their keys."""
        like = glob_to_like(pattern)
        matcher = glob_to_regex(pattern)
        async with self.session_factory() as session:
            # LIKE is case-insensitive on some engines
            candidates = (await session.execute(
                select(CacheEntry.key).where(CacheEntry.key.like(like, escape="\\"))
            )).scalars()
            keys = [key for key in candidates if matcher.match(key)]
            if keys:
                await session.execute(delete(CacheEntry).where(CacheEntry.key.in_(keys)))
                await session.commit()
            return keys

    async def clear(self) -> int:
        async with self.session_factory() as session:
            result = await session.execute(delete(CacheEntry))
            await session.commit()
            return result.rowcount

    async def purge_expired(self, now: float) -> int:
        async with self.session_factory() as session:
            result = await session.execute(delete(CacheEntry).where(CacheEntry.expires_at <= now))
            await session.commit()

        if result.rowcount:
            logger.info("Purged expired cache entries", extra={"deleted_count": result.rowcount})
        return result.rowcount

    async def count(self) -> int:
        async with self.session_factory() as session:
            return (await session.execute(select(func.count()).select_from(CacheEntry))).scalar_one()
