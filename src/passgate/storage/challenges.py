"""Pending ceremony storage.

Maps a ceremony key to the serialized options issued to the client. Entries
expire after their TTL whether or not they are ever fetched, and ``pop`` is
the single check-and-remove used to consume a challenge exactly once.
"""

from __future__ import annotations

import asyncio
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass

import structlog

logger = structlog.get_logger()


class ChallengeStore(ABC):
    """Key/value store of pending ceremony options with expiry."""

    @abstractmethod
    async def put(self, key: str, value: str, ttl: float) -> None:
        """Store ``value`` under ``key``, replacing any prior value, for ``ttl`` seconds."""

    @abstractmethod
    async def get(self, key: str) -> str | None:
        """Return the live value for ``key`` without removing it."""

    @abstractmethod
    async def delete(self, key: str) -> None:
        """Remove ``key`` if present."""

    @abstractmethod
    async def pop(self, key: str) -> str | None:
        """Atomically fetch and remove the live value for ``key``."""

    async def start(self) -> None:
        """Start background work, if any."""

    async def stop(self) -> None:
        """Stop background work and release resources."""


@dataclass
class PendingEntry:
    """Serialized options with an absolute expiry."""

    value: str
    expires_at: float

    @property
    def is_expired(self) -> bool:
        return time.monotonic() >= self.expires_at


class MemoryChallengeStore(ChallengeStore):
    """In-memory challenge store with expiration cleanup.

    Thread-safe via asyncio locks for concurrent access. Expired entries are
    never returned and are purged by a background task started with start().
    """

    def __init__(self, cleanup_interval: float = 60.0) -> None:
        """Initialize the store.

        Args:
            cleanup_interval: How often to sweep expired entries in seconds
        """
        self._entries: dict[str, PendingEntry] = {}
        self._cleanup_interval = cleanup_interval
        self._cleanup_task: asyncio.Task | None = None
        self._lock = asyncio.Lock()

    async def start(self) -> None:
        """Start the background cleanup task."""
        if self._cleanup_task is None:
            self._cleanup_task = asyncio.create_task(self._cleanup_loop())

    async def stop(self) -> None:
        """Stop the background cleanup task."""
        if self._cleanup_task:
            self._cleanup_task.cancel()
            try:
                await self._cleanup_task
            except asyncio.CancelledError:
                pass
            self._cleanup_task = None

    async def put(self, key: str, value: str, ttl: float) -> None:
        async with self._lock:
            self._entries[key] = PendingEntry(value=value, expires_at=time.monotonic() + ttl)

    async def get(self, key: str) -> str | None:
        async with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if entry.is_expired:
                del self._entries[key]
                return None
            return entry.value

    async def delete(self, key: str) -> None:
        async with self._lock:
            self._entries.pop(key, None)

    async def pop(self, key: str) -> str | None:
        async with self._lock:
            entry = self._entries.pop(key, None)
        if entry is None or entry.is_expired:
            return None
        return entry.value

    async def size(self) -> int:
        """Get the current number of live entries."""
        async with self._lock:
            return sum(1 for entry in self._entries.values() if not entry.is_expired)

    async def _cleanup_loop(self) -> None:
        """Background task to remove expired entries."""
        while True:
            try:
                await asyncio.sleep(self._cleanup_interval)
                removed = await self._cleanup_expired()
                if removed:
                    logger.debug("Expired ceremonies purged", count=removed)
            except asyncio.CancelledError:
                break

    async def _cleanup_expired(self) -> int:
        """Remove all expired entries.

        Returns:
            Number of entries removed
        """
        async with self._lock:
            expired = [key for key, entry in self._entries.items() if entry.is_expired]
            for key in expired:
                del self._entries[key]
        return len(expired)
