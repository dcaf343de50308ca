"""Passgate storage.

Pending ceremonies live in a ChallengeStore (in memory or Redis); users and
credentials live in the CredentialRepository (in memory or a JSON file).

Usage:
    from passgate.storage import CredentialRepository, MemoryChallengeStore

    repository = CredentialRepository("users.json")
    challenges = MemoryChallengeStore(cleanup_interval=60.0)
    await challenges.start()
"""

from passgate.storage.challenges import ChallengeStore, MemoryChallengeStore, PendingEntry
from passgate.storage.redis_store import RedisChallengeStore
from passgate.storage.repository import CredentialRepository

__all__ = [
    "ChallengeStore",
    "MemoryChallengeStore",
    "PendingEntry",
    "RedisChallengeStore",
    "CredentialRepository",
]
