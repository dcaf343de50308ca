"""Repository of users and their passkey credentials.

The whole collection is read-modify-written under one asyncio lock. Each
mutation builds the next collection, persists it, and only then publishes
it in memory, so a failed write leaves the previous state untouched.

Storage file format (users.json):
    {
        "users": [
            {"tenant": "acme", "username": "alice", "created_at": "...", "credentials": [...]}
        ]
    }
"""

from __future__ import annotations

import asyncio
import copy
import json
import os
from pathlib import Path

import structlog

from passgate.ceremony.models import StoredCredential, User
from passgate.core.exceptions import (
    DuplicateCredentialError,
    NotFoundError,
    StorageError,
    VerificationFailedError,
)

logger = structlog.get_logger()


class CredentialRepository:
    """User and credential storage, optionally backed by a JSON file.

    Thread-safe via asyncio locks. Without a storage path the collection
    lives only in memory, which is what tests and single-process demos use.
    """

    def __init__(
        self,
        storage_path: str | Path | None = None,
        *,
        max_device_public_keys: int = 16,
    ) -> None:
        """Initialize the repository.

        Args:
            storage_path: Path to the JSON storage file, or None for memory only.
            max_device_public_keys: Device keys retained per credential.
        """
        self.storage_path = Path(storage_path) if storage_path is not None else None
        self.max_device_public_keys = max_device_public_keys
        self._lock = asyncio.Lock()
        self._users: list[User] | None = None

    async def _load(self) -> list[User]:
        """Load users from storage on first access."""
        if self._users is not None:
            return self._users

        if self.storage_path is None or not self.storage_path.exists():
            self._users = []
            return self._users

        try:
            content = await asyncio.to_thread(self.storage_path.read_text, "utf-8")
            data = json.loads(content)
            self._users = [User.from_dict(record) for record in data.get("users", [])]
        except (OSError, ValueError, KeyError, TypeError) as e:
            logger.error("Failed to load users", path=str(self.storage_path), error=str(e))
            raise StorageError() from e

        return self._users

    @staticmethod
    def _write(path: Path, content: str) -> None:
        tmp_path = path.with_name(f"{path.name}.tmp")
        tmp_path.write_text(content, encoding="utf-8")
        os.replace(tmp_path, path)

    async def _persist(self, users: list[User]) -> None:
        if self.storage_path is None:
            return
        content = json.dumps({"users": [user.to_dict() for user in users]}, indent=2)
        try:
            await asyncio.to_thread(self._write, self.storage_path, content)
        except OSError as e:
            logger.error("Failed to save users", path=str(self.storage_path), error=str(e))
            raise StorageError() from e

    async def _commit(self, users: list[User]) -> None:
        """Persist and publish the next collection.

        Once the write has started it runs to completion even if the caller
        is cancelled, so the file and the in-memory view never diverge.
        """
        write = asyncio.ensure_future(self._persist(users))
        try:
            await asyncio.shield(write)
        except asyncio.CancelledError:
            await write
            self._users = users
            raise
        self._users = users

    @staticmethod
    def _index_of(users: list[User], tenant: str, username: str) -> int | None:
        for index, user in enumerate(users):
            if user.tenant == tenant and user.username == username:
                return index
        return None

    @staticmethod
    def _owner_of(users: list[User], credential_id: bytes) -> User | None:
        for user in users:
            if user.get_credential(credential_id) is not None:
                return user
        return None

    async def find_user(self, tenant: str, username: str) -> User | None:
        """Get a user by identity.

        Returns:
            A snapshot of the user if found, None otherwise.
        """
        async with self._lock:
            users = await self._load()
            index = self._index_of(users, tenant, username)
            return copy.deepcopy(users[index]) if index is not None else None

    async def find_user_by_credential_id(self, credential_id: bytes) -> User | None:
        """Get the user owning a credential id, across all users."""
        async with self._lock:
            users = await self._load()
            owner = self._owner_of(users, credential_id)
            return copy.deepcopy(owner) if owner is not None else None

    async def get_or_create_user(self, tenant: str, username: str) -> User:
        """Get a user, creating and persisting it if absent.

        Concurrent calls for the same identity observe a single record.
        """
        async with self._lock:
            users = await self._load()
            index = self._index_of(users, tenant, username)
            if index is not None:
                return copy.deepcopy(users[index])

            user = User(tenant=tenant, username=username)
            await self._commit([*users, user])
            logger.info("User created", tenant=tenant, username=username)
            return copy.deepcopy(user)

    async def add_credential(self, user: User, credential: StoredCredential) -> User:
        """Append a credential to a stored user.

        Raises:
            NotFoundError: If the user was never stored.
            DuplicateCredentialError: If the credential id exists for any user.
        """
        async with self._lock:
            users = await self._load()
            index = self._index_of(users, user.tenant, user.username)
            if index is None:
                raise NotFoundError("User not found.")
            if self._owner_of(users, credential.id) is not None:
                raise DuplicateCredentialError()

            updated = copy.deepcopy(users[index])
            updated.credentials.append(copy.deepcopy(credential))
            await self._commit([*users[:index], updated, *users[index + 1 :]])
            return copy.deepcopy(updated)

    async def update_credential_state(
        self,
        user: User,
        credential_id: bytes,
        sign_count: int,
        device_public_key: bytes | None = None,
    ) -> StoredCredential:
        """Record the outcome of a successful assertion.

        The device public key is merged with set semantics; once the set is
        full the oldest key is evicted.

        Raises:
            NotFoundError: If the user does not own the credential.
            VerificationFailedError: If the counter would move backwards.
        """
        async with self._lock:
            users = await self._load()
            index = self._index_of(users, user.tenant, user.username)
            if index is None:
                raise NotFoundError("User not found.")

            updated = copy.deepcopy(users[index])
            credential = updated.get_credential(credential_id)
            if credential is None:
                raise NotFoundError("Credential not found.")
            if sign_count < credential.sign_count:
                raise VerificationFailedError("Sign count would decrease")

            credential.sign_count = sign_count
            if device_public_key is not None and device_public_key not in credential.device_public_keys:
                credential.device_public_keys.append(device_public_key)
                overflow = len(credential.device_public_keys) - self.max_device_public_keys
                if overflow > 0:
                    del credential.device_public_keys[:overflow]
                    logger.warning(
                        "Device public keys evicted",
                        tenant=user.tenant,
                        username=user.username,
                        evicted=overflow,
                    )

            await self._commit([*users[:index], updated, *users[index + 1 :]])
            return copy.deepcopy(credential)

    async def list_users(self) -> list[User]:
        """Get all users."""
        async with self._lock:
            users = await self._load()
            return copy.deepcopy(users)

    def invalidate_cache(self) -> None:
        """Invalidate the in-memory view.

        Call this after external modifications to the storage file.
        """
        self._users = None
