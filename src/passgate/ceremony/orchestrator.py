"""Per-request sequencing of the passkey ceremonies.

Registration pending options are keyed by ``tenant|username``; assertion
pending options are keyed by the base64url challenge, since username-less
flows have no identity until the response arrives. Pending options are
consumed with a single pop before verification, so a challenge is spent
whether verification succeeds or not.
"""

from __future__ import annotations

import asyncio
import json
from typing import TYPE_CHECKING, Any

import structlog
from fido2.utils import websafe_encode

from passgate.ceremony.engine import CeremonyEngine
from passgate.ceremony.models import IDENTITY_SEPARATOR, StoredCredential, User, ceremony_key
from passgate.core.config import PassgateConfig
from passgate.core.exceptions import (
    ChallengeExpiredError,
    NotFoundError,
    ValidationError,
)

if TYPE_CHECKING:
    from passgate.storage.challenges import ChallengeStore
    from passgate.storage.repository import CredentialRepository

logger = structlog.get_logger()


def _require_identity(tenant: str | None, username: str | None) -> tuple[str, str]:
    if not tenant or not username:
        raise ValidationError("Tenant and username are required.")
    # The first separator splits the key, so a tenant may not contain one.
    if IDENTITY_SEPARATOR in tenant:
        raise ValidationError(f"Tenant must not contain '{IDENTITY_SEPARATOR}'.")
    return tenant, username


class CeremonyOrchestrator:
    """Ties the challenge store, repository and engine together.

    One instance per process; the repository and store are injected so tests
    can run isolated instances side by side.
    """

    def __init__(
        self,
        config: PassgateConfig,
        repository: CredentialRepository,
        challenges: ChallengeStore,
        engine: CeremonyEngine,
    ) -> None:
        self.config = config
        self.repository = repository
        self.challenges = challenges
        self.engine = engine

    def _deadline(self) -> asyncio.Timeout:
        return asyncio.timeout(self.config.effective_request_timeout)

    async def _consume(self, key: str, message: str) -> dict[str, Any]:
        raw = await self.challenges.pop(key)
        if raw is None:
            logger.info("Pending ceremony not found", key=key[:8])
            raise ChallengeExpiredError(message)
        return json.loads(raw)

    async def begin_registration(self, tenant: str | None, username: str | None) -> dict[str, Any]:
        """Issue creation options, creating the user on first use."""
        tenant, username = _require_identity(tenant, username)
        async with self._deadline():
            user = await self.repository.get_or_create_user(tenant, username)
            options = self.engine.registration_options(tenant, username, user.credentials)
            await self.challenges.put(
                ceremony_key(tenant, username), json.dumps(options), self.config.challenge_ttl
            )
        logger.info("Registration options issued", tenant=tenant, username=username)
        return options

    async def complete_registration(
        self,
        tenant: str | None,
        username: str | None,
        response: dict[str, Any],
    ) -> StoredCredential:
        """Verify an attestation response and store the new credential.

        Raises:
            ValidationError: If tenant or username is missing.
            NotFoundError: If the user does not exist.
            ValidationError: If the client data cannot be parsed.
            ChallengeExpiredError: If no live options are pending for the user
                or they carry a different challenge.
            VerificationFailedError: If verification fails.
            DuplicateCredentialError: If the credential id is already registered.
        """
        tenant, username = _require_identity(tenant, username)
        async with self._deadline():
            user = await self.repository.find_user(tenant, username)
            if user is None:
                raise NotFoundError("User not found.")

            challenge = self.engine.challenge_from_response(response)
            options = await self._consume(
                ceremony_key(tenant, username), "User registration options not found."
            )
            # The entry is spent even when the response answers some other challenge.
            if websafe_encode(challenge) != options.get("challenge"):
                logger.warning("Registration challenge mismatch", tenant=tenant, username=username)
                raise ChallengeExpiredError("User registration options not found.")

            async def is_credential_id_unique(credential_id: bytes) -> bool:
                return await self.repository.find_user_by_credential_id(credential_id) is None

            credential = await self.engine.verify_registration(
                response, options, is_credential_id_unique
            )
            await self.repository.add_credential(user, credential)

        logger.info(
            "Credential registered",
            tenant=tenant,
            username=username,
            credential_id=credential.id_b64[:8],
            attestation_format=credential.attestation_format,
        )
        return credential

    async def begin_assertion(
        self,
        tenant: str | None = None,
        username: str | None = None,
    ) -> dict[str, Any]:
        """Issue request options.

        Without an identity the options carry no allow-list. With one, the
        allow-list holds the user's credentials.

        Raises:
            ValidationError: If only one of tenant and username is given.
            NotFoundError: If the named user does not exist.
        """
        allowed: list[StoredCredential] = []
        async with self._deadline():
            if tenant is not None or username is not None:
                tenant, username = _require_identity(tenant, username)
                user = await self.repository.find_user(tenant, username)
                if user is None:
                    raise NotFoundError("User not found.")
                allowed = user.credentials

            options = self.engine.assertion_options(allowed)
            await self.challenges.put(
                options["challenge"], json.dumps(options), self.config.challenge_ttl
            )
        logger.info("Assertion options issued", tenant=tenant, username=username)
        return options

    async def complete_assertion(self, response: dict[str, Any]) -> User:
        """Verify an assertion response and commit the credential state.

        Returns:
            The authenticated user.

        Raises:
            ValidationError: If the client data cannot be parsed.
            ChallengeExpiredError: If the challenge is unknown, expired or spent.
            NotFoundError: If no user owns the credential.
            VerificationFailedError: If verification fails.
        """
        async with self._deadline():
            challenge = self.engine.challenge_from_response(response)
            options = await self._consume(
                websafe_encode(challenge), "Challenge not found, please request new assertion options."
            )

            credential_id = self.engine.credential_id_from_response(response)
            user = await self.repository.find_user_by_credential_id(credential_id)
            credential = user.get_credential(credential_id) if user is not None else None
            if user is None or credential is None:
                raise NotFoundError("Credential not found.")

            async def is_owner(candidate_id: bytes, user_handle: bytes) -> bool:
                owner = await self.repository.find_user_by_credential_id(candidate_id)
                return owner is not None and owner.user_handle == user_handle

            outcome = await self.engine.verify_assertion(response, options, credential, is_owner)
            await self.repository.update_credential_state(
                user, outcome.credential_id, outcome.sign_count, outcome.device_public_key
            )

        logger.info(
            "Assertion verified",
            tenant=user.tenant,
            username=user.username,
            sign_count=outcome.sign_count,
        )
        return user
