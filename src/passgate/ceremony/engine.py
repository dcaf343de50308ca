"""WebAuthn ceremony engine.

Builds the option structures sent to the browser and checks client
responses against them. Signature and attestation checks are delegated to a
CeremonyVerifier; this module owns the rules around them:

- Single source of randomness for challenges (at least 16 bytes).
- Sign counter must strictly increase unless stored and reported are both 0.
- Backup-eligible and backed-up flags are checked against configured policy.

Usage:
    engine = CeremonyEngine(config, Fido2Verifier(config))
    options = engine.registration_options("acme", "alice", [])
    credential = await engine.verify_registration(response, options, is_unique)
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Any

import structlog
from fido2.utils import websafe_decode, websafe_encode
from fido2.webauthn import CollectedClientData

from passgate.ceremony.models import StoredCredential, ceremony_key
from passgate.ceremony.verifier import (
    CeremonyVerificationError,
    CeremonyVerifier,
    IsCredentialIdUnique,
    IsCredentialOwner,
)
from passgate.core.config import CredentialBackupPolicy, PassgateConfig
from passgate.core.exceptions import ValidationError, VerificationFailedError

logger = structlog.get_logger()


@dataclass
class AssertionOutcome:
    """State to commit after a verified assertion."""

    credential_id: bytes
    sign_count: int
    device_public_key: bytes | None = None


def sign_count_advanced(stored: int, reported: int) -> bool:
    """Check the anti-replay counter rule.

    Authenticators without a counter report 0 forever, so 0 after 0 passes.
    """
    if stored == 0 and reported == 0:
        return True
    return reported > stored


def _check_backup_policy(policy: CredentialBackupPolicy, flag: bool, name: str) -> None:
    if policy == CredentialBackupPolicy.REQUIRED and not flag:
        raise VerificationFailedError(f"{name} flag required by policy")
    if policy == CredentialBackupPolicy.DISALLOWED and flag:
        raise VerificationFailedError(f"{name} flag disallowed by policy")


def _short(value: bytes) -> str:
    return websafe_encode(value)[:8]


class CeremonyEngine:
    """Option builder and response checker for registration and assertion."""

    def __init__(self, config: PassgateConfig, verifier: CeremonyVerifier) -> None:
        self.config = config
        self.verifier = verifier

    def _challenge(self) -> str:
        return websafe_encode(os.urandom(self.config.challenge_size))

    def registration_options(
        self,
        tenant: str,
        username: str,
        existing: list[StoredCredential],
    ) -> dict[str, Any]:
        """Build PublicKeyCredentialCreationOptions for a user.

        Args:
            tenant: Tenant identifier.
            username: Username within the tenant.
            existing: The user's current credentials, excluded from re-registration.

        Returns:
            JSON-ready options dict. The same dict must be passed back to
            verify_registration.
        """
        key = ceremony_key(tenant, username)
        config = self.config

        selection: dict[str, Any] = {
            "residentKey": config.resident_key.value,
            "requireResidentKey": config.resident_key.value == "required",
            "userVerification": config.registration_user_verification.value,
        }
        if config.authenticator_attachment:
            selection["authenticatorAttachment"] = config.authenticator_attachment.value

        options: dict[str, Any] = {
            "rp": {"id": config.rp_id, "name": config.rp_name},
            "user": {
                "id": websafe_encode(key.encode("utf-8")),
                "name": key,
                "displayName": username,
            },
            "challenge": self._challenge(),
            "pubKeyCredParams": [
                {"type": "public-key", "alg": alg} for alg in config.pub_key_cred_algs
            ],
            "timeout": config.ceremony_timeout_ms,
            "attestation": config.attestation.value,
            "authenticatorSelection": selection,
            "extensions": {
                "credProps": True,
                "uvm": True,
                "devicePubKey": {"attestation": "none"},
            },
        }

        exclude = [credential.descriptor for credential in existing]
        if exclude:
            options["excludeCredentials"] = exclude

        return options

    async def verify_registration(
        self,
        response: dict[str, Any],
        options: dict[str, Any],
        is_credential_id_unique: IsCredentialIdUnique,
    ) -> StoredCredential:
        """Verify an attestation response against the issued options.

        Raises:
            VerificationFailedError: If the collaborator rejects the response
                or a backup policy is violated.
            DuplicateCredentialError: If the credential id is already registered.
        """
        try:
            result = await self.verifier.verify_registration(
                response, options, is_credential_id_unique
            )
        except CeremonyVerificationError as e:
            logger.warning("Registration rejected", reason=e.reason)
            raise VerificationFailedError(e.reason) from e

        self._apply_backup_policies(result.is_backup_eligible, result.is_backed_up)

        return StoredCredential(
            id=result.credential_id,
            public_key=result.public_key,
            user_handle=websafe_decode(options["user"]["id"]),
            sign_count=result.sign_count,
            attestation_format=result.attestation_format,
            aaguid=result.aaguid,
            attestation_object=result.attestation_object,
            attestation_client_data_json=result.client_data_json,
            device_public_keys=[result.device_public_key] if result.device_public_key else [],
            transports=list(result.transports),
            is_backup_eligible=result.is_backup_eligible,
            is_backed_up=result.is_backed_up,
        )

    def assertion_options(self, allowed: list[StoredCredential] | None = None) -> dict[str, Any]:
        """Build PublicKeyCredentialRequestOptions.

        With no allowed credentials the allow-list is omitted and the
        authenticator may present any discoverable credential.
        """
        options: dict[str, Any] = {
            "challenge": self._challenge(),
            "timeout": self.config.ceremony_timeout_ms,
            "rpId": self.config.rp_id,
            "userVerification": self.config.assertion_user_verification.value,
            "extensions": {"uvm": True, "devicePubKey": {}},
        }

        allow = [credential.descriptor for credential in allowed or []]
        if allow:
            options["allowCredentials"] = allow

        return options

    async def verify_assertion(
        self,
        response: dict[str, Any],
        options: dict[str, Any],
        credential: StoredCredential,
        is_owner: IsCredentialOwner,
    ) -> AssertionOutcome:
        """Verify an assertion response against a stored credential.

        Raises:
            VerificationFailedError: On a rejected signature, a counter that
                did not advance, or a backup policy violation.
        """
        try:
            result = await self.verifier.verify_assertion(
                response,
                options,
                credential.public_key,
                list(credential.device_public_keys),
                credential.sign_count,
                is_owner,
            )
        except CeremonyVerificationError as e:
            logger.warning("Assertion rejected", reason=e.reason, credential_id=_short(credential.id))
            raise VerificationFailedError(e.reason) from e

        if result.credential_id != credential.id:
            raise VerificationFailedError("Asserted credential does not match stored credential")

        if not sign_count_advanced(credential.sign_count, result.sign_count):
            logger.warning(
                "Possible cloned authenticator",
                credential_id=_short(credential.id),
                stored_sign_count=credential.sign_count,
                reported_sign_count=result.sign_count,
            )
            raise VerificationFailedError("Sign count did not increase")

        _check_backup_policy(
            self.config.backed_up_credential_policy, result.is_backed_up, "Backed up"
        )

        return AssertionOutcome(
            credential_id=result.credential_id,
            sign_count=result.sign_count,
            device_public_key=result.device_public_key,
        )

    def _apply_backup_policies(self, backup_eligible: bool, backed_up: bool) -> None:
        _check_backup_policy(
            self.config.backup_eligible_credential_policy, backup_eligible, "Backup eligible"
        )
        _check_backup_policy(self.config.backed_up_credential_policy, backed_up, "Backed up")

    @staticmethod
    def challenge_from_response(response: dict[str, Any]) -> bytes:
        """Extract the raw challenge from a response's clientDataJSON.

        Raises:
            ValidationError: If the client data is missing or malformed.
        """
        try:
            client_data = CollectedClientData(
                websafe_decode(response["response"]["clientDataJSON"])
            )
            return client_data.challenge
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            raise ValidationError("Invalid client data.") from e

    @staticmethod
    def credential_id_from_response(response: dict[str, Any]) -> bytes:
        """Extract the credential id from a response.

        Raises:
            ValidationError: If the id is missing or not base64url.
        """
        try:
            return websafe_decode(response.get("rawId") or response["id"])
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            raise ValidationError("Invalid credential id.") from e
