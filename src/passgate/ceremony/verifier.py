"""Cryptographic verification of ceremony responses.

The ceremony engine never touches signatures, attestation statements or COSE
keys itself. It hands the client's response and the options it issued to a
CeremonyVerifier, which either returns the verified facts or raises
CeremonyVerificationError.

Fido2Verifier is the production implementation on top of the fido2
library's Fido2Server.

Requires:
    pip install 'fido2>=1.1,<2'
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

import fido2.features
import structlog
from fido2 import cbor
from fido2.cose import CoseKey
from fido2.server import Fido2Server
from fido2.utils import websafe_decode, websafe_encode
from fido2.webauthn import (
    Aaguid,
    AttestedCredentialData,
    AttestationObject,
    AuthenticatorData,
    PublicKeyCredentialRpEntity,
)

from passgate.core.config import PassgateConfig
from passgate.core.exceptions import DuplicateCredentialError

fido2.features.webauthn_json_mapping.enabled = True

logger = structlog.get_logger()

IsCredentialIdUnique = Callable[[bytes], Awaitable[bool]]
"""Async predicate: True when no user owns the credential id yet."""

IsCredentialOwner = Callable[[bytes, bytes], Awaitable[bool]]
"""Async predicate over (credential_id, user_handle): True when the handle owns the credential."""

# Authenticator data flags
FLAG_BACKUP_ELIGIBLE = 0x08
FLAG_BACKED_UP = 0x10

DEVICE_PUBLIC_KEY_EXTENSION = "devicePubKey"


class CeremonyVerificationError(Exception):
    """A response failed cryptographic or protocol verification.

    The reason is for server logs only.
    """

    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(reason)


@dataclass
class RegistrationResult:
    """Verified facts from an attestation response."""

    credential_id: bytes
    public_key: bytes
    sign_count: int
    attestation_format: str = "none"
    aaguid: bytes = b""
    attestation_object: bytes = b""
    client_data_json: bytes = b""
    transports: list[str] = field(default_factory=list)
    device_public_key: bytes | None = None
    is_backup_eligible: bool = False
    is_backed_up: bool = False


@dataclass
class AssertionResult:
    """Verified facts from an assertion response."""

    credential_id: bytes
    sign_count: int
    device_public_key: bytes | None = None
    is_backup_eligible: bool = False
    is_backed_up: bool = False


class CeremonyVerifier(ABC):
    """Verifies ceremony responses against the options that were issued."""

    @abstractmethod
    async def verify_registration(
        self,
        response: dict[str, Any],
        options: dict[str, Any],
        is_credential_id_unique: IsCredentialIdUnique,
    ) -> RegistrationResult:
        """Verify an attestation response.

        Raises:
            CeremonyVerificationError: On any failed check.
            DuplicateCredentialError: If the credential id is already registered.
        """

    @abstractmethod
    async def verify_assertion(
        self,
        response: dict[str, Any],
        options: dict[str, Any],
        public_key: bytes,
        device_public_keys: list[bytes],
        sign_count: int,
        is_owner: IsCredentialOwner,
    ) -> AssertionResult:
        """Verify an assertion response against a stored public key.

        The stored counter is passed for context; the increasing-counter rule
        is enforced by the caller.

        Raises:
            CeremonyVerificationError: On any failed check.
        """


def _flags(auth_data: AuthenticatorData) -> tuple[bool, bool]:
    return bool(auth_data.flags & FLAG_BACKUP_ELIGIBLE), bool(auth_data.flags & FLAG_BACKED_UP)


def _device_public_key(auth_data: AuthenticatorData) -> bytes | None:
    extensions = auth_data.extensions or {}
    value = extensions.get(DEVICE_PUBLIC_KEY_EXTENSION)
    if value is None:
        return None
    return value if isinstance(value, bytes) else cbor.encode(value)


def _state(options: dict[str, Any], user_verification: str | None) -> dict[str, Any]:
    return {"challenge": options["challenge"], "user_verification": user_verification}


class Fido2Verifier(CeremonyVerifier):
    """CeremonyVerifier backed by fido2.server.Fido2Server.

    Fido2Server checks challenge, origin, rp id hash, user presence, user
    verification, attestation and signatures. The response fields it does
    not surface are parsed here from the same base64url JSON.
    """

    def __init__(self, config: PassgateConfig) -> None:
        self._origins = set(config.origins)
        attestation = config.attestation.value
        self._server = Fido2Server(
            PublicKeyCredentialRpEntity(id=config.rp_id, name=config.rp_name),
            attestation=None if attestation == "none" else attestation,
            verify_origin=self._verify_origin,
        )

    def _verify_origin(self, origin: str) -> bool:
        return origin in self._origins

    async def verify_registration(
        self,
        response: dict[str, Any],
        options: dict[str, Any],
        is_credential_id_unique: IsCredentialIdUnique,
    ) -> RegistrationResult:
        user_verification = options.get("authenticatorSelection", {}).get("userVerification")
        try:
            auth_data = self._server.register_complete(_state(options, user_verification), response)
            body = response["response"]
            client_data = websafe_decode(body["clientDataJSON"])
            attestation_object = AttestationObject(websafe_decode(body["attestationObject"]))
        except Exception as e:
            raise CeremonyVerificationError(f"Registration failed: {e}") from e

        credential_data = auth_data.credential_data
        if credential_data is None:
            raise CeremonyVerificationError("No credential data in response")

        if not await is_credential_id_unique(credential_data.credential_id):
            raise DuplicateCredentialError()

        backup_eligible, backed_up = _flags(auth_data)
        transports = body.get("transports") or response.get("transports") or []

        return RegistrationResult(
            credential_id=credential_data.credential_id,
            public_key=cbor.encode(credential_data.public_key),
            sign_count=auth_data.counter,
            attestation_format=attestation_object.fmt,
            aaguid=bytes(credential_data.aaguid),
            attestation_object=bytes(attestation_object),
            client_data_json=client_data,
            transports=list(transports),
            device_public_key=_device_public_key(auth_data),
            is_backup_eligible=backup_eligible,
            is_backed_up=backed_up,
        )

    async def verify_assertion(
        self,
        response: dict[str, Any],
        options: dict[str, Any],
        public_key: bytes,
        device_public_keys: list[bytes],
        sign_count: int,
        is_owner: IsCredentialOwner,
    ) -> AssertionResult:
        try:
            body = response["response"]
            credential_id = websafe_decode(response.get("rawId") or response["id"])
            attested = AttestedCredentialData.create(
                Aaguid.NONE, credential_id, CoseKey.parse(cbor.decode(public_key))
            )
            self._server.authenticate_complete(
                _state(options, options.get("userVerification")), [attested], response
            )
            auth_data = AuthenticatorData(websafe_decode(body["authenticatorData"]))
            user_handle = websafe_decode(body["userHandle"]) if body.get("userHandle") else None
        except Exception as e:
            raise CeremonyVerificationError(f"Authentication failed: {e}") from e

        if user_handle and not await is_owner(credential_id, user_handle):
            raise CeremonyVerificationError("User handle does not own the credential")

        backup_eligible, backed_up = _flags(auth_data)
        device_public_key = _device_public_key(auth_data)
        if device_public_key is not None and device_public_key in device_public_keys:
            logger.debug("Known device public key presented", credential_id=websafe_encode(credential_id)[:8])

        return AssertionResult(
            credential_id=credential_id,
            sign_count=auth_data.counter,
            device_public_key=device_public_key,
            is_backup_eligible=backup_eligible,
            is_backed_up=backed_up,
        )
