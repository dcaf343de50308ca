"""Users and stored credentials.

Byte fields are serialized as unpadded base64url, datetimes as ISO-8601.

Storage format (one user record):
    {
        "tenant": "acme",
        "username": "alice",
        "created_at": "2024-01-15T10:00:00+00:00",
        "credentials": [
            {
                "id": "q0ZK...",
                "public_key": "pQECAyYg...",
                "user_handle": "YWNtZXxhbGljZQ",
                "sign_count": 4,
                ...
            }
        ]
    }
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from fido2.utils import websafe_decode, websafe_encode


def _utc_now() -> datetime:
    """Return current UTC datetime."""
    return datetime.now(UTC)


IDENTITY_SEPARATOR = "|"


def ceremony_key(tenant: str, username: str) -> str:
    """Composite identity key, also used as the user handle and registration store key.

    Unambiguous only while the tenant holds no separator; the orchestrator
    rejects such tenants.
    """
    return f"{tenant}{IDENTITY_SEPARATOR}{username}"


@dataclass
class StoredCredential:
    """Registered authenticator for one user."""

    id: bytes
    """Credential ID (globally unique)."""

    public_key: bytes
    """CBOR-encoded COSE public key."""

    user_handle: bytes
    """Handle of the owning user."""

    sign_count: int = 0
    """Signature counter for clone detection."""

    registered_at: datetime = field(default_factory=_utc_now)

    attestation_format: str = "none"

    aaguid: bytes = b""
    """Authenticator AAGUID (model identifier)."""

    attestation_object: bytes = b""
    """Raw attestation object, retained for audit."""

    attestation_client_data_json: bytes = b""
    """Raw registration client data, retained for audit."""

    device_public_keys: list[bytes] = field(default_factory=list)

    transports: list[str] = field(default_factory=list)
    """Supported transports (usb, nfc, ble, internal, hybrid)."""

    is_backup_eligible: bool = False

    is_backed_up: bool = False

    @property
    def id_b64(self) -> str:
        """Get credential ID as URL-safe base64."""
        return websafe_encode(self.id)

    @property
    def descriptor(self) -> dict[str, Any]:
        """Public key credential descriptor for allow and exclude lists."""
        descriptor: dict[str, Any] = {"type": "public-key", "id": self.id_b64}
        if self.transports:
            descriptor["transports"] = list(self.transports)
        return descriptor

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "id": websafe_encode(self.id),
            "public_key": websafe_encode(self.public_key),
            "user_handle": websafe_encode(self.user_handle),
            "sign_count": self.sign_count,
            "registered_at": self.registered_at.isoformat(),
            "attestation_format": self.attestation_format,
            "aaguid": websafe_encode(self.aaguid),
            "attestation_object": websafe_encode(self.attestation_object),
            "attestation_client_data_json": websafe_encode(self.attestation_client_data_json),
            "device_public_keys": [websafe_encode(key) for key in self.device_public_keys],
            "transports": list(self.transports),
            "is_backup_eligible": self.is_backup_eligible,
            "is_backed_up": self.is_backed_up,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> StoredCredential:
        """Create from dictionary (JSON deserialization)."""
        return cls(
            id=websafe_decode(data["id"]),
            public_key=websafe_decode(data["public_key"]),
            user_handle=websafe_decode(data["user_handle"]),
            sign_count=data.get("sign_count", 0),
            registered_at=datetime.fromisoformat(data["registered_at"])
            if data.get("registered_at")
            else _utc_now(),
            attestation_format=data.get("attestation_format", "none"),
            aaguid=websafe_decode(data.get("aaguid", "")),
            attestation_object=websafe_decode(data.get("attestation_object", "")),
            attestation_client_data_json=websafe_decode(
                data.get("attestation_client_data_json", "")
            ),
            device_public_keys=[websafe_decode(key) for key in data.get("device_public_keys", [])],
            transports=data.get("transports", []),
            is_backup_eligible=data.get("is_backup_eligible", False),
            is_backed_up=data.get("is_backed_up", False),
        )


@dataclass
class User:
    """A (tenant, username) identity and its credentials."""

    tenant: str
    username: str
    created_at: datetime = field(default_factory=_utc_now)
    credentials: list[StoredCredential] = field(default_factory=list)

    @property
    def key(self) -> str:
        return ceremony_key(self.tenant, self.username)

    @property
    def user_handle(self) -> bytes:
        return self.key.encode("utf-8")

    def get_credential(self, credential_id: bytes) -> StoredCredential | None:
        for credential in self.credentials:
            if credential.id == credential_id:
                return credential
        return None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "tenant": self.tenant,
            "username": self.username,
            "created_at": self.created_at.isoformat(),
            "credentials": [credential.to_dict() for credential in self.credentials],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> User:
        """Create from dictionary (JSON deserialization)."""
        return cls(
            tenant=data["tenant"],
            username=data["username"],
            created_at=datetime.fromisoformat(data["created_at"])
            if data.get("created_at")
            else _utc_now(),
            credentials=[StoredCredential.from_dict(c) for c in data.get("credentials", [])],
        )
