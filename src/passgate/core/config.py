"""Configuration types with environment variable support.

All settings can be configured via environment variables with the PASSGATE_ prefix.
Example: PASSGATE_RP_ID=example.com sets the relying party id.
"""

from __future__ import annotations

import tomllib
from enum import Enum
from pathlib import Path
from typing import Any

import yaml
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class AuthenticatorAttachment(str, Enum):
    """Authenticator attachment modality."""

    PLATFORM = "platform"  # Built-in (TouchID, Windows Hello)
    CROSS_PLATFORM = "cross-platform"  # USB/NFC key


class UserVerification(str, Enum):
    """User verification requirement."""

    REQUIRED = "required"
    PREFERRED = "preferred"
    DISCOURAGED = "discouraged"


class ResidentKey(str, Enum):
    """Resident key (discoverable credential) requirement."""

    REQUIRED = "required"
    PREFERRED = "preferred"
    DISCOURAGED = "discouraged"


class AttestationConveyance(str, Enum):
    """Attestation conveyance preference."""

    NONE = "none"
    INDIRECT = "indirect"
    DIRECT = "direct"
    ENTERPRISE = "enterprise"


class CredentialBackupPolicy(str, Enum):
    """Policy applied to the backup-eligible and backed-up authenticator flags."""

    ALLOWED = "allowed"
    REQUIRED = "required"
    DISALLOWED = "disallowed"


# ES256, EdDSA, ES384, ES512, RS256, PS256, RS384, RS512
DEFAULT_ALGORITHMS = [-7, -8, -35, -36, -257, -37, -258, -259]

MIN_CHALLENGE_SIZE = 16


def load_config_from_file(path: str | Path) -> dict[str, Any]:
    """Load configuration from a YAML or TOML file.

    Args:
        path: Path to the configuration file (.yaml, .yml, or .toml)

    Returns:
        Configuration dictionary

    Raises:
        FileNotFoundError: If the config file doesn't exist
        ValueError: If the config file has encoding errors, invalid syntax, or unsupported format
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    try:
        content = path.read_text(encoding="utf-8")
    except UnicodeDecodeError as e:
        raise ValueError(f"Config file encoding error in {path}: {e}") from e

    try:
        if path.suffix in (".yaml", ".yml"):
            return yaml.safe_load(content) or {}
        elif path.suffix == ".toml":
            return tomllib.loads(content)
        else:
            raise ValueError(f"Unsupported config format: {path.suffix}")
    except yaml.YAMLError as e:
        raise ValueError(f"Invalid YAML in {path}: {e}") from e
    except tomllib.TOMLDecodeError as e:
        raise ValueError(f"Invalid TOML in {path}: {e}") from e


def flatten_config(config: dict[str, Any], prefix: str = "") -> dict[str, Any]:
    result: dict[str, Any] = {}
    for key, value in config.items():
        full_key = f"{prefix}_{key}" if prefix else key
        if isinstance(value, dict):
            result.update(flatten_config(value, full_key))
        else:
            result[full_key] = value
    return result


class PassgateConfig(BaseSettings):
    """Relying party, ceremony policy, storage and server settings.

    Use get_config() to get a cached instance.

    Example:
        config = get_config()
        print(config.rp_id)
        print(config.challenge_ttl)
    """

    model_config = SettingsConfigDict(
        env_prefix="PASSGATE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Relying party
    rp_id: str = Field(
        default="localhost",
        description="Relying party id (the server domain).",
    )
    rp_name: str = Field(
        default="FIDO2 Test",
        description="Relying party display name.",
    )
    origins: list[str] = Field(
        default_factory=lambda: ["https://localhost"],
        description="Origins accepted in client data.",
    )

    # Ceremony policy
    challenge_size: int = Field(
        default=32,
        ge=MIN_CHALLENGE_SIZE,
        description="Random challenge length in bytes (minimum 16).",
    )
    challenge_ttl: float = Field(
        default=300.0,
        gt=0,
        description="Seconds a pending ceremony stays valid.",
    )
    ceremony_timeout_ms: int = Field(
        default=60000,
        description="Timeout hint sent to the client, in milliseconds.",
    )
    attestation: AttestationConveyance = Field(
        default=AttestationConveyance.NONE,
        description="Attestation conveyance preference.",
    )
    resident_key: ResidentKey = Field(
        default=ResidentKey.DISCOURAGED,
        description="Resident key requirement for registration.",
    )
    registration_user_verification: UserVerification = Field(
        default=UserVerification.PREFERRED,
        description="User verification requirement for registration.",
    )
    assertion_user_verification: UserVerification = Field(
        default=UserVerification.DISCOURAGED,
        description="User verification requirement for assertion.",
    )
    authenticator_attachment: AuthenticatorAttachment | None = Field(
        default=None,
        description="Restrict registration to platform or cross-platform authenticators.",
    )
    pub_key_cred_algs: list[int] = Field(
        default_factory=lambda: list(DEFAULT_ALGORITHMS),
        description="COSE algorithm identifiers offered at registration, in preference order.",
    )
    backup_eligible_credential_policy: CredentialBackupPolicy = Field(
        default=CredentialBackupPolicy.ALLOWED,
        description="Policy for the backup-eligible flag.",
    )
    backed_up_credential_policy: CredentialBackupPolicy = Field(
        default=CredentialBackupPolicy.ALLOWED,
        description="Policy for the backed-up flag.",
    )
    max_device_public_keys: int = Field(
        default=16,
        ge=1,
        description="Maximum device public keys retained per credential (oldest evicted).",
    )

    # Storage
    storage_path: str | None = Field(
        default=None,
        description="JSON file holding users and credentials. None keeps them in memory.",
    )
    redis_url: str | None = Field(
        default=None,
        description="Redis URL for pending ceremonies. None uses the in-memory store.",
    )
    redis_prefix: str = Field(
        default="passgate:ceremony:",
        description="Key prefix for pending ceremonies in Redis.",
    )
    challenge_cleanup_interval: float = Field(
        default=60.0,
        gt=0,
        description="Seconds between sweeps of expired in-memory ceremonies.",
    )

    # Server
    host: str = Field(default="0.0.0.0", description="HTTP bind host.")
    port: int = Field(default=8080, description="HTTP bind port.")
    request_timeout: float | None = Field(
        default=10.0,
        description="Per-request deadline in seconds. None or 0 for indefinite.",
    )
    log_level: str = Field(default="info", description="Log level.")

    @field_validator("pub_key_cred_algs")
    @classmethod
    def _require_algorithms(cls, value: list[int]) -> list[int]:
        if not value:
            raise ValueError("pub_key_cred_algs must list at least one algorithm")
        return value

    @property
    def effective_request_timeout(self) -> float | None:
        """Per-request deadline, None when disabled."""
        return self.request_timeout or None

    def to_display_dict(self) -> dict[str, Any]:
        """Export current configuration as a nested dictionary for display."""
        values = self.model_dump(mode="json")
        return {
            "relying_party": {k: values[k] for k in ("rp_id", "rp_name", "origins")},
            "ceremony": {
                k: values[k]
                for k in (
                    "challenge_size",
                    "challenge_ttl",
                    "ceremony_timeout_ms",
                    "attestation",
                    "resident_key",
                    "registration_user_verification",
                    "assertion_user_verification",
                    "authenticator_attachment",
                    "pub_key_cred_algs",
                    "backup_eligible_credential_policy",
                    "backed_up_credential_policy",
                    "max_device_public_keys",
                )
            },
            "storage": {
                k: values[k]
                for k in ("storage_path", "redis_url", "redis_prefix", "challenge_cleanup_interval")
            },
            "server": {k: values[k] for k in ("host", "port", "request_timeout", "log_level")},
        }


_config: PassgateConfig | None = None


def get_config() -> PassgateConfig:
    """Get the global configuration instance.

    Returns a cached instance of PassgateConfig that reads from environment variables.
    To reload config (e.g., in tests), call clear_config() first.
    """
    global _config
    if _config is None:
        _config = PassgateConfig()
    return _config


def clear_config() -> None:
    """Clear the cached configuration.

    Call this to force reloading of environment variables on next get_config() call.
    """
    global _config
    _config = None


CONFIG_SECTIONS = ("relying_party", "ceremony", "storage", "server")


def config_overrides_from_file(path: str | Path) -> dict[str, Any]:
    """Load a config file into PassgateConfig keyword arguments.

    Accepts flat keys or keys grouped under the sections shown by
    ``passgate config show``.
    """
    overrides: dict[str, Any] = {}
    for key, value in flatten_config(load_config_from_file(path)).items():
        for section in CONFIG_SECTIONS:
            if key.startswith(f"{section}_"):
                key = key[len(section) + 1 :]
                break
        overrides[key] = value
    return overrides
