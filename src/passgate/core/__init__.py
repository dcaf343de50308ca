"""Core."""

from .config import (
    AttestationConveyance,
    AuthenticatorAttachment,
    CredentialBackupPolicy,
    PassgateConfig,
    ResidentKey,
    UserVerification,
    clear_config,
    get_config,
)
from .exceptions import (
    ChallengeExpiredError,
    DuplicateCredentialError,
    NotFoundError,
    PassgateError,
    StorageError,
    ValidationError,
    VerificationFailedError,
    format_error,
)

__all__ = [
    "AttestationConveyance",
    "AuthenticatorAttachment",
    "CredentialBackupPolicy",
    "PassgateConfig",
    "ResidentKey",
    "UserVerification",
    "clear_config",
    "get_config",
    "ChallengeExpiredError",
    "DuplicateCredentialError",
    "NotFoundError",
    "PassgateError",
    "StorageError",
    "ValidationError",
    "VerificationFailedError",
    "format_error",
]
