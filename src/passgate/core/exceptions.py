"""Error taxonomy for passkey ceremonies.

Every error carries a machine-readable ``code`` and the HTTP ``status`` the
server answers with, so handlers never need their own mapping table.
Verification failures always present the same generic message to clients;
the specific reason is logged server-side only.
"""

from __future__ import annotations

from typing import Any


class PassgateError(Exception):
    """Base class for all ceremony errors."""

    code = "ERROR"
    status = 500
    default_message = "Internal error"

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)


class ValidationError(PassgateError):
    """Required identity fields are missing or the payload is malformed."""

    code = "VALIDATION_ERROR"
    status = 400
    default_message = "Invalid request"


class NotFoundError(PassgateError):
    """User or credential is unknown."""

    code = "NOT_FOUND"
    status = 404
    default_message = "Not found"


class ChallengeExpiredError(PassgateError):
    """Pending options are absent, expired, or already consumed."""

    code = "CHALLENGE_NOT_FOUND"
    status = 400
    default_message = "Ceremony options not found or expired"


class VerificationFailedError(PassgateError):
    """Signature, origin, challenge or sign counter check failed."""

    code = "VERIFICATION_FAILED"
    status = 400
    default_message = "Ceremony verification failed"

    def __init__(self, message: str | None = None) -> None:
        # Callers may pass a reason for logs; clients always get the generic text.
        super().__init__(None)
        self.reason = message


class DuplicateCredentialError(PassgateError):
    """Credential id is already registered to some user."""

    code = "DUPLICATE_CREDENTIAL"
    status = 400
    default_message = "Credential is already registered"


class StorageError(PassgateError):
    """Repository or challenge store I/O failed."""

    code = "STORAGE_ERROR"
    status = 503
    default_message = "Storage unavailable"


def format_error(code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    """Build the JSON error body returned by the HTTP surface."""
    return {
        "error": {
            "code": str(code).upper(),
            "message": message,
            "details": details if details is not None else {},
        }
    }
