"""Passkey registration and assertion ceremonies."""

from .engine import AssertionOutcome, CeremonyEngine, sign_count_advanced
from .models import StoredCredential, User, ceremony_key
from .orchestrator import CeremonyOrchestrator
from .verifier import (
    AssertionResult,
    CeremonyVerificationError,
    CeremonyVerifier,
    Fido2Verifier,
    RegistrationResult,
)

__all__ = [
    "AssertionOutcome",
    "AssertionResult",
    "CeremonyEngine",
    "CeremonyOrchestrator",
    "CeremonyVerificationError",
    "CeremonyVerifier",
    "Fido2Verifier",
    "RegistrationResult",
    "StoredCredential",
    "User",
    "ceremony_key",
    "sign_count_advanced",
]
