"""Tests for the ceremony engine."""

from __future__ import annotations

import pytest
from fido2.utils import websafe_decode, websafe_encode
from pydantic import ValidationError as SettingsError

from passgate.ceremony.engine import CeremonyEngine, sign_count_advanced
from passgate.ceremony.models import StoredCredential
from passgate.core.config import (
    AuthenticatorAttachment,
    CredentialBackupPolicy,
    PassgateConfig,
    ResidentKey,
)
from passgate.core.exceptions import (
    DuplicateCredentialError,
    ValidationError,
    VerificationFailedError,
)

from fakes import (
    FLAG_BACKED_UP,
    FLAG_BACKUP_ELIGIBLE,
    FLAG_USER_PRESENT,
    FakeAuthenticator,
)


async def always_unique(credential_id: bytes) -> bool:
    return True


async def never_unique(credential_id: bytes) -> bool:
    return False


async def always_owner(credential_id: bytes, user_handle: bytes) -> bool:
    return True


def stored(authenticator: FakeAuthenticator, sign_count: int = 0) -> StoredCredential:
    return StoredCredential(
        id=authenticator.credential_id,
        public_key=authenticator.public_key,
        user_handle=b"acme|alice",
        sign_count=sign_count,
    )


class TestSignCountRule:
    """Tests for the anti-replay counter rule."""

    @pytest.mark.parametrize(
        ("stored_count", "reported", "expected"),
        [
            (0, 0, True),
            (0, 1, True),
            (5, 6, True),
            (5, 50, True),
            (5, 5, False),
            (5, 4, False),
            (5, 0, False),
        ],
    )
    def test_sign_count_advanced(self, stored_count, reported, expected):
        """Test strict increase with the zero-zero exemption."""
        assert sign_count_advanced(stored_count, reported) is expected


class TestRegistrationOptions:
    """Tests for creation options."""

    def test_options_shape(self, engine, config):
        """Test the options carry rp, user, challenge and policy."""
        options = engine.registration_options("acme", "alice", [])

        assert options["rp"] == {"id": "localhost", "name": "FIDO2 Test"}
        assert options["user"]["name"] == "acme|alice"
        assert options["user"]["displayName"] == "alice"
        assert websafe_decode(options["user"]["id"]) == b"acme|alice"
        assert options["attestation"] == "none"
        assert options["timeout"] == config.ceremony_timeout_ms
        assert [p["alg"] for p in options["pubKeyCredParams"]] == config.pub_key_cred_algs
        assert options["authenticatorSelection"]["residentKey"] == "discouraged"
        assert options["authenticatorSelection"]["requireResidentKey"] is False
        assert options["authenticatorSelection"]["userVerification"] == "preferred"
        assert "authenticatorAttachment" not in options["authenticatorSelection"]
        assert options["extensions"]["credProps"] is True
        assert "excludeCredentials" not in options

    def test_challenge_is_fresh_and_long_enough(self, engine):
        """Test each options issuance gets a new random challenge."""
        first = engine.registration_options("acme", "alice", [])["challenge"]
        second = engine.registration_options("acme", "alice", [])["challenge"]

        assert first != second
        assert len(websafe_decode(first)) == 32

    def test_challenge_size_minimum(self):
        """Test challenges shorter than 16 bytes are refused."""
        with pytest.raises(SettingsError):
            PassgateConfig(challenge_size=8)

    def test_minimum_challenge_size(self, verifier):
        """Test a 16-byte challenge is accepted."""
        engine = CeremonyEngine(PassgateConfig(challenge_size=16), verifier)

        challenge = engine.registration_options("acme", "alice", [])["challenge"]

        assert len(websafe_decode(challenge)) == 16

    def test_exclude_existing_credentials(self, engine):
        """Test existing credentials are excluded from re-registration."""
        existing = [
            StoredCredential(id=b"cred-1", public_key=b"k", user_handle=b"h", transports=["usb"])
        ]

        options = engine.registration_options("acme", "alice", existing)

        assert options["excludeCredentials"] == [
            {"type": "public-key", "id": websafe_encode(b"cred-1"), "transports": ["usb"]}
        ]

    def test_policy_from_config(self, verifier):
        """Test authenticator selection follows configuration."""
        config = PassgateConfig(
            resident_key=ResidentKey.REQUIRED,
            authenticator_attachment=AuthenticatorAttachment.PLATFORM,
        )
        engine = CeremonyEngine(config, verifier)

        selection = engine.registration_options("acme", "alice", [])["authenticatorSelection"]

        assert selection["residentKey"] == "required"
        assert selection["requireResidentKey"] is True
        assert selection["authenticatorAttachment"] == "platform"


class TestRegistrationVerification:
    """Tests for attestation verification."""

    @pytest.mark.asyncio
    async def test_echoed_options_are_accepted(self, engine, authenticator):
        """Test a response answering the issued options verifies."""
        options = engine.registration_options("acme", "alice", [])
        response = authenticator.make_credential(options, device_public_key=b"dpk-1")

        credential = await engine.verify_registration(response, options, always_unique)

        assert credential.id == authenticator.credential_id
        assert credential.public_key == authenticator.public_key
        assert credential.user_handle == b"acme|alice"
        assert credential.sign_count == 0
        assert credential.device_public_keys == [b"dpk-1"]
        assert credential.transports == ["internal"]

    @pytest.mark.asyncio
    async def test_initial_counter_is_kept(self, engine):
        """Test the authenticator-reported initial counter is stored."""
        authenticator = FakeAuthenticator(sign_count=12)
        options = engine.registration_options("acme", "alice", [])

        credential = await engine.verify_registration(
            authenticator.make_credential(options), options, always_unique
        )

        assert credential.sign_count == 12

    @pytest.mark.asyncio
    async def test_wrong_challenge_is_generic_failure(self, engine, authenticator):
        """Test collaborator failures never reveal which check failed."""
        options = engine.registration_options("acme", "alice", [])
        response = authenticator.make_credential(options, challenge=websafe_encode(b"x" * 32))

        with pytest.raises(VerificationFailedError) as exc_info:
            await engine.verify_registration(response, options, always_unique)

        assert exc_info.value.message == "Ceremony verification failed"
        assert exc_info.value.reason == "Challenge mismatch"

    @pytest.mark.asyncio
    async def test_wrong_origin(self, engine):
        """Test responses from foreign origins are rejected."""
        authenticator = FakeAuthenticator(origin="https://evil.example")
        options = engine.registration_options("acme", "alice", [])

        with pytest.raises(VerificationFailedError):
            await engine.verify_registration(
                authenticator.make_credential(options), options, always_unique
            )

    @pytest.mark.asyncio
    async def test_duplicate_credential(self, engine, authenticator):
        """Test a known credential id aborts registration."""
        options = engine.registration_options("acme", "alice", [])

        with pytest.raises(DuplicateCredentialError):
            await engine.verify_registration(
                authenticator.make_credential(options), options, never_unique
            )

    @pytest.mark.asyncio
    async def test_backup_eligible_required(self, verifier):
        """Test the backup-eligible policy rejects single-device credentials."""
        config = PassgateConfig(backup_eligible_credential_policy=CredentialBackupPolicy.REQUIRED)
        engine = CeremonyEngine(config, verifier)
        options = engine.registration_options("acme", "alice", [])

        with pytest.raises(VerificationFailedError):
            await engine.verify_registration(
                FakeAuthenticator().make_credential(options), options, always_unique
            )

        synced = FakeAuthenticator(flags=FLAG_USER_PRESENT | FLAG_BACKUP_ELIGIBLE)
        credential = await engine.verify_registration(
            synced.make_credential(options), options, always_unique
        )
        assert credential.is_backup_eligible is True

    @pytest.mark.asyncio
    async def test_backed_up_disallowed(self, verifier):
        """Test the backed-up policy rejects synced credentials."""
        config = PassgateConfig(backed_up_credential_policy=CredentialBackupPolicy.DISALLOWED)
        engine = CeremonyEngine(config, verifier)
        options = engine.registration_options("acme", "alice", [])
        synced = FakeAuthenticator(flags=FLAG_USER_PRESENT | FLAG_BACKUP_ELIGIBLE | FLAG_BACKED_UP)

        with pytest.raises(VerificationFailedError):
            await engine.verify_registration(synced.make_credential(options), options, always_unique)


class TestAssertionOptions:
    """Tests for request options."""

    def test_username_less_options_omit_allow_list(self, engine):
        """Test anonymous options have no allowCredentials."""
        options = engine.assertion_options([])

        assert "allowCredentials" not in options
        assert options["rpId"] == "localhost"
        assert options["userVerification"] == "discouraged"
        assert len(websafe_decode(options["challenge"])) == 32

    def test_allow_list(self, engine):
        """Test user-scoped options list the user's credentials."""
        credential = StoredCredential(id=b"cred-1", public_key=b"k", user_handle=b"h")

        options = engine.assertion_options([credential])

        assert options["allowCredentials"] == [{"type": "public-key", "id": websafe_encode(b"cred-1")}]


class TestAssertionVerification:
    """Tests for assertion verification."""

    @pytest.mark.asyncio
    async def test_counter_increase_accepted(self, engine):
        """Test a counter above the stored value is accepted."""
        authenticator = FakeAuthenticator(sign_count=5)
        options = engine.assertion_options([])
        response = authenticator.get_assertion(options, increment=3, device_public_key=b"dpk")

        outcome = await engine.verify_assertion(response, options, stored(authenticator, 5), always_owner)

        assert outcome.sign_count == 8
        assert outcome.credential_id == authenticator.credential_id
        assert outcome.device_public_key == b"dpk"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("increment", [0, -1])
    async def test_counter_replay_rejected(self, engine, increment):
        """Test a counter at or below the stored value is rejected."""
        authenticator = FakeAuthenticator(sign_count=5)
        options = engine.assertion_options([])
        response = authenticator.get_assertion(options, increment=increment)

        with pytest.raises(VerificationFailedError) as exc_info:
            await engine.verify_assertion(response, options, stored(authenticator, 5), always_owner)

        assert exc_info.value.reason == "Sign count did not increase"

    @pytest.mark.asyncio
    async def test_zero_counter_authenticator_accepted(self, engine):
        """Test authenticators without a counter keep working."""
        authenticator = FakeAuthenticator(sign_count=0)
        options = engine.assertion_options([])
        response = authenticator.get_assertion(options, increment=0)

        outcome = await engine.verify_assertion(response, options, stored(authenticator, 0), always_owner)

        assert outcome.sign_count == 0

    @pytest.mark.asyncio
    async def test_bad_signature(self, engine):
        """Test a response signed by another key is rejected."""
        authenticator = FakeAuthenticator()
        impostor = FakeAuthenticator(credential_id=authenticator.credential_id)
        options = engine.assertion_options([])

        with pytest.raises(VerificationFailedError):
            await engine.verify_assertion(
                impostor.get_assertion(options), options, stored(authenticator), always_owner
            )

    @pytest.mark.asyncio
    async def test_foreign_user_handle(self, engine):
        """Test the ownership predicate is consulted for user handles."""
        authenticator = FakeAuthenticator()
        options = engine.assertion_options([])
        response = authenticator.get_assertion(options, user_handle=b"acme|mallory")

        async def not_owner(credential_id: bytes, user_handle: bytes) -> bool:
            return False

        with pytest.raises(VerificationFailedError):
            await engine.verify_assertion(response, options, stored(authenticator), not_owner)

    @pytest.mark.asyncio
    async def test_backed_up_required_on_assertion(self, verifier):
        """Test the backed-up policy applies to asserted flags."""
        config = PassgateConfig(backed_up_credential_policy=CredentialBackupPolicy.REQUIRED)
        engine = CeremonyEngine(config, verifier)
        authenticator = FakeAuthenticator()
        options = engine.assertion_options([])

        with pytest.raises(VerificationFailedError):
            await engine.verify_assertion(
                authenticator.get_assertion(options), options, stored(authenticator), always_owner
            )


class TestResponseParsing:
    """Tests for response field extraction."""

    def test_challenge_from_response(self, engine, authenticator):
        """Test the raw challenge is recovered from client data."""
        options = engine.assertion_options([])
        response = authenticator.get_assertion(options)

        challenge = CeremonyEngine.challenge_from_response(response)

        assert websafe_encode(challenge) == options["challenge"]

    @pytest.mark.parametrize(
        "response",
        [
            {},
            {"response": {}},
            {"response": {"clientDataJSON": websafe_encode(b"not json")}},
            {"response": {"clientDataJSON": websafe_encode(b'{"type": "webauthn.get"}')}},
        ],
    )
    def test_unparsable_client_data(self, response):
        """Test malformed client data is a validation error."""
        with pytest.raises(ValidationError):
            CeremonyEngine.challenge_from_response(response)

    def test_credential_id_from_response(self):
        """Test rawId is preferred and decoded."""
        response = {"id": websafe_encode(b"from-id"), "rawId": websafe_encode(b"from-raw")}

        assert CeremonyEngine.credential_id_from_response(response) == b"from-raw"
        assert CeremonyEngine.credential_id_from_response({"id": websafe_encode(b"x")}) == b"x"

    def test_credential_id_missing(self):
        """Test a response without an id is a validation error."""
        with pytest.raises(ValidationError):
            CeremonyEngine.credential_id_from_response({})
