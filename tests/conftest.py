"""Shared fixtures for passgate tests."""

from __future__ import annotations

import pytest

from fakes import ORIGIN, RP_ID, FakeAuthenticator, StubVerifier
from passgate.ceremony import CeremonyEngine, CeremonyOrchestrator
from passgate.core.config import PassgateConfig
from passgate.storage import CredentialRepository, MemoryChallengeStore


@pytest.fixture
def config():
    """Configuration isolated from PASSGATE_ environment variables."""
    return PassgateConfig(
        rp_id=RP_ID,
        rp_name="FIDO2 Test",
        origins=[ORIGIN],
        storage_path=None,
        redis_url=None,
        challenge_ttl=300.0,
        request_timeout=10.0,
    )


@pytest.fixture
def verifier(config):
    return StubVerifier(config.origins)


@pytest.fixture
def engine(config, verifier):
    return CeremonyEngine(config, verifier)


@pytest.fixture
def repository():
    return CredentialRepository()


@pytest.fixture
def challenges():
    return MemoryChallengeStore(cleanup_interval=0.05)


@pytest.fixture
def orchestrator(config, repository, challenges, engine):
    return CeremonyOrchestrator(config, repository, challenges, engine)


@pytest.fixture
def authenticator():
    return FakeAuthenticator()
