"""
Shared fixtures for the clinic onboarding tests.

Everything runs against the in-memory store and counters with a fake clock,
unless a test builds the SQL store itself.
"""
from datetime import datetime, timedelta, timezone

import pytest

from clinic_onboarding.config import Settings
from clinic_onboarding.models.domain import AttemptRecord
from clinic_onboarding.services.codes import (
    CodeHasher, InMemoryCodeStore, InMemoryCounterStore, build_engine,
)


TEST_HASH_SECRET = "test-code-hash-secret"
TEST_JWT_SECRET = "test-jwt-secret"


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime = None):
        self.now = start or datetime(2024, 1, 15, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


def make_attempt(timestamp, success=False, client_ip="10.0.0.1", user_agent="pytest", action="code_validation"):
    return AttemptRecord(
        action=action,
        client_ip=client_ip,
        user_agent=user_agent,
        success=success,
        timestamp=timestamp,
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings():
    return Settings(
        store_backend="memory",
        jwt_secret_key=TEST_JWT_SECRET,
        code_hash_secret=TEST_HASH_SECRET,
        code_hash_iterations=1000,
        anomaly_timezone="UTC",
        log_level="WARNING",
    )


@pytest.fixture
def hasher(settings):
    return CodeHasher(settings.code_hash_secret, iterations=settings.code_hash_iterations)


@pytest.fixture
def store():
    return InMemoryCodeStore()


@pytest.fixture
def engine(settings, store, clock):
    return build_engine(settings, store=store, counter_store=InMemoryCounterStore(), clock=clock)


@pytest.fixture
async def clinic(engine):
    """An active clinic owned by doctor-1."""
    return await engine.clinic_codes.issue("Seoul Family Clinic", "clinic", "SEOUL", "doctor-1")
