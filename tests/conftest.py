# tests/conftest.py
"""
Pytest configuration and shared fixtures.

- Environment defaults applied before the app is imported
- FrozenClock for moving time without sleeping
- In-memory credential store + stub notifier with outbox
- Service container and TestClient wired to them
"""

import os
import sys
from pathlib import Path
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock
from zoneinfo import ZoneInfo

import bcrypt
import pytest
from fastapi.testclient import TestClient

# Make "from ignite.main import create_app" work when tests run from CI/workdir
sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

TEST_JWT_SECRET = "test-secret-for-testing-only-not-production"

# Must be set before ignite.* is imported (limiter flag, module-level app)
os.environ["JWT_SECRET"] = TEST_JWT_SECRET
os.environ["BCRYPT_ROUNDS"] = "4"
os.environ["RATE_LIMIT_ENABLED"] = "off"
os.environ["OTP_PROVIDER"] = "stub"
os.environ["APP_TIMEZONE"] = "Australia/Sydney"
os.environ.pop("SUPABASE_URL", None)
os.environ.pop("SUPABASE_KEY", None)

from ignite.main import create_app  # noqa: E402
from ignite.accounts.auth import TokenIssuer, hash_password  # noqa: E402
from ignite.accounts.auth_routes import limiter  # noqa: E402
from ignite.accounts.models import ProfileRecord, ProfileStatus, RegisterInput  # noqa: E402
from ignite.accounts.otp import StubOTPService  # noqa: E402
from ignite.accounts.services import build_services  # noqa: E402
from ignite.accounts.store import MemoryCredentialStore  # noqa: E402


# ============================================================
# Rate Limiter Disabling
# ============================================================
# Disable rate limiting in tests only (prevents 429 when many POSTs run)

limiter.enabled = False

SYDNEY = ZoneInfo("Australia/Sydney")

# 12:00 in Sydney (AEDT, UTC+11), far from local midnight
START = datetime(2026, 3, 10, 1, 0, tzinfo=timezone.utc)

PASSWORD = "Sup3rSecret!"


# ============================================================
# Clock
# ============================================================

class FrozenClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime = START):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta) -> datetime:
        self.now = self.now + timedelta(**delta)
        return self.now

    def set(self, when: datetime) -> datetime:
        self.now = when
        return self.now


@pytest.fixture
def clock():
    return FrozenClock()


# ============================================================
# Components
# ============================================================

@pytest.fixture
def store():
    return MemoryCredentialStore()


@pytest.fixture
def notifier():
    """Stub notifier; every sent code lands in notifier.outbox."""
    return StubOTPService()


@pytest.fixture
def tokens(clock):
    return TokenIssuer(secret=TEST_JWT_SECRET, issuer="ignite-api", audience="ignite-app", clock=clock)


@pytest.fixture
def services(store, notifier, clock, tokens):
    return build_services(store=store, otp_service=notifier, clock=clock, tokens=tokens, timezone=SYDNEY)


@pytest.fixture
def client(services):
    """TestClient against a fresh app wired to the in-memory services."""
    with TestClient(create_app(services)) as c:
        yield c


# ============================================================
# Sample Data
# ============================================================

@pytest.fixture
def register_payload():
    """Valid /auth/register body (camelCase, as sent by the frontend)."""
    return {
        "fullName": "Ada Lovelace",
        "institutionalId": "z1234567",
        "level": "Undergraduate",
        "yearIntake": 2024,
        "isIndonesian": True,
        "program": "Bachelor of Computer Science",
        "major": "Artificial Intelligence",
        "email": "ada@example.com",
        "password": PASSWORD,
        "confirmPassword": PASSWORD,
    }


@pytest.fixture
def make_register_input(register_payload):
    """Factory for RegisterInput with field overrides (camelCase keys)."""
    def _make(**overrides):
        payload = dict(register_payload)
        payload.update(overrides)
        return RegisterInput(**payload)
    return _make


@pytest.fixture
def active_profile(store, clock):
    """An ACTIVE member that can request a password reset."""
    return store.insert_profile(ProfileRecord(
        email="grace@example.com",
        institutional_id="z7654321",
        full_name="Grace Hopper",
        status=ProfileStatus.ACTIVE,
        password_hash=hash_password("OldPassw0rd!"),
        created_at=clock(),
        updated_at=clock(),
    ))


def password_matches(password: str, password_hash: str) -> bool:
    return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))


def wrong_code(code: str) -> str:
    """A 6-digit code guaranteed to differ from `code`."""
    return "000000" if code != "000000" else "111111"


# ============================================================
# Database Mock Fixtures
# ============================================================

@pytest.fixture
def mock_supabase():
    """MagicMock standing in for a supabase-py client."""
    mock_client = MagicMock()

    # Default empty responses
    mock_client.table.return_value.select.return_value.eq.return_value.limit.return_value.execute.return_value.data = []
    mock_client.table.return_value.insert.return_value.execute.return_value.data = []
    mock_client.table.return_value.delete.return_value.in_.return_value.execute.return_value.data = []

    return mock_client


# ============================================================
# Markers
# ============================================================

def pytest_configure(config):
    """Configure custom markers."""
    config.addinivalue_line(
        "markers", "integration: marks tests as integration tests (full HTTP stack)"
    )
    config.addinivalue_line(
        "markers", "unit: marks tests as unit tests (no HTTP stack)"
    )
    config.addinivalue_line(
        "markers", "slow: marks tests as slow running"
    )
