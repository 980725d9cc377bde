"""
Pytest configuration and shared fixtures for the two-factor service tests.
"""
import hashlib
import pytest
import bcrypt
import pyotp

from app.config import Settings
from app.models.two_factor import UserSecondFactor
from app.models.user import UserAccount, UserEmail
from app.services.backup_codes import BackupCodeGenerator
from app.services.container import build_services
from app.services.mailer import LoggingMailer
from app.services.user_service import InMemoryUserDirectory

ALICE_PASSWORD = "correct horse battery staple"


def password_digest(password: str) -> str:
    """Client-side password digest sent by chat clients."""
    return hashlib.sha256(password.encode("utf-8")).hexdigest()


@pytest.fixture
def settings() -> Settings:
    """Settings for tests, independent of the environment."""
    return Settings(
        storage_backend="memory",
        two_factor_enabled=True,
        two_factor_totp_enabled=True,
        two_factor_email_enabled=True,
        two_factor_email_available_for_oauth_users=True,
        two_factor_enforce_password_fallback=True,
        two_factor_max_delta=1,
        two_factor_remember_for_seconds=1800,
        two_factor_max_failed_attempts=5,
        two_factor_email_code_ttl_seconds=600,
        two_factor_email_code_resend_seconds=300,
        backup_code_hash_rounds=4,
        totp_issuer="Chat",
        smtp_host="",
    )


@pytest.fixture
def alice() -> UserAccount:
    """Local account with a password and one verified address."""
    return UserAccount(
        user_id="u-alice",
        username="alice",
        emails=[
            UserEmail(address="alice@example.com", verified=True),
            UserEmail(address="alice@old.example.com", verified=False),
        ],
        password_bcrypt=bcrypt.hashpw(
            password_digest(ALICE_PASSWORD).encode("utf-8"), bcrypt.gensalt(rounds=4)
        ).decode("utf-8"),
    )


@pytest.fixture
def bob() -> UserAccount:
    """OAuth account without a password."""
    return UserAccount(
        user_id="u-bob",
        username="bob",
        emails=[UserEmail(address="bob@example.com", verified=True)],
        oauth_services=["google"],
    )


@pytest.fixture
def mailer() -> LoggingMailer:
    return LoggingMailer()


@pytest.fixture
def users(alice, bob) -> InMemoryUserDirectory:
    directory = InMemoryUserDirectory()
    directory.put(alice)
    directory.put(bob)
    return directory


@pytest.fixture
def services(settings, users, mailer):
    """Fully wired in-memory two-factor services."""
    return build_services(settings, users=users, mailer=mailer)


@pytest.fixture
def totp_secret() -> str:
    return pyotp.random_base32()


@pytest.fixture
def backup_batch():
    return BackupCodeGenerator(rounds=4).generate()


@pytest.fixture
def enrolled_alice(services, alice, totp_secret, backup_batch):
    """Alice with TOTP enabled on `totp_secret` and a full backup batch."""
    services.store.put(
        UserSecondFactor(
            user_id=alice.user_id,
            enabled=True,
            secret=totp_secret,
            backup_code_hashes=list(backup_batch.hashes),
        )
    )
    return alice


def pytest_configure(config):
    """Pytest configuration hook."""
    config.addinivalue_line(
        "markers", "security: marks tests as security tests"
    )
    config.addinivalue_line(
        "markers", "concurrency: marks tests exercising concurrent store access"
    )
    config.addinivalue_line(
        "markers", "integration: marks tests as HTTP integration tests"
    )
