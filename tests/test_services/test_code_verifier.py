"""Code Verifier Tests

Test Cases:
- TC-VERIFY-01: Current TOTP code verifies against the live secret
- TC-VERIFY-02: Backup code verifies and names the hash to consume
- TC-VERIFY-03: temp_secret is never trusted by verify
- TC-VERIFY-04: verify_enrollment only trusts the temp secret
- TC-VERIFY-05: Email codes: bcrypt match, expiry checked first
- TC-VERIFY-06: check_user_code consumes backup codes exactly once
- TC-VERIFY-07: check_user_code resets the failed attempt counter
- TC-VERIFY-08: check_user_code rejects users without TOTP
"""

import asyncio
import time
from datetime import datetime, timedelta, timezone

import bcrypt
import pyotp
import pytest

from app.models.two_factor import EmailCode, UserSecondFactor, VerificationRequest
from app.services.code_verifier import CodeVerifier
from app.services.secret_store import InMemorySecretStore


def _wrong_code(secret: str) -> str:
    totp = pyotp.TOTP(secret)
    now = int(time.time())
    valid = {totp.at(now + offset) for offset in (-60, -30, 0, 30, 60)}
    for candidate in ("000000", "111111", "222222", "333333"):
        if candidate not in valid:
            return candidate
    raise AssertionError("unreachable")


@pytest.fixture
def store():
    return InMemorySecretStore()


@pytest.fixture
def verifier(store, settings):
    return CodeVerifier(store, settings)


class TestVerify:
    def test_tc_verify_01_totp(self, verifier, totp_secret):
        """TC-VERIFY-01: Current TOTP code verifies against the live secret."""
        result = verifier.verify(
            VerificationRequest(
                user_id="u1",
                submitted_code=pyotp.TOTP(totp_secret).now(),
                secret=totp_secret,
            )
        )

        assert result.success is True
        assert result.matched_backup_hash is None

        wrong = verifier.verify(
            VerificationRequest(
                user_id="u1", submitted_code=_wrong_code(totp_secret), secret=totp_secret
            )
        )
        assert bool(wrong) is False

    def test_tc_verify_02_backup_code(self, verifier, totp_secret, backup_batch):
        """TC-VERIFY-02: Backup code verifies and names the hash to consume."""
        code = backup_batch.plaintext_codes[3]

        result = verifier.verify(
            VerificationRequest(
                user_id="u1",
                submitted_code=code.lower(),
                secret=totp_secret,
                backup_hashes=backup_batch.hashes,
            )
        )

        assert result.success is True
        assert result.matched_backup_hash == backup_batch.hashes[3]

    def test_tc_verify_03_temp_secret_ignored(self, verifier, totp_secret):
        """TC-VERIFY-03: temp_secret is never trusted by verify."""
        result = verifier.verify(
            VerificationRequest(
                user_id="u1",
                submitted_code=pyotp.TOTP(totp_secret).now(),
                temp_secret=totp_secret,
            )
        )

        assert result.success is False

    def test_tc_verify_04_enrollment_uses_temp_secret(self, verifier, totp_secret, backup_batch):
        """TC-VERIFY-04: verify_enrollment only trusts the temp secret."""
        live = pyotp.random_base32()

        assert verifier.verify_enrollment(
            VerificationRequest(
                user_id="u1",
                submitted_code=pyotp.TOTP(totp_secret).now(),
                temp_secret=totp_secret,
            )
        ) is True

        assert verifier.verify_enrollment(
            VerificationRequest(
                user_id="u1",
                submitted_code=pyotp.TOTP(live).now(),
                secret=live,
                temp_secret=None,
            )
        ) is False

        assert verifier.verify_enrollment(
            VerificationRequest(
                user_id="u1",
                submitted_code=backup_batch.plaintext_codes[0],
                temp_secret=totp_secret,
                backup_hashes=backup_batch.hashes,
            )
        ) is False


class TestVerifyEmailCode:
    def _email_code(self, code: str, expires_in: int) -> EmailCode:
        now = datetime.now(timezone.utc)
        return EmailCode(
            code_hash=bcrypt.hashpw(code.encode(), bcrypt.gensalt(rounds=4)).decode(),
            created_at=now,
            expires_at=now + timedelta(seconds=expires_in),
        )

    def test_tc_verify_05_email_code(self, verifier):
        """TC-VERIFY-05: Email codes: bcrypt match, expiry checked first."""
        pending = self._email_code("482913", 600)

        assert verifier.verify_email_code(pending, "482913") is True
        assert verifier.verify_email_code(pending, "482 913") is True
        assert verifier.verify_email_code(pending, "482914") is False
        assert verifier.verify_email_code(pending, "") is False
        assert verifier.verify_email_code(None, "482913") is False

        later = datetime.now(timezone.utc) + timedelta(seconds=601)
        assert verifier.verify_email_code(pending, "482913", now=later) is False

    def test_malformed_hash_is_a_failure(self, verifier):
        now = datetime.now(timezone.utc)
        broken = EmailCode(
            code_hash="not-a-bcrypt-hash",
            created_at=now,
            expires_at=now + timedelta(minutes=5),
        )

        assert verifier.verify_email_code(broken, "123456") is False


class TestCheckUserCode:
    @pytest.mark.asyncio
    @pytest.mark.security
    async def test_tc_verify_06_backup_code_single_use(self, store, verifier, totp_secret, backup_batch):
        """TC-VERIFY-06: check_user_code consumes backup codes exactly once."""
        store.put(
            UserSecondFactor(
                user_id="u1",
                enabled=True,
                secret=totp_secret,
                backup_code_hashes=list(backup_batch.hashes),
            )
        )
        code = backup_batch.plaintext_codes[0]

        assert await verifier.check_user_code("u1", code) is True
        assert await verifier.check_user_code("u1", code) is False

        record = await store.get("u1")
        assert len(record.backup_code_hashes) == 11
        assert backup_batch.hashes[0] not in record.backup_code_hashes

    @pytest.mark.asyncio
    @pytest.mark.concurrency
    async def test_concurrent_backup_code_use(self, store, verifier, totp_secret, backup_batch):
        store.put(
            UserSecondFactor(
                user_id="u1",
                enabled=True,
                secret=totp_secret,
                backup_code_hashes=list(backup_batch.hashes),
            )
        )
        code = backup_batch.plaintext_codes[5]

        results = await asyncio.gather(
            verifier.check_user_code("u1", code),
            verifier.check_user_code("u1", code),
        )

        assert sorted(results) == [False, True]
        assert len((await store.get("u1")).backup_code_hashes) == 11

    @pytest.mark.asyncio
    async def test_tc_verify_07_resets_failed_attempts(self, store, verifier, totp_secret):
        """TC-VERIFY-07: check_user_code resets the failed attempt counter."""
        store.put(
            UserSecondFactor(
                user_id="u1", enabled=True, secret=totp_secret, failed_attempts=3
            )
        )

        assert await verifier.check_user_code("u1", pyotp.TOTP(totp_secret).now()) is True
        assert (await store.get("u1")).failed_attempts == 0

    @pytest.mark.asyncio
    async def test_tc_verify_08_requires_enabled_totp(self, store, verifier, totp_secret):
        """TC-VERIFY-08: check_user_code rejects users without TOTP."""
        code = pyotp.TOTP(totp_secret).now()

        assert await verifier.check_user_code("nobody", code) is False

        store.put(UserSecondFactor(user_id="u1", temp_secret=totp_secret))
        assert await verifier.check_user_code("u1", code) is False
