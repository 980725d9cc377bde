"""Backup Code Generation Tests

Test Cases:
- TC-BKP-01: Batch always has 12 codes and 12 hashes
- TC-BKP-02: Codes are unique, XXXX-XXXX, unambiguous alphabet
- TC-BKP-03: Matching ignores dashes, spaces and case
- TC-BKP-04: Each hash matches its own plaintext code
- TC-BKP-05: Two batches never share codes
- TC-BKP-06: Hashes are salted bcrypt, never a bare digest
"""

import re

import bcrypt
import pytest

from app.services.backup_codes import (
    BACKUP_CODE_CHARSET,
    BACKUP_CODE_COUNT,
    BackupCodeGenerator,
    hash_backup_code,
    looks_like_backup_code,
    match_backup_code,
    normalize_backup_code,
)

CODE_FORMAT = re.compile(r"^[A-Z2-9]{4}-[A-Z2-9]{4}$")
ROUNDS = 4


class TestBackupCodeGenerator:
    """Tests for BackupCodeGenerator.generate."""

    def test_tc_bkp_01_batch_size_is_twelve(self):
        """TC-BKP-01: Batch always has 12 codes and 12 hashes."""
        batch = BackupCodeGenerator(rounds=ROUNDS).generate()

        assert BACKUP_CODE_COUNT == 12
        assert len(batch.plaintext_codes) == 12
        assert len(batch.hashes) == 12

    def test_tc_bkp_02_codes_unique_and_formatted(self):
        """TC-BKP-02: Codes are unique, XXXX-XXXX, unambiguous alphabet."""
        batch = BackupCodeGenerator(rounds=ROUNDS).generate()

        assert len(set(batch.plaintext_codes)) == 12
        for code in batch.plaintext_codes:
            assert CODE_FORMAT.match(code), code
            assert all(c in BACKUP_CODE_CHARSET for c in code.replace("-", ""))
            for ambiguous in "01OI":
                assert ambiguous not in code

    def test_tc_bkp_04_hashes_match_codes(self):
        """TC-BKP-04: Each hash matches its own plaintext code."""
        batch = BackupCodeGenerator(rounds=ROUNDS).generate()

        for code, stored in zip(batch.plaintext_codes, batch.hashes):
            assert match_backup_code(code, batch.hashes) == stored
        assert len(set(batch.hashes)) == 12

    def test_tc_bkp_05_batches_are_independent(self):
        """TC-BKP-05: Two batches never share codes."""
        first = BackupCodeGenerator(rounds=ROUNDS).generate()
        second = BackupCodeGenerator(rounds=ROUNDS).generate()

        assert not set(first.plaintext_codes) & set(second.plaintext_codes)


class TestBackupCodeHashing:
    """Tests for normalization, hashing and matching."""

    @pytest.mark.parametrize(
        "spelling",
        ["ABCD-EFGH", "abcd-efgh", "ABCDEFGH", " abcd efgh ", "AbCd-EfGh"],
    )
    def test_tc_bkp_03_match_ignores_formatting(self, spelling):
        """TC-BKP-03: Matching ignores dashes, spaces and case."""
        stored = hash_backup_code("ABCD-EFGH", rounds=ROUNDS)

        assert match_backup_code(spelling, [stored]) == stored

    @pytest.mark.security
    def test_tc_bkp_06_salted_bcrypt(self):
        """TC-BKP-06: Hashes are salted bcrypt, never a bare digest."""
        first = hash_backup_code("ABCD-EFGH", rounds=ROUNDS)
        second = hash_backup_code("ABCD-EFGH", rounds=ROUNDS)

        assert first != second
        assert first.startswith("$2b$04$")
        assert bcrypt.checkpw(b"ABCDEFGH", first.encode("utf-8"))

    def test_no_match(self):
        stored = [hash_backup_code("ABCD-EFGH", rounds=ROUNDS)]

        assert match_backup_code("ABCD-EFGJ", stored) is None
        assert match_backup_code("ABCD-EFGH", []) is None

    def test_malformed_stored_hash_is_skipped(self):
        stored = hash_backup_code("ABCD-EFGH", rounds=ROUNDS)

        assert match_backup_code("ABCD-EFGH", ["not-a-hash", stored]) == stored

    def test_normalize_backup_code(self):
        assert normalize_backup_code("a3f9-k2h7") == "A3F9K2H7"
        assert normalize_backup_code("") == ""

    def test_looks_like_backup_code(self):
        assert looks_like_backup_code("ABCD-EFGH") is True
        assert looks_like_backup_code("123456") is False
        assert looks_like_backup_code("ABCD-EFG0") is False
