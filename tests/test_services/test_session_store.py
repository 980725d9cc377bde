"""Session Store Tests

Test Cases:
- TC-SESS-01: Tokens are stored hashed and resolve to their owner
- TC-SESS-02: Pruning keeps the current token and personal access tokens
- TC-SESS-03: Pruning with nothing to remove reports zero modifications
- TC-SESS-04: unset_login_tokens removes everything
- TC-SESS-05: remember_two_factor stamps one token only
- TC-SESS-06: Token serialization survives a dict round trip
"""

from datetime import datetime, timedelta, timezone

import pytest

from app.services.session_store import (
    PERSONAL_ACCESS_TOKEN,
    InMemorySessionStore,
    LoginToken,
    hash_login_token,
)


@pytest.fixture
def sessions():
    return InMemorySessionStore()


class TestLoginTokens:
    @pytest.mark.asyncio
    async def test_tc_sess_01_tokens_are_hashed(self, sessions):
        """TC-SESS-01: Tokens are stored hashed and resolve to their owner."""
        plaintext = await sessions.insert_login_token("u1")

        tokens = await sessions.find_user_login_tokens("u1")
        assert len(tokens) == 1
        assert tokens[0].hashed_token == hash_login_token(plaintext)
        assert tokens[0].hashed_token != plaintext

        assert await sessions.find_user_id_by_token(hash_login_token(plaintext)) == "u1"
        assert await sessions.find_user_id_by_token(hash_login_token("other")) is None

    @pytest.mark.asyncio
    async def test_explicit_token_value(self, sessions):
        assert await sessions.insert_login_token("u1", token="fixed") == "fixed"
        found = await sessions.find_login_token("u1", hash_login_token("fixed"))
        assert found is not None
        assert found.type is None

    @pytest.mark.asyncio
    async def test_remove_login_token(self, sessions):
        token = await sessions.insert_login_token("u1")

        assert await sessions.remove_login_token("u1", hash_login_token(token)) is True
        assert await sessions.remove_login_token("u1", hash_login_token(token)) is False
        assert await sessions.find_user_login_tokens("u1") == []


class TestPruning:
    @pytest.mark.asyncio
    async def test_tc_sess_02_prune_keeps_current_and_pat(self, sessions):
        """TC-SESS-02: Pruning keeps the current token and personal access tokens."""
        current = await sessions.insert_login_token("u1")
        await sessions.insert_login_token("u1")
        await sessions.insert_login_token("u1")
        pat = await sessions.insert_login_token("u1", token_type=PERSONAL_ACCESS_TOKEN)

        result = await sessions.prune_login_tokens_except("u1", hash_login_token(current))

        assert result.modified_count == 1
        remaining = {t.hashed_token for t in await sessions.find_user_login_tokens("u1")}
        assert remaining == {hash_login_token(current), hash_login_token(pat)}

    @pytest.mark.asyncio
    async def test_tc_sess_03_prune_nothing(self, sessions):
        """TC-SESS-03: Pruning with nothing to remove reports zero modifications."""
        current = await sessions.insert_login_token("u1")

        result = await sessions.prune_login_tokens_except("u1", hash_login_token(current))

        assert result.modified_count == 0
        assert len(await sessions.find_user_login_tokens("u1")) == 1

    @pytest.mark.asyncio
    async def test_tc_sess_04_unset_all(self, sessions):
        """TC-SESS-04: unset_login_tokens removes everything."""
        await sessions.insert_login_token("u1")
        await sessions.insert_login_token("u1", token_type=PERSONAL_ACCESS_TOKEN)
        await sessions.insert_login_token("u2")

        assert await sessions.unset_login_tokens("u1") == 2

        assert await sessions.find_user_login_tokens("u1") == []
        assert len(await sessions.find_user_login_tokens("u2")) == 1


class TestRememberedAuthorization:
    @pytest.mark.asyncio
    async def test_tc_sess_05_remember_single_token(self, sessions):
        """TC-SESS-05: remember_two_factor stamps one token only."""
        first = await sessions.insert_login_token("u1")
        second = await sessions.insert_login_token("u1")
        until = datetime.now(timezone.utc) + timedelta(minutes=30)

        updated = await sessions.remember_two_factor(
            "u1", hash_login_token(first), until, "fp"
        )

        assert updated is True
        stamped = await sessions.find_login_token("u1", hash_login_token(first))
        other = await sessions.find_login_token("u1", hash_login_token(second))
        assert stamped.two_factor_authorized_until == until
        assert stamped.two_factor_authorized_hash == "fp"
        assert other.two_factor_authorized_until is None

        assert await sessions.remember_two_factor("u1", "missing", until, "fp") is False

    def test_tc_sess_06_token_dict_round_trip(self):
        """TC-SESS-06: Token serialization survives a dict round trip."""
        now = datetime.now(timezone.utc)
        token = LoginToken(
            hashed_token="h",
            when=now,
            type=PERSONAL_ACCESS_TOKEN,
            two_factor_authorized_until=now,
            two_factor_authorized_hash="fp",
        )

        restored = LoginToken.from_dict(token.to_dict())

        assert restored == token
        assert restored.is_personal_access_token is True
