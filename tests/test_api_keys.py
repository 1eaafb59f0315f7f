"""
Tests for API key authentication.

Every rejected credential (missing, unknown, revoked, expired) must look the
same to the caller, and only hashes are ever stored.
"""

from datetime import datetime, timedelta, timezone

import pytest

from api.api_keys import (
    authenticate,
    create_api_key,
    extract_credential,
    generate_api_key,
    get_key_prefix,
    hash_api_key,
    list_api_keys,
    revoke_api_key,
)
from api.database import api_keys
from api.errors import NotFoundError, ValidationError


class TestKeyHelpers:
    """Tests for key generation and hashing."""

    def test_generated_key_format(self):
        key = generate_api_key()
        assert key.startswith("av_")
        assert len(key) == 3 + 64

    def test_hash_is_deterministic_sha256(self):
        assert hash_api_key("av_abc") == hash_api_key("av_abc")
        assert len(hash_api_key("av_abc")) == 64
        assert hash_api_key("av_abc") != hash_api_key("av_abd")

    def test_prefix(self):
        assert get_key_prefix("av_0123456789abcdef") == "av_0123456"


class TestExtractCredential:
    """Tests for picking the key out of request headers."""

    def test_x_api_key_preferred(self):
        assert extract_credential("av_one", "Bearer av_two") == "av_one"

    def test_bearer_fallback(self):
        assert extract_credential(None, "Bearer av_two") == "av_two"

    def test_bearer_scheme_case_insensitive(self):
        assert extract_credential(None, "bearer av_two") == "av_two"

    @pytest.mark.parametrize("authorization", [None, "", "Basic dXNlcjpwYXNz", "Bearer", "Bearer   "])
    def test_nothing_usable(self, authorization):
        assert extract_credential(None, authorization) is None


class TestAuthenticate:
    """Tests for authenticate()."""

    @pytest.mark.asyncio
    async def test_valid_key(self, test_database, sample_account):
        plaintext, key = await create_api_key(
            test_database, sample_account.id, "ci", permissions={"write": True}, rate_limit_per_minute=120
        )

        auth = await authenticate(test_database, plaintext)

        assert auth is not None
        assert auth.owner_id == sample_account.id
        assert auth.key_id == key.id
        assert auth.has_permission("read")
        assert auth.has_permission("write")
        assert not auth.has_permission("delete")
        assert auth.rate_limit_per_minute == 120

    @pytest.mark.asyncio
    async def test_records_last_used(self, test_database, sample_account):
        plaintext, key = await create_api_key(test_database, sample_account.id, "ci")

        await authenticate(test_database, plaintext)

        row = await test_database.fetch_one(api_keys.select().where(api_keys.c.id == key.id))
        assert row["last_used_at"] is not None

    @pytest.mark.asyncio
    async def test_missing_key(self, test_database):
        assert await authenticate(test_database, None) is None
        assert await authenticate(test_database, "") is None

    @pytest.mark.asyncio
    async def test_unknown_key(self, test_database, sample_account):
        await create_api_key(test_database, sample_account.id, "ci")
        assert await authenticate(test_database, generate_api_key()) is None

    @pytest.mark.asyncio
    async def test_revoked_key(self, test_database, sample_account):
        plaintext, key = await create_api_key(test_database, sample_account.id, "ci")
        await revoke_api_key(test_database, key.id)

        assert await authenticate(test_database, plaintext) is None

    @pytest.mark.asyncio
    async def test_expired_key(self, test_database, sample_account):
        plaintext, _ = await create_api_key(
            test_database,
            sample_account.id,
            "ci",
            expires_at=datetime.now(timezone.utc) - timedelta(minutes=1),
        )

        assert await authenticate(test_database, plaintext) is None

    @pytest.mark.asyncio
    async def test_future_expiry_accepted(self, test_database, sample_account):
        plaintext, _ = await create_api_key(
            test_database,
            sample_account.id,
            "ci",
            expires_at=datetime.now(timezone.utc) + timedelta(days=1),
        )

        assert await authenticate(test_database, plaintext) is not None


class TestKeyManagement:
    """Tests for create/list/revoke."""

    @pytest.mark.asyncio
    async def test_plaintext_never_stored(self, test_database, sample_account):
        plaintext, key = await create_api_key(test_database, sample_account.id, "ci")

        row = await test_database.fetch_one(api_keys.select().where(api_keys.c.id == key.id))
        assert plaintext not in dict(row._mapping).values()
        assert row["key_hash"] == hash_api_key(plaintext)
        assert row["key_prefix"] == plaintext[:10]

    @pytest.mark.asyncio
    async def test_default_permissions_read_only(self, test_database, sample_account):
        _, key = await create_api_key(test_database, sample_account.id, "ci")
        assert key.permissions == {"read": True, "write": False, "delete": False}

    @pytest.mark.asyncio
    async def test_unknown_permission_rejected(self, test_database, sample_account):
        with pytest.raises(ValidationError, match="Unknown permission"):
            await create_api_key(test_database, sample_account.id, "ci", permissions={"admin": True})

    @pytest.mark.asyncio
    async def test_rate_limit_must_be_positive(self, test_database, sample_account):
        with pytest.raises(ValidationError):
            await create_api_key(test_database, sample_account.id, "ci", rate_limit_per_minute=0)

    @pytest.mark.asyncio
    async def test_list_scoped_to_owner(self, test_database, sample_account):
        await create_api_key(test_database, sample_account.id, "one")
        await create_api_key(test_database, sample_account.id, "two")

        assert len(await list_api_keys(test_database, sample_account.id)) == 2
        assert await list_api_keys(test_database, "someone-else") == []

    @pytest.mark.asyncio
    async def test_revoke_unknown_key(self, test_database):
        with pytest.raises(NotFoundError):
            await revoke_api_key(test_database, "missing")
