"""Tests for encrypted OAuth token storage."""

import pytest

from orgvault.exceptions import EncryptedDataAccessError, KmsUnavailableError
from orgvault.services import records
from orgvault.services.oauth_tokens import (
    OAuthTokens,
    StoredOAuthTokens,
    load_oauth_tokens,
    store_oauth_tokens,
)

from conftest import ORG_A


@pytest.fixture
def tokens() -> OAuthTokens:
    return OAuthTokens(
        access_token="ya29.access-token",
        refresh_token="1//refresh-token",
        expiry_date=1767225600000,
        scope="calendar.readonly",
    )


@pytest.mark.asyncio
async def test_store_and_load_round_trip(db_session, gateway, tokens):
    stored = await store_oauth_tokens(db_session, gateway, ORG_A, "user_1", tokens)

    loaded = await load_oauth_tokens(db_session, gateway, stored, "user_1")

    assert loaded == tokens


@pytest.mark.asyncio
async def test_tokens_stored_as_typed_records(db_session, gateway, tokens):
    stored = await store_oauth_tokens(db_session, gateway, ORG_A, "user_1", tokens)

    access = await records.get_record(db_session, stored.access_record_id)
    refresh = await records.get_record(db_session, stored.refresh_record_id)

    assert access.data_type == "oauth_access_token"
    assert refresh.data_type == "oauth_refresh_token"
    assert "ya29" not in (access.encrypted_content or "")
    assert "refresh-token" not in (refresh.vault_encrypted_content or "")


@pytest.mark.asyncio
async def test_refresh_record_cannot_be_read_as_access_token(db_session, gateway, tokens):
    stored = await store_oauth_tokens(db_session, gateway, ORG_A, "user_1", tokens)
    swapped = StoredOAuthTokens(access_record_id=stored.refresh_record_id)

    # The record's own data type is used, so the refresh token decrypts
    # but is not an access-token payload
    with pytest.raises(ValueError):
        await load_oauth_tokens(db_session, gateway, swapped, "user_1")


@pytest.mark.asyncio
async def test_without_refresh_token(db_session, gateway):
    tokens = OAuthTokens(access_token="short-lived", expiry_date=1)

    stored = await store_oauth_tokens(db_session, gateway, ORG_A, "user_1", tokens)
    loaded = await load_oauth_tokens(db_session, gateway, stored, "user_1")

    assert stored.refresh_record_id is None
    assert loaded.refresh_token is None
    assert loaded.access_token == "short-lived"


@pytest.mark.asyncio
async def test_missing_access_record(db_session, gateway):
    stored = StoredOAuthTokens(access_record_id="00000000-0000-0000-0000-000000000000")
    assert await load_oauth_tokens(db_session, gateway, stored, "user_1") is None


@pytest.mark.asyncio
async def test_kms_outage_without_legacy_copy(db_session, make_gateway, fake_kms, tokens):
    gateway = make_gateway(kms_enabled=True, dual_write=False)
    stored = await store_oauth_tokens(db_session, gateway, ORG_A, "user_1", tokens)
    fake_kms.fail_decrypt_with = KmsUnavailableError("down")

    with pytest.raises(EncryptedDataAccessError):
        await load_oauth_tokens(db_session, gateway, stored, "user_1")
