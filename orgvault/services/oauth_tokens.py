"""OAuth token storage encrypted with org-scoped keys.

Access and refresh tokens are stored as separate encrypted records so each
carries its own data type in the key context; a refresh token can never be
decrypted as an access token.
"""

import json
import logging
from typing import Optional

from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from orgvault.services import records
from orgvault.services.encryption_gateway import EncryptionGateway
from orgvault.services.key_context import DataType

logger = logging.getLogger(__name__)


class OAuthTokens(BaseModel):
    """OAuth tokens as returned by the provider."""

    access_token: str = Field(..., min_length=1)
    refresh_token: Optional[str] = None
    expiry_date: int = Field(..., description="Unix timestamp in milliseconds")
    token_type: str = "Bearer"
    scope: str = ""


class StoredOAuthTokens(BaseModel):
    """Record ids of an encrypted token pair."""

    access_record_id: str
    refresh_record_id: Optional[str] = None


async def store_oauth_tokens(
    db: AsyncSession,
    gateway: EncryptionGateway,
    org_id: str,
    user_id: str,
    tokens: OAuthTokens,
) -> StoredOAuthTokens:
    """Encrypt and store a token pair for ``user_id``."""
    # Expiry and scope travel with the access token so they are never stored in clear
    access_payload = json.dumps(
        {
            "access_token": tokens.access_token,
            "expiry_date": tokens.expiry_date,
            "token_type": tokens.token_type,
            "scope": tokens.scope,
        }
    )
    access_record = await records.create_record(
        db, gateway, org_id, user_id, DataType.OAUTH_ACCESS_TOKEN, access_payload
    )

    refresh_record_id = None
    if tokens.refresh_token:
        refresh_record = await records.create_record(
            db, gateway, org_id, user_id, DataType.OAUTH_REFRESH_TOKEN, tokens.refresh_token
        )
        refresh_record_id = str(refresh_record.id)

    logger.info(f"Stored encrypted OAuth tokens for user {user_id} in org {org_id}")
    return StoredOAuthTokens(
        access_record_id=str(access_record.id),
        refresh_record_id=refresh_record_id,
    )


async def load_oauth_tokens(
    db: AsyncSession,
    gateway: EncryptionGateway,
    stored: StoredOAuthTokens,
    user_id: str,
) -> Optional[OAuthTokens]:
    """Decrypt a stored token pair. Returns None if the access record is gone."""
    access_json = await records.read_record(db, gateway, stored.access_record_id, user_id)
    if access_json is None:
        return None

    refresh_token = None
    if stored.refresh_record_id:
        refresh_token = await records.read_record(
            db, gateway, stored.refresh_record_id, user_id
        )

    return OAuthTokens(**json.loads(access_json), refresh_token=refresh_token)
