"""Access-token resolution for accounts and tenants.

WHAT:
    Finds the active credential of an account's identity (or any identity of
    a tenant) and returns the decrypted token, or an `AdsApiClient` built
    from it.

WHY:
    Dispatcher, manual sync endpoints and the attribution backfill all need
    the same lookup; manual endpoints turn MissingCredentialError into 401.
"""

from __future__ import annotations

import logging
from typing import Optional
from uuid import UUID

from sqlalchemy.orm import Session

from adsync.models import Account, PlatformCredential, PlatformIdentity
from adsync.security import decrypt_secret
from adsync.services.ads_api_client import AdsApiClient
from adsync.services.sync_errors import MissingCredentialError

logger = logging.getLogger(__name__)


def _active_credential(db: Session, identity_id: UUID) -> Optional[PlatformCredential]:
    return (
        db.query(PlatformCredential)
        .filter(
            PlatformCredential.identity_id == identity_id,
            PlatformCredential.is_active.is_(True),
        )
        .order_by(PlatformCredential.created_at.desc())
        .first()
    )


def get_account_token(db: Session, account: Account) -> str:
    """Decrypted access token for an account.

    Raises:
        MissingCredentialError: no active credential, or it can't be decrypted
    """
    credential = _active_credential(db, account.identity_id)
    if not credential or not credential.credential_value_enc:
        raise MissingCredentialError(f"No active credential for account {account.id}")

    try:
        return decrypt_secret(credential.credential_value_enc, context=f"account:{account.id}")
    except ValueError as exc:
        raise MissingCredentialError(f"Stored credential for account {account.id} is unreadable") from exc


def get_user_token(db: Session, user_id: UUID) -> str:
    """Decrypted token of any active credential owned by the tenant."""
    credential = (
        db.query(PlatformCredential)
        .join(PlatformIdentity, PlatformIdentity.id == PlatformCredential.identity_id)
        .filter(
            PlatformIdentity.user_id == user_id,
            PlatformCredential.is_active.is_(True),
        )
        .order_by(PlatformCredential.created_at.desc())
        .first()
    )
    if not credential:
        raise MissingCredentialError(f"No active credential for user {user_id}")

    try:
        return decrypt_secret(credential.credential_value_enc, context=f"user:{user_id}")
    except ValueError as exc:
        raise MissingCredentialError(f"Stored credential for user {user_id} is unreadable") from exc


def client_for_account(db: Session, account: Account) -> AdsApiClient:
    return AdsApiClient.from_settings(get_account_token(db, account))
