"""Symmetric encryption for stored provider secrets.

WHAT:
    Fernet wrapper for platform access tokens and Telegram bot tokens. The
    cipher is built on first use from Settings.TOKEN_ENCRYPTION_KEY.

WHY:
    Credentials are onboarded elsewhere and stored encrypted; the sync
    pipeline only decrypts them right before an API call. A missing or
    malformed key fails the first decrypt loudly instead of silently
    skipping accounts.

REFERENCES:
    - adsync/models.py (PlatformCredential.credential_value_enc, TelegramBot.bot_token_enc)
    - adsync/services/credentials.py (token resolution for accounts)
"""

import logging
from functools import lru_cache

from cryptography.fernet import Fernet, InvalidToken

from adsync.deps import get_settings

logger = logging.getLogger(__name__)


@lru_cache()
def _cipher() -> Fernet:
    key = get_settings().TOKEN_ENCRYPTION_KEY
    if not key:
        raise RuntimeError(
            "TOKEN_ENCRYPTION_KEY is not set. Run backend/generate_keys.py or export the variable."
        )
    try:
        return Fernet(key)
    except (ValueError, TypeError) as exc:
        raise RuntimeError("TOKEN_ENCRYPTION_KEY must be a URL-safe base64-encoded 32-byte key.") from exc


def encrypt_secret(plaintext: str, *, context: str) -> str:
    """Encrypt a secret for storage. `context` only labels log lines."""
    if not plaintext:
        raise ValueError("Cannot encrypt empty secret.")

    ciphertext = _cipher().encrypt(plaintext.encode("utf-8")).decode("utf-8")
    logger.info("[TOKEN_ENCRYPT] Secret encrypted for %s", context)
    return ciphertext


def decrypt_secret(ciphertext: str, *, context: str) -> str:
    """Decrypt a stored secret right before use.

    Raises:
        ValueError: empty or undecryptable ciphertext (wrong key, corrupted row)
    """
    if not ciphertext:
        raise ValueError(f"No stored secret for {context}.")

    try:
        return _cipher().decrypt(ciphertext.encode("utf-8")).decode("utf-8")
    except InvalidToken as exc:
        logger.error("[TOKEN_DECRYPT] Invalid ciphertext for %s", context)
        raise ValueError(f"Unable to decrypt stored secret for {context}.") from exc
