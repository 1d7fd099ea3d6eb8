"""Token service for encrypting and persisting provider credentials.

WHAT:
    Owns the `provider_configs` rows (one per provider name) and every write
    of their token columns.

WHY:
    - Keeps encryption logic out of routers and token managers.
    - Makes the three legitimate token mutation paths explicit: the OAuth
      code exchange, a successful refresh, and an admin disconnect.

REFERENCES:
    - leadflow/security.py (encrypt_secret / decrypt_secret)
    - leadflow/services/token_managers.py (refresh-before-expiry)
    - leadflow/routers/channels.py (connect / callback / disconnect)
"""

from __future__ import annotations

from datetime import datetime
import logging
from typing import Optional

from sqlalchemy.orm import Session

from leadflow.models import ProviderConfig, ProviderEnum, utcnow
from leadflow.security import encrypt_secret, decrypt_secret

logger = logging.getLogger(__name__)


def get_provider_config(db: Session, provider: ProviderEnum) -> Optional[ProviderConfig]:
    """Return the credential row for a provider, or None if it was never created."""
    return (
        db.query(ProviderConfig)
        .filter(ProviderConfig.provider == provider)
        .first()
    )


def get_or_create_provider_config(db: Session, provider: ProviderEnum) -> ProviderConfig:
    config = get_provider_config(db, provider)
    if config:
        return config
    config = ProviderConfig(provider=provider, is_enabled=True)
    db.add(config)
    db.flush()
    logger.info("[TOKEN_SERVICE] Created provider config for %s", provider.value)
    return config


def store_provider_tokens(
    db: Session,
    config: ProviderConfig,
    *,
    access_token: str,
    refresh_token: Optional[str] = None,
    expires_at: Optional[datetime] = None,
    instance_url: Optional[str] = None,
    mark_connected: bool = False,
) -> ProviderConfig:
    """Encrypt and persist tokens on a provider row.

    WHAT:
        Replaces the access token ciphertext and expiry. The refresh token is
        only replaced when a new one is supplied, so providers that do not
        rotate keep their original refresh token.
    WHY:
        Single write path shared by the code exchange and the refresh flow.

    The caller commits.
    """
    label = config.provider.value
    config.access_token_enc = encrypt_secret(access_token, context=f"{label}:access")
    if refresh_token:
        config.refresh_token_enc = encrypt_secret(refresh_token, context=f"{label}:refresh")
    config.token_expires_at = expires_at
    if instance_url:
        config.instance_url = instance_url
    if mark_connected:
        config.connected_at = utcnow()

    db.add(config)
    logger.info(
        "[TOKEN_SERVICE] Stored encrypted tokens for %s (refresh rotated=%s)",
        label, bool(refresh_token),
    )
    return config


def store_client_secret(db: Session, config: ProviderConfig, client_id: str, client_secret: Optional[str]) -> None:
    """Persist CRM client credentials; an empty secret keeps the stored one."""
    config.client_id = client_id
    if client_secret:
        config.client_secret_enc = encrypt_secret(
            client_secret, context=f"{config.provider.value}:client_secret"
        )
    db.add(config)


def clear_provider_tokens(db: Session, config: ProviderConfig) -> None:
    """Disconnect: drop every token ciphertext and the account routing."""
    config.access_token_enc = None
    config.refresh_token_enc = None
    config.token_expires_at = None
    config.connected_at = None
    config.customer_id = None
    config.account_id = None
    config.account_name = None
    db.add(config)
    logger.info("[TOKEN_SERVICE] Cleared tokens for %s", config.provider.value)


def get_decrypted_token(config: Optional[ProviderConfig], token_type: str = "access") -> Optional[str]:
    """Decrypt the access, refresh or client_secret field of a provider row.

    Returns None when the row or the field is missing, or when the ciphertext
    no longer decrypts.
    """
    if config is None:
        return None

    label = config.provider.value
    fields = {
        "access": config.access_token_enc,
        "refresh": config.refresh_token_enc,
        "client_secret": config.client_secret_enc,
    }
    if token_type not in fields:
        logger.error("[TOKEN_SERVICE] Invalid token_type: %s", token_type)
        return None

    field = fields[token_type]
    if not field:
        logger.debug("[TOKEN_SERVICE] No %s token for %s", token_type, label)
        return None
    return decrypt_secret(field, context=f"{label}:{token_type}")
