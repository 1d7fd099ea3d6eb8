"""Security utilities: the credential vault, JWTs and password hashing.

WHAT:
    - TokenVault: symmetric encryption of provider secrets at rest.
    - JWT helpers for the admin endpoints.
    - bcrypt password hashing for admin users.

WHY:
    OAuth access/refresh tokens and client secrets for the ad networks and the
    CRM must never land in the database in plaintext. Every caller of the vault
    gets a total function: bad ciphertext yields None instead of an exception,
    so a corrupted row degrades one channel instead of crashing a dispatch.

KEY MANAGEMENT:
    The Fernet key is derived once from ENCRYPTION_KEY with Scrypt and a fixed
    salt. The master secret is the entropy source. There is no key rotation:
    changing ENCRYPTION_KEY invalidates every stored ciphertext, and the
    affected providers have to be reconnected.

REFERENCES:
    - leadflow/services/token_service.py (persistence of encrypted tokens)
    - leadflow/services/token_managers.py (decrypt + refresh)
"""

import base64
import logging
import os
from datetime import datetime, timedelta, timezone
from functools import lru_cache
from typing import Any, Dict, Optional

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt
from jose import jwt, JWTError
from passlib.hash import bcrypt

from leadflow.telemetry import capture_message


ALGORITHM = "HS256"
JWT_SECRET = os.getenv("JWT_SECRET", "")
JWT_EXPIRES_MINUTES = int(os.getenv("JWT_EXPIRES_MINUTES", "10080"))
ENCRYPTION_KEY = os.getenv("ENCRYPTION_KEY", "")

# Fixed on purpose: the same master secret must always derive the same key.
KDF_SALT = b"leadflow-credential-vault"

logger = logging.getLogger(__name__)


if not JWT_SECRET or not ENCRYPTION_KEY:
    # Attempt to load from local .env if running in dev
    from leadflow.utils.env import load_env_file
    load_env_file()
    JWT_SECRET = JWT_SECRET or os.getenv("JWT_SECRET", "")
    JWT_EXPIRES_MINUTES = int(os.getenv("JWT_EXPIRES_MINUTES", "10080"))
    ENCRYPTION_KEY = ENCRYPTION_KEY or os.getenv("ENCRYPTION_KEY", "")

if not JWT_SECRET:
    raise RuntimeError("JWT_SECRET is not set. Ensure backend/.env is created or env var is exported.")

if not ENCRYPTION_KEY:
    raise RuntimeError(
        "ENCRYPTION_KEY is not set. Export a long random string (it is stretched with Scrypt) "
        "or add it to backend/.env."
    )


def derive_key(secret: str) -> bytes:
    """Stretch a master secret into a URL-safe base64 Fernet key."""
    kdf = Scrypt(salt=KDF_SALT, length=32, n=2 ** 14, r=8, p=1)
    return base64.urlsafe_b64encode(kdf.derive(secret.encode("utf-8")))


class TokenVault:
    """Encrypts and decrypts provider secrets.

    Fernet tokens carry a random 128-bit IV at a fixed offset ahead of the
    ciphertext and are authenticated with HMAC-SHA256, so tampering is detected
    on decrypt.
    """

    def __init__(self, secret: str):
        if not secret:
            raise ValueError("TokenVault requires a non-empty master secret.")
        self._cipher = Fernet(derive_key(secret))

    def encrypt(self, plaintext: Optional[str], *, context: str = "secret") -> Optional[str]:
        """Return URL-safe ciphertext, or None for a missing/empty plaintext."""
        if not plaintext:
            return None

        ciphertext = self._cipher.encrypt(plaintext.encode("utf-8")).decode("utf-8")
        logger.debug("[TOKEN_ENCRYPT] Secret encrypted for %s (length=%d)", context, len(plaintext))
        return ciphertext

    def decrypt(self, ciphertext: Optional[str], *, context: str = "secret") -> Optional[str]:
        """Return the plaintext, or None when missing, malformed or tampered."""
        if not ciphertext:
            return None

        try:
            return self._cipher.decrypt(ciphertext.encode("utf-8")).decode("utf-8")
        except (InvalidToken, ValueError, TypeError, AttributeError):
            logger.error("[TOKEN_DECRYPT] Invalid ciphertext for %s", context)
            capture_message(
                "Stored credential failed to decrypt",
                level="error",
                extra={"context": context},
            )
            return None


@lru_cache()
def get_vault() -> TokenVault:
    """Return the process-wide vault keyed from ENCRYPTION_KEY (derived once)."""
    return TokenVault(ENCRYPTION_KEY)


def encrypt_secret(plaintext: Optional[str], *, context: str) -> Optional[str]:
    return get_vault().encrypt(plaintext, context=context)


def decrypt_secret(ciphertext: Optional[str], *, context: str) -> Optional[str]:
    return get_vault().decrypt(ciphertext, context=context)


def get_password_hash(password: str) -> str:
    """Hash a plaintext password using bcrypt."""
    return bcrypt.hash(password)


def verify_password(password: str, password_hash: str) -> bool:
    """Verify a plaintext password against a bcrypt hash."""
    return bcrypt.verify(password, password_hash)


def create_access_token(subject: str, role: str, expires_minutes: int | None = None) -> str:
    """Create a signed JWT for an admin user (subject is the email)."""
    if expires_minutes is None:
        expires_minutes = JWT_EXPIRES_MINUTES
    now = datetime.now(timezone.utc)
    expire = now + timedelta(minutes=expires_minutes)
    to_encode: Dict[str, Any] = {
        "sub": subject,
        "role": role,
        "iat": int(now.timestamp()),
        "exp": int(expire.timestamp()),
    }
    return jwt.encode(to_encode, JWT_SECRET, algorithm=ALGORITHM)


def decode_token(token: str) -> Dict[str, Any]:
    """Decode and validate a JWT, returning its payload.

    Raises jose.JWTError on failure.
    """
    return jwt.decode(token, JWT_SECRET, algorithms=[ALGORITHM])


def create_oauth_state(provider: str, subject: str, expires_minutes: int = 15) -> str:
    """Signed, short-lived `state` for the provider consent redirect."""
    now = datetime.now(timezone.utc)
    payload = {
        "purpose": "oauth_state",
        "provider": provider,
        "sub": subject,
        "exp": int((now + timedelta(minutes=expires_minutes)).timestamp()),
    }
    return jwt.encode(payload, JWT_SECRET, algorithm=ALGORITHM)


def verify_oauth_state(state: Optional[str], provider: str) -> bool:
    """True when `state` was issued by create_oauth_state for this provider."""
    if not state:
        return False
    try:
        payload = decode_token(state)
    except JWTError:
        return False
    return payload.get("purpose") == "oauth_state" and payload.get("provider") == provider
