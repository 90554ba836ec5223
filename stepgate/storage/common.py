"""Helpers shared by the memory, Postgres and Redis storage engines.

The engines share the one-time-material decision and differ only in how they
make it atomic.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
from datetime import datetime, timezone
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken

from stepgate.logging import get_logger
from stepgate.storage.errors import ConstraintViolation
from stepgate.storage.models import (
    MAX_RECOVERY_CODES,
    ConsumeStatus,
    FactorMethod,
    FactorState,
)

logger = get_logger(__name__)

# Statuses after which the stored record is dropped
CLEARING_STATUSES = frozenset({ConsumeStatus.CONSUMED, ConsumeStatus.EXPIRED})


def utcnow() -> datetime:
    """Timezone-aware UTC helper to avoid naive datetime usage."""
    return datetime.now(timezone.utc)


def ensure_aware(value: datetime) -> datetime:
    """Treat naive timestamps from older rows as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def serialize_datetime(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return ensure_aware(value).isoformat()


def deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
    if not raw:
        return None
    return ensure_aware(datetime.fromisoformat(raw))


def secrets_match(stored: str, submitted: str) -> bool:
    """Constant-time comparison of two one-time values."""
    return hmac.compare_digest(stored.encode(), submitted.encode())


def evaluate_one_time(
    stored_value: Optional[str],
    expires_at: Optional[datetime],
    submitted: str,
    now: datetime,
    *,
    expiry_first: bool,
) -> ConsumeStatus:
    """Decide what a submission against stored one-time material means.

    ``expiry_first`` reports EXPIRED before comparing values (email codes);
    otherwise a wrong value is reported as MISMATCH without revealing whether
    the stored record has lapsed (challenge tokens).
    """
    if stored_value is None or expires_at is None:
        return ConsumeStatus.ABSENT
    expired = ensure_aware(now) > ensure_aware(expires_at)
    if expiry_first and expired:
        return ConsumeStatus.EXPIRED
    if not secrets_match(stored_value, submitted):
        return ConsumeStatus.MISMATCH
    if expired:
        return ConsumeStatus.EXPIRED
    return ConsumeStatus.CONSUMED


def normalize_recovery_code(code: str) -> str:
    return code.strip().replace("-", "").replace(" ", "").upper()


def digest_code(code: str) -> str:
    """SHA-256 digest of a normalized recovery code, for storage at rest."""
    return hashlib.sha256(normalize_recovery_code(code).encode()).hexdigest()


class SecretCipher:
    """Symmetric encryption for TOTP secrets at rest."""

    def __init__(self, key_material: Optional[str] = None) -> None:
        if key_material:
            key = base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())
        else:
            # Process-local key: secrets do not survive a restart
            key = Fernet.generate_key()
            logger.warning("secret_cipher_ephemeral_key")
        self._fernet = Fernet(key)

    def encrypt(self, secret: Optional[str]) -> Optional[str]:
        if secret is None:
            return None
        return self._fernet.encrypt(secret.encode()).decode()

    def decrypt(self, token: Optional[str]) -> Optional[str]:
        if token is None:
            return None
        try:
            return self._fernet.decrypt(token.encode()).decode()
        except InvalidToken:
            logger.warning("totp_secret_decrypt_failed")
            return None


def check_recovery_codes(
    identity_id: str, state: FactorState, codes: Optional[list[str]]
) -> list[str]:
    """Validate a recovery set against the factor it belongs to.

    Returns the set to store: empty unless the factor is a confirmed TOTP.
    """
    if not codes:
        return []
    if state.method is not FactorMethod.TOTP or state.confirmed_at is None:
        raise ConstraintViolation(
            "recovery codes require a confirmed totp factor",
            {"identity_id": identity_id, "method": state.method.value},
        )
    if len(codes) > MAX_RECOVERY_CODES:
        raise ConstraintViolation(
            "too many recovery codes",
            {"identity_id": identity_id, "count": len(codes)},
        )
    return list(codes)


def remove_recovery_digest(codes: list[str], digest: str) -> Optional[list[str]]:
    """Return ``codes`` minus exactly one match of ``digest``, or None if absent."""
    for index, stored in enumerate(codes):
        if secrets_match(stored, digest):
            return codes[:index] + codes[index + 1 :]
    return None
