from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional

from stepgate.storage.models import FactorMethod, IdentitySnapshot


class FailureReason(str, Enum):
    """Expected, user-facing failure kinds returned inside typed results."""

    NOT_ENROLLED = "not_enrolled"
    ALREADY_ENROLLED = "already_enrolled"
    INVALID_CODE = "invalid_code"
    EXPIRED_CHALLENGE = "expired_challenge"
    EXPIRED_CODE = "expired_code"
    CHALLENGE_NOT_FOUND = "challenge_not_found"
    RECOVERY_CODE_EXHAUSTED = "recovery_code_exhausted"
    TRANSPORT_FAILURE = "transport_failure"


@dataclass(frozen=True)
class NoStepUpRequired:
    identity: IdentitySnapshot


@dataclass(frozen=True)
class ChallengeIssued:
    challenge_token: str
    method: FactorMethod
    expires_at: datetime

    def __repr__(self) -> str:
        return f"ChallengeIssued(method={self.method.value!r}, expires_at={self.expires_at.isoformat()!r})"


@dataclass(frozen=True)
class Authenticated:
    identity: IdentitySnapshot
    recovery_codes_remaining: Optional[int] = None
    low_recovery_codes: bool = False


@dataclass(frozen=True)
class ChallengeFailed:
    reason: FailureReason


@dataclass(frozen=True)
class EnrollmentFailed:
    reason: FailureReason


@dataclass(frozen=True)
class TotpEnrollment:
    secret: str
    provisioning_uri: str

    def __repr__(self) -> str:
        return "TotpEnrollment(secret=[REDACTED])"


@dataclass(frozen=True)
class FactorStatus:
    enabled: bool
    method: Optional[FactorMethod]
    confirmed_at: Optional[datetime] = None


class ServiceError(Exception):
    """Base class for service-layer exceptions surfaced to the outer API layer.

    Each subclass carries a stable ``error_code`` and the HTTP ``status_code``
    an API layer should answer with:
    - validation_error (400)
    - server_error (500)
    - store_unavailable (503)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class StoreUnavailableError(ServerError):
    """Persistent store unreachable; fatal to the request (503)."""
    status_code = 503
    error_code = "store_unavailable"


__all__ = [
    "FailureReason",
    "NoStepUpRequired",
    "ChallengeIssued",
    "Authenticated",
    "ChallengeFailed",
    "EnrollmentFailed",
    "TotpEnrollment",
    "FactorStatus",
    "ServiceError",
    "ValidationError",
    "ServerError",
    "StoreUnavailableError",
]
