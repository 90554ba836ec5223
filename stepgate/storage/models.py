from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Optional

MAX_RECOVERY_CODES = 8


class FactorMethod(str, Enum):
    """Second factor enrolled for an identity. At most one per identity."""

    NONE = "none"
    TOTP = "totp"
    EMAIL = "email"


class ConsumeStatus(str, Enum):
    """Outcome of an atomic compare-and-clear against one-time material."""

    CONSUMED = "consumed"
    ABSENT = "absent"
    EXPIRED = "expired"
    MISMATCH = "mismatch"


@dataclass(frozen=True)
class FactorState:
    method: FactorMethod = FactorMethod.NONE
    secret: Optional[str] = None
    confirmed_at: Optional[datetime] = None

    @classmethod
    def none(cls) -> "FactorState":
        return cls()

    @property
    def enabled(self) -> bool:
        return self.method is not FactorMethod.NONE and self.confirmed_at is not None

    @property
    def pending(self) -> bool:
        """TOTP secret issued but not yet confirmed with a valid code."""
        return self.method is FactorMethod.TOTP and self.confirmed_at is None

    def confirmed(self, at: datetime) -> "FactorState":
        return replace(self, confirmed_at=at)


@dataclass(frozen=True)
class StepUpChallenge:
    token: str
    expires_at: datetime

    def is_expired(self, now: datetime) -> bool:
        return now > self.expires_at


@dataclass(frozen=True)
class EmailCode:
    value: str
    expires_at: datetime

    def is_expired(self, now: datetime) -> bool:
        return now > self.expires_at


@dataclass(frozen=True)
class IdentitySnapshot:
    """Cacheable view of an identity. Never carries the TOTP secret."""

    identity_id: str
    email: Optional[str] = None
    method: FactorMethod = FactorMethod.NONE
    enabled: bool = False
    confirmed_at: Optional[datetime] = None

    @classmethod
    def from_state(
        cls, identity_id: str, state: FactorState, *, email: Optional[str] = None
    ) -> "IdentitySnapshot":
        return cls(
            identity_id=identity_id,
            email=email,
            method=state.method,
            enabled=state.enabled,
            confirmed_at=state.confirmed_at,
        )


@dataclass
class IdentityRecord:
    """Full per-identity row as the storage engines hold it."""

    identity_id: str
    email: Optional[str] = None
    factor: FactorState = field(default_factory=FactorState.none)
    recovery_codes: list[str] = field(default_factory=list)
    challenge: Optional[StepUpChallenge] = None
    email_code: Optional[EmailCode] = None

    def snapshot(self) -> IdentitySnapshot:
        return IdentitySnapshot.from_state(self.identity_id, self.factor, email=self.email)
