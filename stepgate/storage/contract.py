from __future__ import annotations

from datetime import datetime
from typing import Optional, Protocol

from stepgate.storage.models import (
    ConsumeStatus,
    EmailCode,
    FactorState,
    IdentitySnapshot,
    StepUpChallenge,
)


class StepUpStore(Protocol):
    """Read/write contract the step-up services need from a store engine.

    The ``consume_*`` methods are the atomic check-and-clear primitives: the
    comparison and the clear happen as one operation so two concurrent
    submissions of the same value cannot both observe CONSUMED.
    """

    def register_identity(self, identity_id: str, email: Optional[str] = None) -> IdentitySnapshot: ...

    def get_identity(self, identity_id: str) -> Optional[IdentitySnapshot]: ...

    def get_factor_state(self, identity_id: str) -> FactorState: ...

    def set_factor_state(
        self,
        identity_id: str,
        state: FactorState,
        *,
        recovery_codes: Optional[list[str]] = None,
    ) -> FactorState: ...

    def confirm_factor(
        self,
        identity_id: str,
        secret: str,
        confirmed_at: datetime,
        recovery_codes: list[str],
    ) -> bool:
        """Confirm a pending TOTP factor and store its recovery digests.

        Applies only while the stored factor is still the unconfirmed
        ``secret``; returns False when another call confirmed, replaced or
        cleared it first.
        """
        ...

    def clear_factor(self, identity_id: str) -> None: ...

    def get_challenge(self, identity_id: str) -> Optional[StepUpChallenge]: ...

    def set_challenge(
        self, identity_id: str, token: str, expires_at: datetime
    ) -> StepUpChallenge: ...

    def clear_challenge(self, identity_id: str) -> None: ...

    def consume_challenge(
        self, identity_id: str, token: str, now: datetime
    ) -> ConsumeStatus: ...

    def get_email_code(self, identity_id: str) -> Optional[EmailCode]: ...

    def set_email_code(
        self, identity_id: str, value: str, expires_at: datetime
    ) -> EmailCode: ...

    def clear_email_code(self, identity_id: str) -> None: ...

    def consume_email_code(
        self, identity_id: str, value: str, now: datetime
    ) -> ConsumeStatus: ...

    def get_recovery_codes(self, identity_id: str) -> list[str]: ...

    def set_recovery_codes(self, identity_id: str, codes: list[str]) -> None: ...

    def consume_recovery_code(self, identity_id: str, digest: str) -> Optional[int]: ...
