from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime
from typing import Callable, Iterator, Optional, Union

from stepgate.logging import get_logger
from stepgate.service.challenge import ChallengeIssuer
from stepgate.service.email_code import EmailCodeVerifier
from stepgate.service.errors import (
    Authenticated,
    ChallengeFailed,
    ChallengeIssued,
    EnrollmentFailed,
    FactorStatus,
    FailureReason,
    NoStepUpRequired,
    ServerError,
    StoreUnavailableError,
    TotpEnrollment,
    ValidationError,
)
from stepgate.service.recovery import RecoveryCodeManager
from stepgate.service.totp import TotpVerifier
from stepgate.storage.common import utcnow
from stepgate.storage.contract import StepUpStore
from stepgate.storage.errors import StoreUnavailable
from stepgate.storage.identity_cache import IdentityCache
from stepgate.storage.models import ConsumeStatus, FactorMethod, FactorState, IdentitySnapshot

BeginResult = Union[NoStepUpRequired, ChallengeIssued, ChallengeFailed]
CompleteResult = Union[Authenticated, ChallengeFailed]

# Consume outcomes of the email code after the challenge itself was accepted
_EMAIL_FAILURES = {
    ConsumeStatus.ABSENT: FailureReason.CHALLENGE_NOT_FOUND,
    ConsumeStatus.EXPIRED: FailureReason.EXPIRED_CODE,
    ConsumeStatus.MISMATCH: FailureReason.INVALID_CODE,
}


class LoginOrchestrator:
    """Step-up state machine between primary-credential success and a full login.

    ``begin_login`` is entered once the identity provider has verified the
    primary credential. It either returns the identity straight away or issues
    a challenge; ``complete_login`` and ``complete_login_with_recovery_code``
    settle that challenge exactly once. A failed submission is terminal for the
    attempt and the caller starts over with ``begin_login``.
    """

    def __init__(
        self,
        store: StepUpStore,
        cache: IdentityCache,
        challenges: ChallengeIssuer,
        totp: TotpVerifier,
        email_codes: EmailCodeVerifier,
        recovery: RecoveryCodeManager,
        low_recovery_threshold: int = 3,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.cache = cache
        self.challenges = challenges
        self.totp = totp
        self.email_codes = email_codes
        self.recovery = recovery
        self.low_recovery_threshold = low_recovery_threshold
        self._clock = clock or utcnow
        self.logger = get_logger(__name__)

    @staticmethod
    def _require_identity(identity_id: str) -> str:
        if not isinstance(identity_id, str) or not identity_id.strip():
            raise ValidationError("identity_id is required", detail={"field": "identity_id"})
        return identity_id

    @contextmanager
    def _store_guard(self, operation: str, identity_id: str) -> Iterator[None]:
        try:
            yield
        except StoreUnavailable as exc:
            self.logger.error(
                "store_unavailable",
                operation=operation,
                identity_id=identity_id,
                store_operation=exc.operation,
            )
            raise StoreUnavailableError(
                "persistent store unavailable",
                detail={"operation": operation},
            ) from exc

    def _load_snapshot(self, identity_id: str) -> IdentitySnapshot:
        cached = self.cache.get(identity_id)
        if cached is not None:
            return cached
        snapshot = self.store.get_identity(identity_id) or IdentitySnapshot(identity_id=identity_id)
        return self.cache.put(snapshot)

    def _fail(self, operation: str, identity_id: str, reason: FailureReason) -> ChallengeFailed:
        self.logger.info("stepup_failed", operation=operation, identity_id=identity_id, reason=reason.value)
        return ChallengeFailed(reason)

    def _challenge_failure(self, status: ConsumeStatus, method: FactorMethod) -> Optional[FailureReason]:
        if status is ConsumeStatus.CONSUMED:
            return None
        if status is ConsumeStatus.EXPIRED:
            # The emailed code shares the challenge lifetime; report the code as the lapsed item
            return FailureReason.EXPIRED_CODE if method is FactorMethod.EMAIL else FailureReason.EXPIRED_CHALLENGE
        return FailureReason.CHALLENGE_NOT_FOUND

    def _authenticated(
        self, identity_id: str, *, remaining: Optional[int] = None
    ) -> Authenticated:
        # Leftover one-time material must not outlive a successful login
        self.store.clear_email_code(identity_id)
        self.cache.invalidate(identity_id)
        snapshot = self._load_snapshot(identity_id)
        low = remaining is not None and remaining < self.low_recovery_threshold
        if low:
            self.logger.warning("recovery_codes_low", identity_id=identity_id, remaining=remaining)
        self.logger.info("stepup_authenticated", identity_id=identity_id, method=snapshot.method.value)
        return Authenticated(identity=snapshot, recovery_codes_remaining=remaining, low_recovery_codes=low)

    async def begin_login(self, identity_id: str) -> BeginResult:
        identity_id = self._require_identity(identity_id)
        with self._store_guard("begin_login", identity_id):
            snapshot = self._load_snapshot(identity_id)
            if not snapshot.enabled or snapshot.method is FactorMethod.NONE:
                self.logger.info("stepup_not_required", identity_id=identity_id)
                return NoStepUpRequired(snapshot)
            if snapshot.method is FactorMethod.TOTP:
                challenge = self.challenges.issue(identity_id)
                return ChallengeIssued(challenge.token, FactorMethod.TOTP, challenge.expires_at)
            if snapshot.method is FactorMethod.EMAIL:
                challenge = self.challenges.issue(identity_id)
                failure = await self.email_codes.generate_and_dispatch(identity_id)
                if failure is not None:
                    self.store.clear_challenge(identity_id)
                    return self._fail("begin_login", identity_id, failure)
                return ChallengeIssued(challenge.token, FactorMethod.EMAIL, challenge.expires_at)
        raise ServerError("unsupported factor method", detail={"method": snapshot.method.value})

    async def complete_login(self, identity_id: str, challenge_token: str, code: str) -> CompleteResult:
        identity_id = self._require_identity(identity_id)
        with self._store_guard("complete_login", identity_id):
            state = self.store.get_factor_state(identity_id)
            failure = self._challenge_failure(
                self.challenges.consume(identity_id, challenge_token or ""), state.method
            )
            if failure is not None:
                if failure is FailureReason.EXPIRED_CODE:
                    self.store.clear_email_code(identity_id)
                return self._fail("complete_login", identity_id, failure)
            if not state.enabled:
                return self._fail("complete_login", identity_id, FailureReason.NOT_ENROLLED)
            if state.method is FactorMethod.TOTP:
                if not state.secret or not self.totp.verify_code(state.secret, code):
                    return self._fail("complete_login", identity_id, FailureReason.INVALID_CODE)
                return self._authenticated(identity_id)
            if state.method is FactorMethod.EMAIL:
                status = self.email_codes.verify(identity_id, code)
                if status is not ConsumeStatus.CONSUMED:
                    # The challenge is spent, so the code cannot be retried either
                    self.store.clear_email_code(identity_id)
                    return self._fail("complete_login", identity_id, _EMAIL_FAILURES[status])
                return self._authenticated(identity_id)
        raise ServerError("unsupported factor method", detail={"method": state.method.value})

    async def complete_login_with_recovery_code(
        self, identity_id: str, challenge_token: str, recovery_code: str
    ) -> CompleteResult:
        identity_id = self._require_identity(identity_id)
        with self._store_guard("complete_login_with_recovery_code", identity_id):
            state = self.store.get_factor_state(identity_id)
            status = self.challenges.consume(identity_id, challenge_token or "")
            if status is ConsumeStatus.EXPIRED:
                return self._fail("complete_login_with_recovery_code", identity_id, FailureReason.EXPIRED_CHALLENGE)
            if status is not ConsumeStatus.CONSUMED:
                return self._fail("complete_login_with_recovery_code", identity_id, FailureReason.CHALLENGE_NOT_FOUND)
            if not (state.enabled and state.method is FactorMethod.TOTP):
                return self._fail("complete_login_with_recovery_code", identity_id, FailureReason.NOT_ENROLLED)
            outcome = self.recovery.verify_and_consume(identity_id, recovery_code)
            if outcome is None:
                return self._fail(
                    "complete_login_with_recovery_code", identity_id, FailureReason.RECOVERY_CODE_EXHAUSTED
                )
            return self._authenticated(identity_id, remaining=outcome.remaining)

    async def enroll_totp(
        self, identity_id: str, account_name: Optional[str] = None
    ) -> Union[TotpEnrollment, EnrollmentFailed]:
        """Start (or restart) TOTP enrollment.

        An unconfirmed secret from an earlier call is replaced; an active factor
        of either method must be disabled first.
        """
        identity_id = self._require_identity(identity_id)
        with self._store_guard("enroll_totp", identity_id):
            if self.store.get_factor_state(identity_id).enabled:
                self.logger.info("enrollment_rejected", identity_id=identity_id, reason=FailureReason.ALREADY_ENROLLED.value)
                return EnrollmentFailed(FailureReason.ALREADY_ENROLLED)
            snapshot = self.store.get_identity(identity_id)
            label = account_name or (snapshot.email if snapshot else None) or identity_id
            enrollment = self.totp.enroll(identity_id, label)
            self.cache.invalidate(identity_id)
            return enrollment

    async def confirm_totp(self, identity_id: str, code: str) -> Union[list[str], EnrollmentFailed]:
        identity_id = self._require_identity(identity_id)
        with self._store_guard("confirm_totp", identity_id):
            result = self.totp.confirm(identity_id, code)
            self.cache.invalidate(identity_id)
            return result

    async def enroll_email(self, identity_id: str, email: Optional[str] = None) -> Optional[EnrollmentFailed]:
        """Enable the email factor, replacing any pending TOTP enrollment."""
        identity_id = self._require_identity(identity_id)
        with self._store_guard("enroll_email", identity_id):
            if self.store.get_factor_state(identity_id).enabled:
                self.logger.info("enrollment_rejected", identity_id=identity_id, reason=FailureReason.ALREADY_ENROLLED.value)
                return EnrollmentFailed(FailureReason.ALREADY_ENROLLED)
            if email is not None:
                self.store.register_identity(identity_id, email)
            self.store.set_factor_state(
                identity_id,
                FactorState(method=FactorMethod.EMAIL, confirmed_at=self._clock()),
                recovery_codes=None,
            )
            self.cache.invalidate(identity_id)
            self.logger.info("email_factor_enabled", identity_id=identity_id)
            return None

    async def resend_email_code(self, identity_id: str) -> Optional[ChallengeFailed]:
        """Send a fresh code for the outstanding email challenge."""
        identity_id = self._require_identity(identity_id)
        with self._store_guard("resend_email_code", identity_id):
            state = self.store.get_factor_state(identity_id)
            if not (state.enabled and state.method is FactorMethod.EMAIL):
                return self._fail("resend_email_code", identity_id, FailureReason.NOT_ENROLLED)
            challenge = self.store.get_challenge(identity_id)
            if challenge is None or challenge.is_expired(self._clock()):
                return self._fail("resend_email_code", identity_id, FailureReason.CHALLENGE_NOT_FOUND)
            failure = await self.email_codes.generate_and_dispatch(identity_id)
            if failure is not None:
                return self._fail("resend_email_code", identity_id, failure)
            return None

    async def disable(self, identity_id: str) -> None:
        identity_id = self._require_identity(identity_id)
        with self._store_guard("disable", identity_id):
            self.store.clear_factor(identity_id)
            self.cache.invalidate(identity_id)
        self.logger.info("stepup_factor_disabled", identity_id=identity_id)

    async def status(self, identity_id: str) -> FactorStatus:
        identity_id = self._require_identity(identity_id)
        with self._store_guard("status", identity_id):
            snapshot = self._load_snapshot(identity_id)
        if not snapshot.enabled:
            return FactorStatus(enabled=False, method=None, confirmed_at=None)
        return FactorStatus(enabled=True, method=snapshot.method, confirmed_at=snapshot.confirmed_at)
