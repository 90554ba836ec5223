from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import secrets
from datetime import datetime
from typing import Callable, Optional, Union
from urllib.parse import quote, urlencode

from stepgate.config import TotpAlgorithm
from stepgate.logging import get_logger
from stepgate.service.errors import EnrollmentFailed, FailureReason, TotpEnrollment
from stepgate.service.recovery import RecoveryCodeManager
from stepgate.storage.common import utcnow
from stepgate.storage.contract import StepUpStore
from stepgate.storage.models import FactorMethod, FactorState

# 160-bit shared secret, the RFC 4226 recommended length
SECRET_BYTES = 20


class TotpVerifier:
    """RFC 6238 time-based one-time codes.

    ``window`` is the number of time steps accepted either side of the
    current one, so the default of 2 tolerates 60 seconds of clock skew at a
    30 second interval.
    """

    def __init__(
        self,
        store: StepUpStore,
        issuer: str = "StepGate",
        digits: int = 6,
        interval: int = 30,
        window: int = 2,
        algorithm: Union[str, TotpAlgorithm] = TotpAlgorithm.SHA1,
        *,
        recovery: Optional[RecoveryCodeManager] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.issuer = issuer
        self.digits = digits
        self.interval = interval
        self.window = window
        self.algorithm = TotpAlgorithm(algorithm.upper() if isinstance(algorithm, str) else algorithm)
        self.recovery = recovery or RecoveryCodeManager(store)
        self._clock = clock or utcnow
        self.logger = get_logger(__name__)

    @property
    def _digestmod(self):
        return getattr(hashlib, self.algorithm.value.lower())

    @staticmethod
    def new_secret() -> str:
        return base64.b32encode(secrets.token_bytes(SECRET_BYTES)).decode("ascii").rstrip("=")

    def provisioning_uri(self, secret: str, account_name: str) -> str:
        label = f"{quote(self.issuer, safe='')}:{quote(account_name, safe='@')}"
        query = urlencode(
            {
                "secret": secret,
                "issuer": self.issuer,
                "algorithm": self.algorithm.value,
                "digits": self.digits,
                "period": self.interval,
            }
        )
        return f"otpauth://totp/{label}?{query}"

    def enroll(self, identity_id: str, account_name: Optional[str] = None) -> TotpEnrollment:
        """Store a new pending secret; the factor stays disabled until confirmed."""
        secret = self.new_secret()
        self.store.set_factor_state(
            identity_id, FactorState(method=FactorMethod.TOTP, secret=secret)
        )
        self.logger.info("totp_enrollment_started", identity_id=identity_id)
        return TotpEnrollment(
            secret=secret,
            provisioning_uri=self.provisioning_uri(secret, account_name or identity_id),
        )

    def generate_code(self, secret: str, at: datetime) -> str:
        padded = secret.upper() + "=" * ((8 - len(secret) % 8) % 8)
        try:
            key = base64.b32decode(padded, casefold=True)
        except (binascii.Error, ValueError):
            self.logger.warning("totp_secret_invalid")
            return ""
        counter = int(at.timestamp() // self.interval).to_bytes(8, "big")
        digest = hmac.new(key, counter, self._digestmod).digest()
        offset = digest[-1] & 0x0F
        code_int = (int.from_bytes(digest[offset : offset + 4], "big") & 0x7FFFFFFF) % (
            10**self.digits
        )
        return str(code_int).zfill(self.digits)

    def verify_code(self, secret: str, code: str, at: Optional[datetime] = None) -> bool:
        submitted = (code or "").replace(" ", "").replace("-", "")
        if len(submitted) != self.digits or not submitted.isdigit():
            return False
        moment = at or self._clock()
        base = moment.timestamp()
        matched = False
        for offset in range(-self.window, self.window + 1):
            generated = self.generate_code(
                secret, datetime.fromtimestamp(base + offset * self.interval, tz=moment.tzinfo)
            )
            # Keep scanning after a match so timing does not reveal the step
            if generated and hmac.compare_digest(generated, submitted):
                matched = True
        return matched

    def confirm(self, identity_id: str, code: str) -> Union[list[str], EnrollmentFailed]:
        """Enable a pending TOTP factor and hand back its recovery codes.

        The plaintext codes are returned here and nowhere else.
        """
        state = self.store.get_factor_state(identity_id)
        if state.method is not FactorMethod.TOTP or not state.secret:
            self.logger.info("totp_confirm_rejected", identity_id=identity_id, reason=FailureReason.NOT_ENROLLED.value)
            return EnrollmentFailed(FailureReason.NOT_ENROLLED)
        if not state.pending:
            self.logger.info("totp_confirm_rejected", identity_id=identity_id, reason=FailureReason.ALREADY_ENROLLED.value)
            return EnrollmentFailed(FailureReason.ALREADY_ENROLLED)
        if not self.verify_code(state.secret, code):
            self.logger.info("totp_confirm_rejected", identity_id=identity_id, reason=FailureReason.INVALID_CODE.value)
            return EnrollmentFailed(FailureReason.INVALID_CODE)
        codes = self.recovery.generate()
        confirmed_at = self._clock()
        applied = self.store.confirm_factor(
            identity_id,
            state.secret,
            confirmed_at,
            [self.recovery.digest(c) for c in codes],
        )
        if not applied:
            current = self.store.get_factor_state(identity_id)
            reason = FailureReason.ALREADY_ENROLLED if current.enabled else FailureReason.NOT_ENROLLED
            self.logger.info("totp_confirm_rejected", identity_id=identity_id, reason=reason.value)
            return EnrollmentFailed(reason)
        self.logger.info("totp_enabled", identity_id=identity_id, recovery_codes_issued=len(codes))
        return codes
