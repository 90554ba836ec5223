from __future__ import annotations

import secrets
from datetime import datetime, timedelta
from typing import Callable, Optional

from stepgate.logging import get_logger
from stepgate.service.errors import FailureReason
from stepgate.service.notifications import NotificationSender
from stepgate.storage.common import utcnow
from stepgate.storage.contract import StepUpStore
from stepgate.storage.models import ConsumeStatus

CODE_DIGITS = 6


class EmailCodeVerifier:
    """Numeric one-time codes delivered out of band."""

    def __init__(
        self,
        store: StepUpStore,
        sender: NotificationSender,
        ttl: timedelta = timedelta(minutes=10),
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.sender = sender
        self.ttl = ttl
        self._clock = clock or utcnow
        self.logger = get_logger(__name__)

    @staticmethod
    def _new_code() -> str:
        return str(secrets.randbelow(10**CODE_DIGITS)).zfill(CODE_DIGITS)

    async def generate_and_dispatch(self, identity_id: str) -> Optional[FailureReason]:
        """Store a fresh code and hand it to the sender.

        Returns ``None`` once the sender accepted the code. On failure the
        stored code is cleared and ``TRANSPORT_FAILURE`` returned.
        """
        code = self._new_code()
        self.store.set_email_code(identity_id, code, self._clock() + self.ttl)
        try:
            delivered = await self.sender.send_code(identity_id, code)
        except BaseException:
            self.store.clear_email_code(identity_id)
            raise
        if not delivered:
            self.store.clear_email_code(identity_id)
            self.logger.warning(
                "email_code_dispatch_failed",
                identity_id=identity_id,
                reason=FailureReason.TRANSPORT_FAILURE.value,
            )
            return FailureReason.TRANSPORT_FAILURE
        self.logger.info("email_code_dispatched", identity_id=identity_id)
        return None

    def verify(self, identity_id: str, code: str) -> ConsumeStatus:
        submitted = (code or "").strip().replace(" ", "")
        status = self.store.consume_email_code(identity_id, submitted, self._clock())
        if status is not ConsumeStatus.CONSUMED:
            self.logger.info("email_code_rejected", identity_id=identity_id, status=status.value)
        return status
