from __future__ import annotations

import secrets
import string
from datetime import datetime, timedelta
from typing import Callable, Optional

from stepgate.logging import get_logger
from stepgate.storage.common import utcnow
from stepgate.storage.contract import StepUpStore
from stepgate.storage.models import ConsumeStatus, StepUpChallenge

TOKEN_ALPHABET = string.ascii_letters + string.digits
MIN_TOKEN_LENGTH = 64


class ChallengeIssuer:
    """Mints the per-login challenge token that binds a code to an identity."""

    def __init__(
        self,
        store: StepUpStore,
        ttl: timedelta = timedelta(minutes=10),
        token_length: int = MIN_TOKEN_LENGTH,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        if token_length < MIN_TOKEN_LENGTH:
            raise ValueError(f"token_length must be at least {MIN_TOKEN_LENGTH}")
        self.store = store
        self.ttl = ttl
        self.token_length = token_length
        self._clock = clock or utcnow
        self.logger = get_logger(__name__)

    def _new_token(self) -> str:
        return "".join(secrets.choice(TOKEN_ALPHABET) for _ in range(self.token_length))

    def issue(self, identity_id: str) -> StepUpChallenge:
        """Store a fresh challenge for ``identity_id``, replacing any prior one."""
        expires_at = self._clock() + self.ttl
        challenge = self.store.set_challenge(identity_id, self._new_token(), expires_at)
        self.logger.info(
            "stepup_challenge_issued",
            identity_id=identity_id,
            expires_at=expires_at.isoformat(),
        )
        return challenge

    def consume(self, identity_id: str, token: str) -> ConsumeStatus:
        status = self.store.consume_challenge(identity_id, token, self._clock())
        if status is not ConsumeStatus.CONSUMED:
            self.logger.info(
                "stepup_challenge_rejected", identity_id=identity_id, status=status.value
            )
        return status
