from __future__ import annotations

import secrets
import string
from dataclasses import dataclass
from typing import Optional

from stepgate.logging import get_logger
from stepgate.storage.common import digest_code, normalize_recovery_code
from stepgate.storage.contract import StepUpStore
from stepgate.storage.models import MAX_RECOVERY_CODES

CODE_ALPHABET = string.ascii_uppercase + string.digits


@dataclass(frozen=True)
class RecoveryOutcome:
    remaining: int


class RecoveryCodeManager:
    """Issues single-use fallback codes and consumes them one at a time.

    Only SHA-256 digests of the codes reach the store; the plaintext set is
    returned once, at generation.
    """

    def __init__(self, store: StepUpStore, count: int = MAX_RECOVERY_CODES, length: int = 8) -> None:
        if not 0 < count <= MAX_RECOVERY_CODES:
            raise ValueError(f"count must be between 1 and {MAX_RECOVERY_CODES}")
        if length <= 0:
            raise ValueError("length must be positive")
        self.store = store
        self.count = count
        self.length = length
        self.logger = get_logger(__name__)

    def generate(self) -> list[str]:
        codes: list[str] = []
        while len(codes) < self.count:
            code = "".join(secrets.choice(CODE_ALPHABET) for _ in range(self.length))
            if code not in codes:
                codes.append(code)
        return codes

    @staticmethod
    def digest(code: str) -> str:
        return digest_code(code)

    def verify_and_consume(self, identity_id: str, code: str) -> Optional[RecoveryOutcome]:
        if not normalize_recovery_code(code or ""):
            return None
        remaining = self.store.consume_recovery_code(identity_id, self.digest(code))
        if remaining is None:
            self.logger.info("recovery_code_rejected", identity_id=identity_id)
            return None
        self.logger.info("recovery_code_consumed", identity_id=identity_id, remaining=remaining)
        return RecoveryOutcome(remaining=remaining)
