from __future__ import annotations

import json
from contextlib import contextmanager
from datetime import datetime
from typing import Iterator, Optional

from redis import Redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError
from redis.exceptions import WatchError

from stepgate.logging import get_logger
from stepgate.storage.common import (
    CLEARING_STATUSES,
    deserialize_datetime,
    ensure_aware,
    evaluate_one_time,
    serialize_datetime,
    utcnow,
)
from stepgate.storage.contract import StepUpStore
from stepgate.storage.errors import StoreUnavailable
from stepgate.storage.models import (
    ConsumeStatus,
    EmailCode,
    FactorState,
    IdentitySnapshot,
    StepUpChallenge,
)


class RedisOneTimeStore:
    """Keeps challenges and email codes in Redis, everything else in ``base``.

    Each value is a JSON document ``{"value": ..., "expires_at": ...}`` written
    with a Redis TTL of twice its remaining lifetime plus a margin; the
    logical expiry stored in the document is what decides EXPIRED. Check-and-clear runs inside a
    WATCH/MULTI transaction and retries when the key changes underneath it.
    """

    CHALLENGE_PREFIX = "stepup:challenge:"
    EMAIL_CODE_PREFIX = "stepup:email_code:"
    # Keys outlive their logical expiry by one more lifetime plus this margin,
    # so a late submission still reads EXPIRED rather than ABSENT
    TTL_GRACE_SECONDS = 60

    def __init__(
        self,
        base: StepUpStore,
        redis_url: str | None = None,
        *,
        client: Redis | None = None,
        socket_timeout: float = 5.0,
    ) -> None:
        if client is None and not redis_url:
            raise ValueError("redis_url or client is required")
        self.base = base
        self.redis_url = redis_url
        self.client = client or Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self.logger = get_logger(__name__)

    def verify_connection(self) -> None:
        with self._guard("verify_connection"):
            self.client.ping()

    @contextmanager
    def _guard(self, operation: str, identity_id: Optional[str] = None) -> Iterator[None]:
        try:
            yield
        except (RedisConnectionError, RedisTimeoutError) as exc:
            self.logger.error(
                "store_unavailable",
                operation=operation,
                identity_id=identity_id,
                error_type=type(exc).__name__,
            )
            raise StoreUnavailable(operation, {"identity_id": identity_id}) from exc

    @classmethod
    def _ttl_seconds(cls, expires_at: datetime) -> int:
        remaining = int((ensure_aware(expires_at) - utcnow()).total_seconds())
        return 2 * max(1, remaining) + cls.TTL_GRACE_SECONDS

    @staticmethod
    def _encode(value: str, expires_at: datetime) -> str:
        return json.dumps({"value": value, "expires_at": serialize_datetime(expires_at)})

    @staticmethod
    def _decode(raw: Optional[str]) -> tuple[Optional[str], Optional[datetime]]:
        if not raw:
            return None, None
        data = json.loads(raw)
        return data.get("value"), deserialize_datetime(data.get("expires_at"))

    def _write(self, operation: str, key: str, identity_id: str, value: str, expires_at: datetime) -> None:
        with self._guard(operation, identity_id):
            self.client.set(key, self._encode(value, expires_at), ex=self._ttl_seconds(expires_at))

    def _read(self, operation: str, key: str, identity_id: str) -> tuple[Optional[str], Optional[datetime]]:
        with self._guard(operation, identity_id):
            return self._decode(self.client.get(key))

    def _delete(self, operation: str, identity_id: str, *keys: str) -> None:
        with self._guard(operation, identity_id):
            self.client.delete(*keys)

    def _consume(
        self,
        operation: str,
        key: str,
        identity_id: str,
        submitted: str,
        now: datetime,
        *,
        expiry_first: bool,
    ) -> ConsumeStatus:
        with self._guard(operation, identity_id), self.client.pipeline() as pipe:
            while True:
                try:
                    pipe.watch(key)
                    stored, expires_at = self._decode(pipe.get(key))
                    status = evaluate_one_time(
                        stored, expires_at, submitted, now, expiry_first=expiry_first
                    )
                    if status in CLEARING_STATUSES:
                        pipe.multi()
                        pipe.delete(key)
                        pipe.execute()
                    else:
                        pipe.unwatch()
                    return status
                except WatchError:
                    # Key rewritten between WATCH and EXEC; evaluate again
                    self.logger.debug("one_time_consume_retry", operation=operation, identity_id=identity_id)
                    continue

    # identities and durable factor state
    def register_identity(self, identity_id: str, email: Optional[str] = None) -> IdentitySnapshot:
        return self.base.register_identity(identity_id, email)

    def get_identity(self, identity_id: str) -> Optional[IdentitySnapshot]:
        return self.base.get_identity(identity_id)

    def get_factor_state(self, identity_id: str) -> FactorState:
        return self.base.get_factor_state(identity_id)

    def set_factor_state(
        self,
        identity_id: str,
        state: FactorState,
        *,
        recovery_codes: Optional[list[str]] = None,
    ) -> FactorState:
        return self.base.set_factor_state(identity_id, state, recovery_codes=recovery_codes)

    def confirm_factor(
        self,
        identity_id: str,
        secret: str,
        confirmed_at: datetime,
        recovery_codes: list[str],
    ) -> bool:
        return self.base.confirm_factor(identity_id, secret, confirmed_at, recovery_codes)

    def clear_factor(self, identity_id: str) -> None:
        self.base.clear_factor(identity_id)
        self._delete(
            "clear_factor",
            identity_id,
            self.CHALLENGE_PREFIX + identity_id,
            self.EMAIL_CODE_PREFIX + identity_id,
        )

    def get_recovery_codes(self, identity_id: str) -> list[str]:
        return self.base.get_recovery_codes(identity_id)

    def set_recovery_codes(self, identity_id: str, codes: list[str]) -> None:
        self.base.set_recovery_codes(identity_id, codes)

    def consume_recovery_code(self, identity_id: str, digest: str) -> Optional[int]:
        return self.base.consume_recovery_code(identity_id, digest)

    # challenges
    def get_challenge(self, identity_id: str) -> Optional[StepUpChallenge]:
        token, expires_at = self._read("get_challenge", self.CHALLENGE_PREFIX + identity_id, identity_id)
        if token is None or expires_at is None:
            return None
        return StepUpChallenge(token=token, expires_at=expires_at)

    def set_challenge(self, identity_id: str, token: str, expires_at: datetime) -> StepUpChallenge:
        self._write("set_challenge", self.CHALLENGE_PREFIX + identity_id, identity_id, token, expires_at)
        return StepUpChallenge(token=token, expires_at=expires_at)

    def clear_challenge(self, identity_id: str) -> None:
        self._delete("clear_challenge", identity_id, self.CHALLENGE_PREFIX + identity_id)

    def consume_challenge(self, identity_id: str, token: str, now: datetime) -> ConsumeStatus:
        return self._consume(
            "consume_challenge",
            self.CHALLENGE_PREFIX + identity_id,
            identity_id,
            token,
            now,
            expiry_first=False,
        )

    # email codes
    def get_email_code(self, identity_id: str) -> Optional[EmailCode]:
        value, expires_at = self._read("get_email_code", self.EMAIL_CODE_PREFIX + identity_id, identity_id)
        if value is None or expires_at is None:
            return None
        return EmailCode(value=value, expires_at=expires_at)

    def set_email_code(self, identity_id: str, value: str, expires_at: datetime) -> EmailCode:
        self._write("set_email_code", self.EMAIL_CODE_PREFIX + identity_id, identity_id, value, expires_at)
        return EmailCode(value=value, expires_at=expires_at)

    def clear_email_code(self, identity_id: str) -> None:
        self._delete("clear_email_code", identity_id, self.EMAIL_CODE_PREFIX + identity_id)

    def consume_email_code(self, identity_id: str, value: str, now: datetime) -> ConsumeStatus:
        return self._consume(
            "consume_email_code",
            self.EMAIL_CODE_PREFIX + identity_id,
            identity_id,
            value,
            now,
            expiry_first=True,
        )

    def close(self) -> None:
        self.client.close()
        close_base = getattr(self.base, "close", None)
        if close_base is not None:
            close_base()
