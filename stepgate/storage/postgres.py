from __future__ import annotations

import json
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Iterator, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from stepgate.logging import get_logger
from stepgate.storage.common import (
    CLEARING_STATUSES,
    SecretCipher,
    check_recovery_codes,
    ensure_aware,
    evaluate_one_time,
    remove_recovery_digest,
)
from stepgate.storage.errors import StoreUnavailable
from stepgate.storage.models import (
    ConsumeStatus,
    EmailCode,
    FactorMethod,
    FactorState,
    IdentitySnapshot,
    StepUpChallenge,
)

_DRIVER_ERRORS = (errors.OperationalError, errors.InterfaceError, PoolTimeout)


class PostgresStore:
    """Postgres-backed store engine.

    One ``stepup_factor`` row per identity. Check-and-clear operations take the
    row with ``SELECT ... FOR UPDATE`` and update it in the same transaction.
    """

    def __init__(
        self,
        dsn: str,
        *,
        encryption_key: str | None = None,
        min_size: int = 2,
        max_size: int = 10,
    ) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
            open=True,
        )
        self._cipher = SecretCipher(encryption_key)
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    @contextmanager
    def _guard(self, operation: str, identity_id: Optional[str] = None) -> Iterator[None]:
        try:
            yield
        except _DRIVER_ERRORS as exc:
            self.logger.error(
                "store_unavailable",
                operation=operation,
                identity_id=identity_id,
                error_type=type(exc).__name__,
            )
            raise StoreUnavailable(operation, {"identity_id": identity_id}) from exc

    def _ensure_schema(self) -> None:
        """Create the ``stepup_factor`` table if it is missing."""

        with self._guard("ensure_schema"), self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS stepup_factor (
                    identity_id TEXT PRIMARY KEY,
                    email TEXT,
                    method TEXT NOT NULL DEFAULT 'none',
                    secret TEXT,
                    confirmed_at TIMESTAMPTZ,
                    recovery_codes JSONB NOT NULL DEFAULT '[]'::jsonb,
                    challenge_token TEXT,
                    challenge_expires_at TIMESTAMPTZ,
                    email_code TEXT,
                    email_code_expires_at TIMESTAMPTZ,
                    updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
                )
                """
            )

    def _ensure_row(self, conn, identity_id: str) -> None:
        conn.execute(
            "INSERT INTO stepup_factor (identity_id) VALUES (%s) ON CONFLICT (identity_id) DO NOTHING",
            (identity_id,),
        )

    def _fetch_row(self, conn, identity_id: str, *, lock: bool = False) -> Optional[dict]:
        query = "SELECT * FROM stepup_factor WHERE identity_id = %s"
        if lock:
            query += " FOR UPDATE"
        return conn.execute(query, (identity_id,)).fetchone()

    @staticmethod
    def _decode_codes(raw: Any) -> list[str]:
        if raw is None:
            return []
        if isinstance(raw, str):
            raw = json.loads(raw)
        return [str(code) for code in raw]

    @staticmethod
    def _factor_from_row(row: dict) -> FactorState:
        confirmed_at = row.get("confirmed_at")
        return FactorState(
            method=FactorMethod(row.get("method") or FactorMethod.NONE.value),
            secret=row.get("secret"),
            confirmed_at=ensure_aware(confirmed_at) if confirmed_at else None,
        )

    # identities
    def register_identity(
        self, identity_id: str, email: Optional[str] = None
    ) -> IdentitySnapshot:
        with self._guard("register_identity", identity_id), self._connect() as conn:
            conn.execute(
                """
                INSERT INTO stepup_factor (identity_id, email) VALUES (%s, %s)
                ON CONFLICT (identity_id) DO UPDATE
                SET email = COALESCE(EXCLUDED.email, stepup_factor.email), updated_at = now()
                """,
                (identity_id, email),
            )
            row = self._fetch_row(conn, identity_id)
        return IdentitySnapshot.from_state(
            identity_id, self._factor_from_row(row), email=row.get("email")
        )

    def get_identity(self, identity_id: str) -> Optional[IdentitySnapshot]:
        with self._guard("get_identity", identity_id), self._connect() as conn:
            row = self._fetch_row(conn, identity_id)
        if not row:
            return None
        return IdentitySnapshot.from_state(
            identity_id, self._factor_from_row(row), email=row.get("email")
        )

    # factor state
    def get_factor_state(self, identity_id: str) -> FactorState:
        with self._guard("get_factor_state", identity_id), self._connect() as conn:
            row = self._fetch_row(conn, identity_id)
        if not row:
            return FactorState.none()
        state = self._factor_from_row(row)
        return FactorState(
            method=state.method,
            secret=self._cipher.decrypt(state.secret),
            confirmed_at=state.confirmed_at,
        )

    def set_factor_state(
        self,
        identity_id: str,
        state: FactorState,
        *,
        recovery_codes: Optional[list[str]] = None,
    ) -> FactorState:
        codes = check_recovery_codes(identity_id, state, recovery_codes)
        with self._guard("set_factor_state", identity_id), self._connect() as conn:
            conn.execute(
                """
                INSERT INTO stepup_factor (identity_id, method, secret, confirmed_at, recovery_codes)
                VALUES (%s, %s, %s, %s, %s)
                ON CONFLICT (identity_id) DO UPDATE
                SET method = EXCLUDED.method,
                    secret = EXCLUDED.secret,
                    confirmed_at = EXCLUDED.confirmed_at,
                    recovery_codes = EXCLUDED.recovery_codes,
                    updated_at = now()
                """,
                (
                    identity_id,
                    state.method.value,
                    self._cipher.encrypt(state.secret),
                    state.confirmed_at,
                    json.dumps(codes),
                ),
            )
        return state

    def confirm_factor(
        self,
        identity_id: str,
        secret: str,
        confirmed_at: datetime,
        recovery_codes: list[str],
    ) -> bool:
        with self._guard("confirm_factor", identity_id), self._connect() as conn:
            row = self._fetch_row(conn, identity_id, lock=True)
            if not row:
                return False
            state = self._factor_from_row(row)
            if not state.pending or self._cipher.decrypt(state.secret) != secret:
                return False
            confirmed = state.confirmed(confirmed_at)
            codes = check_recovery_codes(identity_id, confirmed, recovery_codes)
            conn.execute(
                """
                UPDATE stepup_factor
                SET confirmed_at = %s, recovery_codes = %s, updated_at = now()
                WHERE identity_id = %s
                """,
                (confirmed_at, json.dumps(codes), identity_id),
            )
        return True

    def clear_factor(self, identity_id: str) -> None:
        with self._guard("clear_factor", identity_id), self._connect() as conn:
            conn.execute(
                """
                UPDATE stepup_factor
                SET method = 'none', secret = NULL, confirmed_at = NULL,
                    recovery_codes = '[]'::jsonb,
                    challenge_token = NULL, challenge_expires_at = NULL,
                    email_code = NULL, email_code_expires_at = NULL,
                    updated_at = now()
                WHERE identity_id = %s
                """,
                (identity_id,),
            )

    # challenges
    def get_challenge(self, identity_id: str) -> Optional[StepUpChallenge]:
        with self._guard("get_challenge", identity_id), self._connect() as conn:
            row = self._fetch_row(conn, identity_id)
        if not row or not row.get("challenge_token") or not row.get("challenge_expires_at"):
            return None
        return StepUpChallenge(
            token=row["challenge_token"],
            expires_at=ensure_aware(row["challenge_expires_at"]),
        )

    def set_challenge(
        self, identity_id: str, token: str, expires_at: datetime
    ) -> StepUpChallenge:
        with self._guard("set_challenge", identity_id), self._connect() as conn:
            conn.execute(
                """
                INSERT INTO stepup_factor (identity_id, challenge_token, challenge_expires_at)
                VALUES (%s, %s, %s)
                ON CONFLICT (identity_id) DO UPDATE
                SET challenge_token = EXCLUDED.challenge_token,
                    challenge_expires_at = EXCLUDED.challenge_expires_at,
                    updated_at = now()
                """,
                (identity_id, token, expires_at),
            )
        return StepUpChallenge(token=token, expires_at=expires_at)

    def clear_challenge(self, identity_id: str) -> None:
        with self._guard("clear_challenge", identity_id), self._connect() as conn:
            conn.execute(
                "UPDATE stepup_factor SET challenge_token = NULL, challenge_expires_at = NULL, updated_at = now() WHERE identity_id = %s",
                (identity_id,),
            )

    def consume_challenge(
        self, identity_id: str, token: str, now: datetime
    ) -> ConsumeStatus:
        with self._guard("consume_challenge", identity_id), self._connect() as conn:
            row = self._fetch_row(conn, identity_id, lock=True)
            status = evaluate_one_time(
                row.get("challenge_token") if row else None,
                row.get("challenge_expires_at") if row else None,
                token,
                now,
                expiry_first=False,
            )
            if status in CLEARING_STATUSES:
                conn.execute(
                    "UPDATE stepup_factor SET challenge_token = NULL, challenge_expires_at = NULL, updated_at = now() WHERE identity_id = %s",
                    (identity_id,),
                )
        return status

    # email codes
    def get_email_code(self, identity_id: str) -> Optional[EmailCode]:
        with self._guard("get_email_code", identity_id), self._connect() as conn:
            row = self._fetch_row(conn, identity_id)
        if not row or not row.get("email_code") or not row.get("email_code_expires_at"):
            return None
        return EmailCode(
            value=row["email_code"],
            expires_at=ensure_aware(row["email_code_expires_at"]),
        )

    def set_email_code(
        self, identity_id: str, value: str, expires_at: datetime
    ) -> EmailCode:
        with self._guard("set_email_code", identity_id), self._connect() as conn:
            conn.execute(
                """
                INSERT INTO stepup_factor (identity_id, email_code, email_code_expires_at)
                VALUES (%s, %s, %s)
                ON CONFLICT (identity_id) DO UPDATE
                SET email_code = EXCLUDED.email_code,
                    email_code_expires_at = EXCLUDED.email_code_expires_at,
                    updated_at = now()
                """,
                (identity_id, value, expires_at),
            )
        return EmailCode(value=value, expires_at=expires_at)

    def clear_email_code(self, identity_id: str) -> None:
        with self._guard("clear_email_code", identity_id), self._connect() as conn:
            conn.execute(
                "UPDATE stepup_factor SET email_code = NULL, email_code_expires_at = NULL, updated_at = now() WHERE identity_id = %s",
                (identity_id,),
            )

    def consume_email_code(
        self, identity_id: str, value: str, now: datetime
    ) -> ConsumeStatus:
        with self._guard("consume_email_code", identity_id), self._connect() as conn:
            row = self._fetch_row(conn, identity_id, lock=True)
            status = evaluate_one_time(
                row.get("email_code") if row else None,
                row.get("email_code_expires_at") if row else None,
                value,
                now,
                expiry_first=True,
            )
            if status in CLEARING_STATUSES:
                conn.execute(
                    "UPDATE stepup_factor SET email_code = NULL, email_code_expires_at = NULL, updated_at = now() WHERE identity_id = %s",
                    (identity_id,),
                )
        return status

    # recovery codes
    def get_recovery_codes(self, identity_id: str) -> list[str]:
        with self._guard("get_recovery_codes", identity_id), self._connect() as conn:
            row = self._fetch_row(conn, identity_id)
        return self._decode_codes(row.get("recovery_codes")) if row else []

    def set_recovery_codes(self, identity_id: str, codes: list[str]) -> None:
        with self._guard("set_recovery_codes", identity_id), self._connect() as conn:
            self._ensure_row(conn, identity_id)
            row = self._fetch_row(conn, identity_id, lock=True)
            checked = check_recovery_codes(identity_id, self._factor_from_row(row), codes)
            conn.execute(
                "UPDATE stepup_factor SET recovery_codes = %s, updated_at = now() WHERE identity_id = %s",
                (json.dumps(checked), identity_id),
            )

    def consume_recovery_code(self, identity_id: str, digest: str) -> Optional[int]:
        with self._guard("consume_recovery_code", identity_id), self._connect() as conn:
            row = self._fetch_row(conn, identity_id, lock=True)
            if not row:
                return None
            remaining = remove_recovery_digest(
                self._decode_codes(row.get("recovery_codes")), digest
            )
            if remaining is None:
                return None
            conn.execute(
                "UPDATE stepup_factor SET recovery_codes = %s, updated_at = now() WHERE identity_id = %s",
                (json.dumps(remaining), identity_id),
            )
        return len(remaining)

    def close(self) -> None:
        self.pool.close()
