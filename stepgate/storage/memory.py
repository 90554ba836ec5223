from __future__ import annotations

import json
import os
import secrets
import threading
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Dict, Optional

from stepgate.logging import get_logger
from stepgate.storage.common import (
    CLEARING_STATUSES,
    SecretCipher,
    check_recovery_codes,
    deserialize_datetime,
    evaluate_one_time,
    remove_recovery_digest,
    serialize_datetime,
)
from stepgate.storage.models import (
    ConsumeStatus,
    EmailCode,
    FactorMethod,
    FactorState,
    IdentityRecord,
    IdentitySnapshot,
    StepUpChallenge,
)


class MemoryStore:
    """In-process store engine.

    Every read and write runs under one re-entrant lock, so each ``consume_*``
    call is a single critical section. When ``fs_root`` is given the durable
    part of the state (identities, factors, recovery digests) is written to
    ``<fs_root>/state/stepgate_store.json`` after each mutation; challenges and
    email codes stay in memory only.
    """

    def __init__(
        self, fs_root: str | None = None, *, encryption_key: str | None = None
    ) -> None:
        self.logger = get_logger(__name__)
        self.records: Dict[str, IdentityRecord] = {}
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root:
            self.fs_root.mkdir(parents=True, exist_ok=True)
        self._cipher = SecretCipher(encryption_key or self._load_key_material())
        self._load_state()

    def _load_key_material(self) -> str | None:
        material = os.getenv("SECRET_ENCRYPTION_KEY")
        if material or not self.fs_root:
            return material
        key_path = self.fs_root / ".stepgate_key"
        if key_path.exists():
            persisted = key_path.read_text().strip()
            if persisted:
                return persisted
        generated = secrets.token_urlsafe(48)
        try:
            key_path.write_text(generated)
            os.chmod(key_path, 0o600)
        except OSError as exc:
            raise RuntimeError("Unable to persist secret encryption key") from exc
        return generated

    def _record(self, identity_id: str) -> IdentityRecord:
        record = self.records.get(identity_id)
        if record is None:
            record = IdentityRecord(identity_id=identity_id)
            self.records[identity_id] = record
        return record

    # identities
    def register_identity(
        self, identity_id: str, email: Optional[str] = None
    ) -> IdentitySnapshot:
        with self._data_lock:
            record = self._record(identity_id)
            if email is not None:
                record.email = email
            self._persist_state()
            return self._snapshot(record)

    def get_identity(self, identity_id: str) -> Optional[IdentitySnapshot]:
        with self._data_lock:
            record = self.records.get(identity_id)
            if record is None:
                return None
            return self._snapshot(record)

    def _snapshot(self, record: IdentityRecord) -> IdentitySnapshot:
        return IdentitySnapshot.from_state(
            record.identity_id, record.factor, email=record.email
        )

    # factor state
    def get_factor_state(self, identity_id: str) -> FactorState:
        with self._data_lock:
            record = self.records.get(identity_id)
            if record is None:
                return FactorState.none()
            return replace(record.factor, secret=self._cipher.decrypt(record.factor.secret))

    def set_factor_state(
        self,
        identity_id: str,
        state: FactorState,
        *,
        recovery_codes: Optional[list[str]] = None,
    ) -> FactorState:
        codes = check_recovery_codes(identity_id, state, recovery_codes)
        with self._data_lock:
            record = self._record(identity_id)
            record.factor = replace(state, secret=self._cipher.encrypt(state.secret))
            record.recovery_codes = codes
            self._persist_state()
        return state

    def confirm_factor(
        self,
        identity_id: str,
        secret: str,
        confirmed_at: datetime,
        recovery_codes: list[str],
    ) -> bool:
        with self._data_lock:
            record = self.records.get(identity_id)
            if record is None or not record.factor.pending:
                return False
            if self._cipher.decrypt(record.factor.secret) != secret:
                return False
            confirmed = record.factor.confirmed(confirmed_at)
            record.recovery_codes = check_recovery_codes(identity_id, confirmed, recovery_codes)
            record.factor = confirmed
            self._persist_state()
            return True

    def clear_factor(self, identity_id: str) -> None:
        with self._data_lock:
            record = self.records.get(identity_id)
            if record is None:
                return
            record.factor = FactorState.none()
            record.recovery_codes = []
            record.challenge = None
            record.email_code = None
            self._persist_state()

    # challenges
    def get_challenge(self, identity_id: str) -> Optional[StepUpChallenge]:
        with self._data_lock:
            record = self.records.get(identity_id)
            return record.challenge if record else None

    def set_challenge(
        self, identity_id: str, token: str, expires_at: datetime
    ) -> StepUpChallenge:
        challenge = StepUpChallenge(token=token, expires_at=expires_at)
        with self._data_lock:
            self._record(identity_id).challenge = challenge
        return challenge

    def clear_challenge(self, identity_id: str) -> None:
        with self._data_lock:
            record = self.records.get(identity_id)
            if record:
                record.challenge = None

    def consume_challenge(
        self, identity_id: str, token: str, now: datetime
    ) -> ConsumeStatus:
        with self._data_lock:
            record = self.records.get(identity_id)
            challenge = record.challenge if record else None
            status = evaluate_one_time(
                challenge.token if challenge else None,
                challenge.expires_at if challenge else None,
                token,
                now,
                expiry_first=False,
            )
            if record and status in CLEARING_STATUSES:
                record.challenge = None
            return status

    # email codes
    def get_email_code(self, identity_id: str) -> Optional[EmailCode]:
        with self._data_lock:
            record = self.records.get(identity_id)
            return record.email_code if record else None

    def set_email_code(
        self, identity_id: str, value: str, expires_at: datetime
    ) -> EmailCode:
        code = EmailCode(value=value, expires_at=expires_at)
        with self._data_lock:
            self._record(identity_id).email_code = code
        return code

    def clear_email_code(self, identity_id: str) -> None:
        with self._data_lock:
            record = self.records.get(identity_id)
            if record:
                record.email_code = None

    def consume_email_code(
        self, identity_id: str, value: str, now: datetime
    ) -> ConsumeStatus:
        with self._data_lock:
            record = self.records.get(identity_id)
            code = record.email_code if record else None
            status = evaluate_one_time(
                code.value if code else None,
                code.expires_at if code else None,
                value,
                now,
                expiry_first=True,
            )
            if record and status in CLEARING_STATUSES:
                record.email_code = None
            return status

    # recovery codes
    def get_recovery_codes(self, identity_id: str) -> list[str]:
        with self._data_lock:
            record = self.records.get(identity_id)
            return list(record.recovery_codes) if record else []

    def set_recovery_codes(self, identity_id: str, codes: list[str]) -> None:
        with self._data_lock:
            record = self._record(identity_id)
            record.recovery_codes = check_recovery_codes(identity_id, record.factor, codes)
            self._persist_state()

    def consume_recovery_code(self, identity_id: str, digest: str) -> Optional[int]:
        with self._data_lock:
            record = self.records.get(identity_id)
            if record is None or not record.recovery_codes:
                return None
            remaining = remove_recovery_digest(record.recovery_codes, digest)
            if remaining is None:
                return None
            record.recovery_codes = remaining
            self._persist_state()
            return len(remaining)

    # persistence
    def _state_path(self) -> Optional[Path]:
        if not self.fs_root:
            return None
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "stepgate_store.json"

    def _persist_state(self) -> None:
        path = self._state_path()
        if path is None:
            return
        payload = {
            "identities": [
                self._serialize_record(record) for record in self.records.values()
            ]
        }
        tmp_path = path.with_suffix(".tmp")
        tmp_path.write_text(json.dumps(payload))
        os.replace(tmp_path, path)

    def _load_state(self) -> bool:
        path = self._state_path()
        if path is None or not path.exists():
            return False
        try:
            data = json.loads(path.read_text())
        except (OSError, json.JSONDecodeError) as exc:
            self.logger.error("memory_store_state_unreadable", error_type=type(exc).__name__)
            return False
        with self._data_lock:
            self.records = {
                raw["identity_id"]: self._deserialize_record(raw)
                for raw in data.get("identities", [])
            }
        self.logger.info("memory_store_state_loaded", identities=len(self.records))
        return True

    @staticmethod
    def _serialize_record(record: IdentityRecord) -> dict:
        # factor.secret is already encrypted at this point
        return {
            "identity_id": record.identity_id,
            "email": record.email,
            "method": record.factor.method.value,
            "secret": record.factor.secret,
            "confirmed_at": serialize_datetime(record.factor.confirmed_at),
            "recovery_codes": list(record.recovery_codes),
        }

    @staticmethod
    def _deserialize_record(data: dict) -> IdentityRecord:
        return IdentityRecord(
            identity_id=data["identity_id"],
            email=data.get("email"),
            factor=FactorState(
                method=FactorMethod(data.get("method", FactorMethod.NONE.value)),
                secret=data.get("secret"),
                confirmed_at=deserialize_datetime(data.get("confirmed_at")),
            ),
            recovery_codes=list(data.get("recovery_codes") or []),
        )
