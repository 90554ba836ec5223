from __future__ import annotations

import threading
from datetime import timedelta
from typing import Optional
from urllib.parse import urlparse, urlunparse

from stepgate.config import NotificationTransport, Settings, get_settings
from stepgate.logging import get_logger
from stepgate.service.challenge import ChallengeIssuer
from stepgate.service.email_code import EmailCodeVerifier
from stepgate.service.login import LoginOrchestrator
from stepgate.service.notifications import (
    HttpNotificationSender,
    NotificationSender,
    SmtpNotificationSender,
)
from stepgate.service.recovery import RecoveryCodeManager
from stepgate.service.totp import TotpVerifier
from stepgate.storage.contract import StepUpStore
from stepgate.storage.identity_cache import IdentityCache
from stepgate.storage.memory import MemoryStore
from stepgate.storage.postgres import PostgresStore
from stepgate.storage.redis_cache import RedisOneTimeStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    parsed = urlparse(url)
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    if parsed.username:
        netloc = f"{parsed.username}:***@{netloc}"
    else:
        netloc = f":***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds the store, identity cache and step-up services built from settings."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        store: Optional[StepUpStore] = None,
        sender: Optional[NotificationSender] = None,
    ):
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )
        self.store = store or self._build_store()
        self.cache = IdentityCache(
            ttl=timedelta(minutes=self.settings.identity_cache_ttl_minutes),
            capacity=self.settings.identity_cache_capacity,
            evict_fraction=self.settings.identity_cache_evict_fraction,
            sweep_interval=self.settings.identity_cache_sweep_seconds,
        )
        self.sender = sender or self._build_sender()
        self.challenges = ChallengeIssuer(
            self.store,
            ttl=timedelta(minutes=self.settings.challenge_ttl_minutes),
            token_length=self.settings.challenge_token_length,
        )
        self.recovery = RecoveryCodeManager(
            self.store,
            count=self.settings.recovery_code_count,
            length=self.settings.recovery_code_length,
        )
        self.totp = TotpVerifier(
            self.store,
            issuer=self.settings.totp_issuer,
            digits=self.settings.totp_digits,
            interval=self.settings.totp_interval_seconds,
            window=self.settings.totp_valid_window,
            algorithm=self.settings.totp_algorithm,
            recovery=self.recovery,
        )
        self.email_codes = EmailCodeVerifier(
            self.store,
            self.sender,
            ttl=timedelta(minutes=self.settings.email_code_ttl_minutes),
        )
        self.login = LoginOrchestrator(
            self.store,
            self.cache,
            self.challenges,
            self.totp,
            self.email_codes,
            self.recovery,
            low_recovery_threshold=self.settings.recovery_code_warning_threshold,
        )
        self.cache.start()
        logger.info(
            "runtime_initialized",
            store_type=type(self.store).__name__,
            transport=self.settings.notification_transport.value,
            sender_configured=getattr(self.sender, "is_configured", True),
            cache_capacity=self.settings.identity_cache_capacity,
        )

    def _build_store(self) -> StepUpStore:
        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            if self.settings.use_memory_store:
                base: StepUpStore = MemoryStore(
                    fs_root=self.settings.shared_fs_root,
                    encryption_key=self.settings.secret_encryption_key,
                )
            else:
                base = PostgresStore(
                    self.settings.database_url,
                    encryption_key=self.settings.secret_encryption_key,
                )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
            )
            raise
        logger.info("runtime_store_initialized", store_type=store_type)
        if not self.settings.redis_url:
            return base
        store = RedisOneTimeStore(base, self.settings.redis_url)
        store.verify_connection()
        logger.info(
            "runtime_redis_enabled",
            redis_url=_mask_url_password(self.settings.redis_url),
        )
        return store

    def _build_sender(self) -> NotificationSender:
        address_lookup = self._lookup_address
        if self.settings.notification_transport is NotificationTransport.HTTP:
            return HttpNotificationSender(
                address_lookup=address_lookup,
                api_url=self.settings.email_api_url,
                api_key=self.settings.email_api_key,
                from_email=self.settings.email_from_address,
                from_name=self.settings.email_from_name,
                code_ttl_minutes=self.settings.email_code_ttl_minutes,
            )
        return SmtpNotificationSender(
            address_lookup=address_lookup,
            smtp_host=self.settings.smtp_host,
            smtp_port=self.settings.smtp_port,
            smtp_user=self.settings.smtp_user,
            smtp_password=self.settings.smtp_password,
            smtp_use_tls=self.settings.smtp_use_tls,
            from_email=self.settings.email_from_address,
            from_name=self.settings.email_from_name,
            code_ttl_minutes=self.settings.email_code_ttl_minutes,
        )

    def _lookup_address(self, identity_id: str) -> Optional[str]:
        snapshot = self.store.get_identity(identity_id)
        return snapshot.email if snapshot else None

    def close(self) -> None:
        self.cache.shutdown()
        close = getattr(self.store, "close", None)
        if close is not None:
            close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests(settings: Optional[Settings] = None) -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime
    with _runtime_lock:
        if runtime is not None:
            runtime.close()
        runtime = Runtime(settings)
        return runtime
