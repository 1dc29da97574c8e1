from __future__ import annotations

import threading
from datetime import timedelta
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from invitely.config import get_settings, reset_settings_cache
from invitely.logging import get_logger
from invitely.service.audit import QueueAuditSink
from invitely.service.auth import AuthService
from invitely.service.clock import Clock, SystemClock
from invitely.service.credentials import CredentialService
from invitely.service.email import EmailService, MailDispatcher
from invitely.service.password_policy import PasswordPolicy
from invitely.service.primitives import PasswordHashing
from invitely.service.rate_limit import RateLimiter
from invitely.storage.memory import MemorySessionStore, MemoryUserRepository
from invitely.storage.redis_cache import RedisSessionStore, SyncRedisSessionStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password in a connection URL with ``***`` for logging.

    redis://:secret@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if not parsed.password:
            return url
        netloc = parsed.hostname or ""
        if parsed.port:
            netloc = f"{netloc}:{parsed.port}"
        netloc = f"{parsed.username or ''}:***@{netloc}"
        return urlunparse(
            (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
        )
    except ValueError:
        return "***url_parse_error***"


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self, *, clock: Optional[Clock] = None):
        self.settings = get_settings()
        self.clock: Clock = clock or SystemClock()
        logger.info("runtime_init_started", test_mode=self.settings.test_mode)

        self.store: Union[RedisSessionStore, MemorySessionStore] = self._build_store()
        self.users = MemoryUserRepository(clock=self.clock)

        try:
            self.credentials = CredentialService.from_settings(self.settings, clock=self.clock)
        except ValueError as exc:
            logger.error("runtime_signing_keys_invalid", error=str(exc))
            raise

        self.hashing = PasswordHashing(
            self.settings.hash_work_factor,
            memory_cost=self.settings.hash_memory_cost,
            parallelism=self.settings.hash_parallelism,
        )
        limits = self.settings.rate_limit
        self.login_limiter = RateLimiter("login", limits.login, self.store, clock=self.clock)
        self.reset_limiter = RateLimiter(
            "password_reset", limits.reset, self.store, clock=self.clock
        )
        self.register_limiter = RateLimiter(
            "register", limits.register, self.store, clock=self.clock
        )
        self.audit = QueueAuditSink(
            max_pending=self.settings.audit_queue_limit, clock=self.clock
        )
        self.email = EmailService(
            smtp_host=self.settings.smtp_host,
            smtp_port=self.settings.smtp_port,
            smtp_user=self.settings.smtp_user,
            smtp_password=self.settings.smtp_password,
            smtp_use_tls=self.settings.smtp_use_tls,
            from_email=self.settings.email_from,
            from_name=self.settings.email_from_name,
            base_url=self.settings.app_base_url,
            reset_lifetime_minutes=self.settings.password_reset_lifetime_seconds // 60,
            verification_lifetime_hours=self.settings.verification_lifetime_seconds // 3600,
        )
        if not self.email.is_configured:
            if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
                raise RuntimeError(
                    "SMTP is required to deliver reset and verification links; "
                    "set SMTP_HOST/EMAIL_FROM or TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true "
                    "for local dev-mode mail."
                )
            logger.warning("email_dev_mode_enabled", test_mode=self.settings.test_mode)
        self.mail = MailDispatcher(
            self.email,
            workers=self.settings.mail_workers,
            max_pending=self.settings.mail_queue_limit,
        )
        self.auth = AuthService(
            users=self.users,
            store=self.store,
            credentials=self.credentials,
            hashing=self.hashing,
            policy=PasswordPolicy(),
            login_limiter=self.login_limiter,
            reset_limiter=self.reset_limiter,
            register_limiter=self.register_limiter,
            mailer=self.mail,
            audit=self.audit,
            password_reset_lifetime=timedelta(
                seconds=self.settings.password_reset_lifetime_seconds
            ),
            refresh_denylist_ttl=timedelta(seconds=self.settings.refresh_denylist_ttl_seconds),
            clock=self.clock,
        )
        logger.info(
            "runtime_initialized",
            redis_enabled=isinstance(self.store, RedisSessionStore),
            email_configured=self.email.is_configured,
            signing_keys_configured=self.settings.signing_keys_configured,
        )

    def _build_store(self) -> Union[RedisSessionStore, MemorySessionStore]:
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                # Sync client in test mode; TestClient runs each request on its own loop
                if self.settings.test_mode:
                    store: RedisSessionStore = SyncRedisSessionStore(
                        self.settings.redis_url,
                        socket_timeout=self.settings.redis_socket_timeout,
                    )
                else:
                    store = RedisSessionStore.from_url(
                        self.settings.redis_url,
                        socket_timeout=self.settings.redis_socket_timeout,
                    )
                store.verify_connection()
                return store
            except Exception as exc:
                redis_error = exc

        if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
            raise RuntimeError(
                "Redis is required for sessions, denylists and rate limits; "
                "start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
            ) from redis_error

        fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
        logger.warning(
            "redis_disabled_fallback",
            redis_url=_mask_url_password(self.settings.redis_url),
            error=str(redis_error) if redis_error else "redis_url_missing",
            message=(
                f"Running without Redis under {fallback_mode}; sessions, denylists and "
                "rate limits are in-memory only."
            ),
            mode=fallback_mode,
        )
        return MemorySessionStore(clock=self.clock)

    async def close(self) -> None:
        self.mail.shutdown(wait=True)
        self.audit.close()
        await self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton (double-checked locking)."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None:
            runtime.mail.shutdown(wait=True)
            runtime.audit.close()
            if isinstance(runtime.store, SyncRedisSessionStore):
                runtime.store.close_sync()

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime
