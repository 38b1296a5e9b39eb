from __future__ import annotations

import asyncio
import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from loginguard.config import get_settings, reset_settings_cache
from loginguard.logging import get_logger
from loginguard.service.accounts import AccountService
from loginguard.service.audit import AuditTrail
from loginguard.service.credentials import CredentialStore
from loginguard.service.email import EmailService
from loginguard.service.human_verification import HumanVerificationGate
from loginguard.service.login import LoginStateMachine
from loginguard.service.password_policy import PasswordLifecyclePolicy
from loginguard.service.session_guard import SessionGuard
from loginguard.service.tokens import IdentityTokens
from loginguard.storage.memory import MemoryStore
from loginguard.storage.postgres import PostgresStore
from loginguard.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
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
        if parsed.username:
            netloc = f"{parsed.username}:***@{netloc}"
        else:
            netloc = f":***@{netloc}"
        return urlunparse(
            (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
        )
    except ValueError:
        return "***url_parse_error***"


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )
        mfa_key = self.settings.mfa_secret_key or self.settings.jwt_secret

        try:
            if self.settings.use_memory_store:
                # Test runs stay in-process; dev servers snapshot to SHARED_FS_ROOT
                self.store = MemoryStore(
                    fs_root=None if self.settings.test_mode else self.settings.shared_fs_root,
                    mfa_encryption_key=mfa_key,
                )
            else:
                self.store = PostgresStore(
                    self.settings.database_url, mfa_encryption_key=mfa_key
                )
            logger.info(
                "runtime_store_initialized",
                store_type="memory" if self.settings.use_memory_store else "postgres",
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type="memory" if self.settings.use_memory_store else "postgres",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                # Use sync Redis client in test mode to avoid event loop issues
                if self.settings.test_mode:
                    cache = SyncRedisCache(self.settings.redis_url)
                else:
                    cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                redis_error = exc
                self.cache = None

        if not self.cache:
            if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
                raise RuntimeError(
                    "Redis is required for pending two-factor logins; start Redis or set "
                    "TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from redis_error
            fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                message=(
                    f"Running without Redis under {fallback_mode}; pending two-factor "
                    "logins are held in process memory only."
                ),
                mode=fallback_mode,
            )

        self.audit = AuditTrail(self.store)
        self.credentials = CredentialStore(self.store)
        self.gate = HumanVerificationGate(self.settings, self.audit)
        self.policy = PasswordLifecyclePolicy(self.settings, self.credentials)
        self.session_guard = SessionGuard(self.audit)
        self.tokens = IdentityTokens(self.settings)
        self.login = LoginStateMachine(
            self.settings,
            self.credentials,
            self.gate,
            self.audit,
            self.policy,
            cache=self.cache,
        )
        self.email = EmailService(
            smtp_host=self.settings.smtp_host,
            smtp_port=self.settings.smtp_port,
            smtp_user=self.settings.smtp_user,
            smtp_password=self.settings.smtp_password,
            smtp_use_tls=self.settings.smtp_use_tls,
            from_email=self.settings.email_from_address,
            from_name=self.settings.email_from_name,
            reset_ttl_minutes=self.settings.password_reset_token_ttl_minutes,
        )
        self.accounts = AccountService(
            self.settings,
            self.credentials,
            self.gate,
            self.audit,
            self.policy,
            self.login,
            self.email,
        )

        logger.info(
            "runtime_initialized",
            redis_enabled=self.cache is not None,
            email_configured=self.email.is_configured,
            human_verification_configured=self.settings.human_verification_configured,
        )

    async def close(self) -> None:
        if self.cache is not None:
            await self.cache.close()
        if hasattr(self.store, "close"):
            self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Uses double-checked locking: a lock-free fast path for an existing
    runtime, then a locked re-check before creating one.
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def _close_cache(cache) -> None:
    try:
        # SyncRedisCache uses a sync client internally, close it directly
        if isinstance(cache, SyncRedisCache):
            cache.client.close()
            return
        try:
            loop = asyncio.get_running_loop()
            loop.create_task(cache.close())
        except RuntimeError:
            asyncio.run(cache.close())
    except Exception as exc:
        # Connection may already be closed
        logger.debug("runtime_cache_close_failed", error=str(exc))


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None and runtime.cache is not None:
            _close_cache(runtime.cache)

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime
