from __future__ import annotations

import asyncio
import threading
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from swifttravel.config import RateLimitWindowMode, Settings, get_settings, reset_settings_cache
from swifttravel.logging import get_logger
from swifttravel.service.email import EmailService
from swifttravel.service.magic_link import MagicLinkIssuer, MagicTokenVerifier
from swifttravel.service.rate_limit import MagicLinkRateLimiter
from swifttravel.service.revocation import RevocationRegistry
from swifttravel.service.sessions import SessionTokenSigner, SessionValidator
from swifttravel.service.users import UserService
from swifttravel.storage.memory import MemoryStore, MemoryTokenStore
from swifttravel.storage.postgres import PostgresStore
from swifttravel.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask password in URL for safe logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if parsed.password:
            netloc = parsed.hostname or ""
            if parsed.port:
                netloc = f"{netloc}:{parsed.port}"
            if parsed.username:
                netloc = f"{parsed.username}:***@{netloc}"
            else:
                netloc = f":***@{netloc}"
            return urlunparse((
                parsed.scheme,
                netloc,
                parsed.path,
                parsed.params,
                parsed.query,
                parsed.fragment,
            ))
        return url
    except ValueError:
        return "***url_parse_error***"


class Runtime:
    """Builds and holds the auth services for the FastAPI app."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
            app_env=self.settings.app_env,
        )

        try:
            self.store: Union[MemoryStore, PostgresStore] = (
                MemoryStore(fs_root=self.settings.shared_fs_root)
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url)
            )
            logger.info(
                "runtime_store_initialized",
                store_type="memory" if self.settings.use_memory_store else "postgres",
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type="memory" if self.settings.use_memory_store else "postgres",
                database_url=_mask_url_password(self.settings.database_url),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.token_store: Union[RedisCache, SyncRedisCache, MemoryTokenStore]
        self.cache: Union[RedisCache, SyncRedisCache, None] = None
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

        if self.cache is not None:
            self.token_store = self.cache
        else:
            if (
                not self.settings.test_mode
                and not self.settings.allow_redis_fallback_dev
            ):
                raise RuntimeError(
                    "Redis is required for magic tokens, rate limits and session revocation; "
                    "start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from redis_error

            fallback_mode = (
                "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
            )
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                message=(
                    f"Running without Redis under {fallback_mode}; magic tokens, rate limits "
                    "and revocations are held in this process only."
                ),
                mode=fallback_mode,
            )
            self.token_store = MemoryTokenStore()

        self.email = EmailService(
            smtp_host=self.settings.smtp_host,
            smtp_port=self.settings.smtp_port,
            smtp_user=self.settings.smtp_user,
            smtp_password=self.settings.smtp_password,
            smtp_use_tls=self.settings.smtp_use_tls,
            from_email=self.settings.email_from_address,
            from_name=self.settings.email_from_name,
            retry_attempts=self.settings.email_retry_attempts,
            retry_delay_seconds=self.settings.email_retry_delay_seconds,
        )
        self.rate_limiter = MagicLinkRateLimiter(
            self.token_store,
            max_per_window=self.settings.rate_limit_per_window,
            window_minutes=self.settings.rate_limit_window_minutes,
            refresh_window=self.settings.rate_limit_window_mode
            == RateLimitWindowMode.REFRESH,
            fail_open=self.settings.rate_limit_fail_open,
        )
        self.revocations = RevocationRegistry(
            self.token_store, fail_open=self.settings.revocation_fail_open
        )
        self.signer = SessionTokenSigner(
            self.settings.jwt_secret,
            expiration_hours=self.settings.session_expiration_hours,
            algorithm=self.settings.jwt_algorithm,
        )
        self.users = UserService(self.store)
        self.magic_links = MagicLinkIssuer(
            self.token_store,
            self.rate_limiter,
            self.email,
            frontend_url=self.settings.frontend_url,
            expiration_minutes=self.settings.token_expiration_minutes,
        )
        self.verifier = MagicTokenVerifier(self.token_store, self.users, self.signer)
        self.sessions = SessionValidator(self.signer, self.revocations)

        logger.info(
            "runtime_initialized",
            redis_enabled=self.cache is not None,
            email_configured=self.email.is_configured,
            rate_limit_window_mode=self.settings.rate_limit_window_mode.value,
        )

    async def close(self) -> None:
        await self.token_store.close()
        self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Uses double-checked locking pattern for efficiency:
    - First check without lock (fast path for existing runtime)
    - Second check with lock to prevent race condition during creation
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def _close_token_store(current: Runtime) -> None:
    if isinstance(current.token_store, (SyncRedisCache, MemoryTokenStore)):
        asyncio.run(current.token_store.close())
        return
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        asyncio.run(current.token_store.close())
    else:
        loop.create_task(current.token_store.close())


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None:
            try:
                _close_token_store(runtime)
            except (OSError, RuntimeError) as exc:
                logger.warning("runtime_reset_close_failed", error=str(exc))

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings)
        return runtime
