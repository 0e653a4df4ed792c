from __future__ import annotations

import asyncio
import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from tokenward.config import Settings, get_settings, reset_settings_cache
from tokenward.logging import get_logger
from tokenward.service.auth import AuthOrchestrator
from tokenward.service.credentials import Argon2CredentialVerifier, CredentialLookup
from tokenward.service.email import EmailService, RecipientLookup
from tokenward.service.lockout import LockoutGovernor
from tokenward.service.rate_limit import RateLimiter
from tokenward.service.sessions import SessionLifecycleManager
from tokenward.service.tokens import HmacTokenIssuer
from tokenward.storage.common import CredentialStore
from tokenward.storage.memory import MemoryCredentialStore
from tokenward.storage.redis_store import RedisCredentialStore, SyncRedisCredentialStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password in a connection URL for safe logging.

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


def build_store(settings: Settings) -> CredentialStore:
    if settings.use_memory_store:
        return MemoryCredentialStore()
    # Sync client in test mode so connections are not bound to a per-test event loop
    if settings.test_mode:
        return SyncRedisCredentialStore(
            settings.redis_url, socket_timeout=settings.redis_socket_timeout
        )
    return RedisCredentialStore(settings.redis_url, socket_timeout=settings.redis_socket_timeout)


class Runtime:
    """Holds the singleton service instances for one process."""

    def __init__(
        self,
        credential_lookup: CredentialLookup,
        *,
        recipient_lookup: Optional[RecipientLookup] = None,
        settings: Optional[Settings] = None,
        store: Optional[CredentialStore] = None,
    ):
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        store_type = "memory" if self.settings.use_memory_store else "redis"
        try:
            self.store = store or build_store(self.settings)
            self.store.verify_connection()
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                redis_url=_mask_url_password(self.settings.redis_url),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise
        logger.info(
            "runtime_store_initialized",
            store_type=store_type,
            redis_url=_mask_url_password(self.settings.redis_url),
        )

        self.issuer = HmacTokenIssuer(self.settings)
        self.sessions = SessionLifecycleManager(self.store, self.settings)
        self.lockout = LockoutGovernor(self.store, self.settings)
        self.rate_limiter = RateLimiter(self.store, self.settings)
        self.verifier = Argon2CredentialVerifier(credential_lookup)
        self.email = EmailService.from_settings(self.settings, recipient_lookup=recipient_lookup)
        if not self.email.is_configured:
            logger.info("email_not_configured", message="lockout notices will be logged only")
        self.auth = AuthOrchestrator(
            sessions=self.sessions,
            lockout=self.lockout,
            rate_limiter=self.rate_limiter,
            verifier=self.verifier,
            issuer=self.issuer,
            settings=self.settings,
            notifier=self.email,
        )

    async def close(self) -> None:
        await self.store.close()


runtime: Optional[Runtime] = None
_runtime_lock = threading.Lock()


def init_runtime(
    credential_lookup: CredentialLookup,
    *,
    recipient_lookup: Optional[RecipientLookup] = None,
) -> Runtime:
    """Create the Runtime singleton, or return the existing one."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime(credential_lookup, recipient_lookup=recipient_lookup)
        return runtime


def get_runtime() -> Runtime:
    if runtime is None:
        raise RuntimeError("runtime is not initialised; call init_runtime() first")
    return runtime


def _close_store(store: CredentialStore) -> None:
    # The sync client can be closed without an event loop
    if isinstance(store, SyncRedisCredentialStore):
        store._sync_client.close()
        return
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        asyncio.run(store.close())
    else:
        loop.create_task(store.close())


def reset_runtime_for_tests() -> None:
    """Drop the Runtime singleton and cached settings for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None:
            if not runtime.settings.test_mode:
                raise RuntimeError("runtime reset is only allowed in TEST_MODE")
            _close_store(runtime.store)
        runtime = None
        reset_settings_cache()


__all__ = ["Runtime", "build_store", "get_runtime", "init_runtime", "reset_runtime_for_tests"]
