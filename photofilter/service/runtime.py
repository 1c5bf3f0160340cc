from __future__ import annotations

import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from photofilter.config import Settings, ShareStoreMode, get_settings, reset_settings_cache
from photofilter.logging import get_logger
from photofilter.service.authenticator import UnifiedAuthenticator
from photofilter.service.email import EmailService
from photofilter.service.identity import ExternalIdentityVerifier
from photofilter.service.passwords import PasswordHasher
from photofilter.service.sessions import SessionManager
from photofilter.service.tokens import LocalTokenCodec
from photofilter.service.verification import EmailVerificationManager, ShareTokenManager
from photofilter.storage.memory import MemoryShareStore, MemoryStore
from photofilter.storage.postgres import PostgresStore
from photofilter.storage.redis_cache import RedisShareStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password in a URL for safe logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            share_store=self.settings.share_store.value,
            test_mode=self.settings.test_mode,
        )

        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            self.store = (
                MemoryStore(fs_root=self.settings.shared_fs_root)
                if self.settings.use_memory_store
                else PostgresStore(
                    self.settings.database_url, fs_root=self.settings.shared_fs_root
                )
            )
            logger.info("runtime_store_initialized", store_type=store_type)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.share_store = self._build_share_store()

        self.hasher = PasswordHasher.from_settings(self.settings)
        self.codec = LocalTokenCodec.from_settings(self.settings)
        self.identity = ExternalIdentityVerifier.from_settings(self.settings)
        if self.identity is None:
            logger.info("external_identity_disabled")
        else:
            logger.info("external_identity_enabled", issuer=self.identity.issuer)
        self.authenticator = UnifiedAuthenticator(self.codec, self.identity)
        self.sessions = SessionManager(self.store, self.codec, self.hasher, self.settings)
        self.email_verification = EmailVerificationManager(self.store, self.settings)
        self.shares = ShareTokenManager(self.share_store, self.settings)
        self.email = EmailService.from_settings(self.settings)

    def _build_share_store(self):
        if self.settings.share_store is not ShareStoreMode.REDIS:
            return MemoryShareStore()
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                store = RedisShareStore(self.settings.redis_url)
                store.verify_connection()
                return store
            except Exception as exc:
                redis_error = exc
        if not self.settings.test_mode:
            raise RuntimeError(
                "SHARE_STORE=redis requires a reachable REDIS_URL"
            ) from redis_error
        logger.warning(
            "redis_disabled_fallback",
            redis_url=_mask_url_password(self.settings.redis_url),
            error=str(redis_error) if redis_error else "redis_url_missing",
            message="Share links are held in process memory only.",
        )
        return MemoryShareStore()

    async def close(self) -> None:
        if isinstance(self.share_store, RedisShareStore):
            await self.share_store.close()
        if isinstance(self.store, PostgresStore):
            self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton using double-checked locking."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton from the current environment."""
    global runtime

    with _runtime_lock:
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings)
        return runtime
