from __future__ import annotations

import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from tenantauth.config import Settings
from tenantauth.logging import get_logger
from tenantauth.service.auth import TokenService
from tenantauth.service.authority import AuthorityService
from tenantauth.service.cache_bus import CacheBus, InMemoryCacheBus, RedisCacheBus
from tenantauth.service.permissions import PermissionEngine
from tenantauth.service.signer import CredentialSigner
from tenantauth.service.tenancy import TenantResolver
from tenantauth.storage.memory import MemoryStore
from tenantauth.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL before logging it."""
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
    """Builds every component from one Settings value and owns their lifecycle."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or Settings.from_env()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )
        if not self.settings.use_memory_store:
            raise RuntimeError(
                "only the in-memory store ships with tenantauth; set USE_MEMORY_STORE=true "
                "or construct Runtime components around your own store accessor"
            )
        self.store = MemoryStore(fs_root=self.settings.shared_fs_root)
        if self.store.fs_root is None and not self.settings.test_mode:
            logger.warning(
                "memory_store_not_persisted",
                message="Set SHARED_FS_ROOT so principals and tokens survive a restart.",
            )

        self.cache: Optional[RedisCache] = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                cache = RedisCache(
                    self.settings.redis_url,
                    socket_timeout=self.settings.store_timeout_seconds,
                )
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                redis_error = exc
                self.cache = None
            if self.cache is None:
                if not self.settings.test_mode:
                    raise RuntimeError(
                        "Redis is configured for cache invalidation but unreachable; "
                        "start Redis or unset REDIS_URL for a single-instance deployment."
                    ) from redis_error
                logger.warning(
                    "redis_disabled_fallback",
                    redis_url=_mask_url_password(self.settings.redis_url),
                    error=str(redis_error),
                    message="Running with the in-process invalidation bus under TEST_MODE.",
                )

        self.bus: CacheBus
        if self.cache is not None:
            self.bus = RedisCacheBus(
                self.cache,
                channel=self.settings.cache_bus_channel,
                publish_timeout=self.settings.bus_publish_timeout_seconds,
            )
        else:
            self.bus = InMemoryCacheBus()

        self.signer = CredentialSigner.from_settings(self.settings)
        self.tenants = TenantResolver.from_settings(self.store, self.settings)
        self.permissions = PermissionEngine.from_settings(self.store, self.settings)
        self.tokens = TokenService(self.store, self.signer, self.settings)
        self.authority = AuthorityService(self.store, self.bus)

        self.tenants.attach(self.bus)
        self.permissions.attach(self.bus)

        logger.info(
            "runtime_initialized",
            redis_enabled=self.cache is not None,
            bus=type(self.bus).__name__,
            permission_cache_enabled=self.permissions.cache is not None,
        )

    async def start(self) -> None:
        await self.bus.start()

    async def close(self) -> None:
        await self.bus.stop()
        if self.cache is not None:
            await self.cache.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the process Runtime (double-checked under a lock)."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests(settings: Optional[Settings] = None) -> Runtime:
    """Replace the process Runtime with a fresh one; only allowed in TEST_MODE."""
    global runtime
    with _runtime_lock:
        fresh = Runtime(settings)
        if not fresh.settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = fresh
        return runtime
