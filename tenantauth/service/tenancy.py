from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional, Protocol

from tenantauth.config import Settings
from tenantauth.logging import get_logger
from tenantauth.service.cache_bus import CacheBus, CacheInvalidationMessage, InvalidationType
from tenantauth.service.errors import (
    TenantInactiveError,
    TenantNotFoundError,
    ValidationError,
)
from tenantauth.service.permission_cache import (
    TENANT_SLUG_PREFIX,
    LocalCache,
    pattern_may_match,
    tenant_slug_key,
)
from tenantauth.service.store_calls import call_store
from tenantauth.storage.models import Organization

logger = get_logger(__name__)

MAX_SLUG_LENGTH = 63
_SLUG_RE = re.compile(r"^[a-z0-9][a-z0-9-]{0,62}$")

# First path segments that address system endpoints rather than a tenant
RESERVED_SEGMENTS = frozenset({"api", "admin"})


def parse_slug(raw: object) -> str:
    """Normalize a tenant slug, raising ValidationError when it is not URL-safe."""
    if not isinstance(raw, str):
        raise ValidationError("tenant slug must be a string")
    slug = raw.strip().lower()
    if not _SLUG_RE.match(slug):
        raise ValidationError(
            "tenant slug must be 1-63 lowercase letters, digits or hyphens",
            detail={"slug": raw[:MAX_SLUG_LENGTH + 1]},
        )
    return slug


@dataclass(frozen=True)
class TenantContext:
    """The tenant one request runs in; passed explicitly, never stored globally."""

    organization_id: str
    slug: str


class TenantStore(Protocol):
    async def get_organization_by_slug(self, slug: str) -> Optional[Organization]: ...


class TenantResolver:
    """Maps a request's tenant slug to an active organization."""

    def __init__(
        self,
        store: TenantStore,
        *,
        cache: Optional[LocalCache] = None,
        store_timeout: float = 5.0,
        store_retries: int = 2,
    ) -> None:
        self.store = store
        self.cache = cache
        self.store_timeout = store_timeout
        self.store_retries = store_retries

    @classmethod
    def from_settings(cls, store: TenantStore, settings: Settings) -> "TenantResolver":
        return cls(
            store,
            cache=LocalCache(
                timedelta(minutes=settings.tenant_cache_ttl_minutes), name="tenant"
            ),
            store_timeout=settings.store_timeout_seconds,
            store_retries=settings.store_retry_attempts,
        )

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    async def resolve(self, slug: str) -> TenantContext:
        try:
            normalized = parse_slug(slug)
        except ValidationError:
            shown = str(slug)[:MAX_SLUG_LENGTH]
            logger.info("tenant_not_found", slug=shown, reason="malformed")
            raise TenantNotFoundError(
                "tenant not found or inactive", detail={"slug": shown}
            ) from None

        key = tenant_slug_key(normalized)
        if self.cache is not None:
            cached = self.cache.get(key)
            if cached is not None:
                return cached

        started_at = self._now()
        org = await call_store(
            "get_organization_by_slug",
            lambda: self.store.get_organization_by_slug(normalized),
            timeout=self.store_timeout,
            retries=self.store_retries,
            slug=normalized,
        )
        if org is None:
            logger.info("tenant_not_found", slug=normalized)
            raise TenantNotFoundError(
                f"tenant '{normalized}' not found or inactive",
                detail={"slug": normalized},
            )
        if not org.is_active:
            logger.info("tenant_inactive", slug=normalized, organization_id=org.id)
            raise TenantInactiveError(
                f"tenant '{normalized}' not found or inactive",
                detail={"slug": normalized},
            )

        context = TenantContext(organization_id=org.id, slug=org.slug)
        # Only active tenants are cached; deactivation publishes the slug key
        if self.cache is not None:
            self.cache.fill(key, context, started_at=started_at)
        return context

    async def resolve_path(self, path: str) -> Optional[TenantContext]:
        """Resolve the tenant named by the first path segment.

        Returns None for paths that address system endpoints.
        """
        segments = [segment for segment in path.split("/") if segment]
        if not segments or segments[0].lower() in RESERVED_SEGMENTS:
            return None
        return await self.resolve(segments[0])

    def invalidate(self, message: CacheInvalidationMessage) -> None:
        if self.cache is None:
            return
        if message.type == InvalidationType.PATTERN:
            if not pattern_may_match(message.pattern, TENANT_SLUG_PREFIX + ":"):
                return
            if self.cache.invalidate_pattern(message.pattern, message.timestamp):
                logger.debug(
                    "cache_invalidation_applied", cache=self.cache.name, pattern=message.pattern
                )
            return
        keys = [k for k in message.target_keys if k.startswith(TENANT_SLUG_PREFIX + ":")]
        if keys and self.cache.invalidate_keys(keys, message.timestamp):
            logger.debug("cache_invalidation_applied", cache=self.cache.name, keys=keys)

    def attach(self, bus: CacheBus) -> None:
        bus.subscribe(self.invalidate)
