from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from fnmatch import fnmatchcase
from types import MappingProxyType
from typing import Callable, Dict, List, Mapping, Optional, Protocol, Sequence

from tenantauth.config import Settings
from tenantauth.logging import get_logger
from tenantauth.service.cache_bus import CacheBus, CacheInvalidationMessage, InvalidationType
from tenantauth.service.errors import PermissionDeniedError
from tenantauth.service.permission_cache import (
    PERMISSION_PREFIX,
    LocalCache,
    pattern_may_match,
    permission_key,
)
from tenantauth.service.store_calls import call_store
from tenantauth.service.tenancy import TenantContext
from tenantauth.storage.models import (
    Authority,
    Membership,
    PermissionLevel,
    ResourcePermission,
    User,
)

logger = get_logger(__name__)

_EMPTY: Mapping[str, PermissionLevel] = MappingProxyType({})


class Principal(Protocol):
    user_id: str

    @property
    def is_admin(self) -> bool: ...


class PermissionStore(Protocol):
    async def get_user(self, user_id: str) -> Optional[User]: ...

    async def get_membership(
        self, user_id: str, organization_id: str
    ) -> Optional[Membership]: ...

    async def list_user_authorities(self, user_id: str) -> List[Authority]: ...

    async def list_resource_permissions(
        self, authority_ids: Sequence[str]
    ) -> List[ResourcePermission]: ...


@dataclass(frozen=True)
class PermissionSet:
    """Resolved levels for one principal in one tenant."""

    levels: Mapping[str, PermissionLevel] = field(default_factory=lambda: _EMPTY)
    is_admin: bool = False

    def level(self, resource: str) -> PermissionLevel:
        if self.is_admin:
            return PermissionLevel.FULL
        return self.levels.get(resource, PermissionLevel.NONE)

    def as_dict(self) -> Dict[str, int]:
        return {name: int(level) for name, level in sorted(self.levels.items())}


NO_ACCESS = PermissionSet()
ADMIN_ACCESS = PermissionSet(is_admin=True)


class PermissionEngine:
    """Answers "how much may this principal do on this resource in this tenant".

    Permission sets are derived from the store (system role, membership,
    authority assignments, resource permission rows) and kept in a
    per-instance LocalCache keyed ``perm:{tenant}:{user}``. The system role
    claimed by the access token short-circuits to full access; otherwise the
    role stored for the user is consulted during recomputation, so a promotion
    applies as soon as its invalidation arrives. The cache is never
    authoritative: with it disabled every call recomputes from the store.

    Concurrent misses for the same key share one recomputation. That
    recomputation is shielded from caller cancellation so it can still fill
    the cache, and it never publishes invalidations itself.
    """

    def __init__(
        self,
        store: PermissionStore,
        *,
        cache: Optional[LocalCache] = None,
        store_timeout: float = 5.0,
        store_retries: int = 2,
        retry_backoff: float = 0.05,
    ) -> None:
        self.store = store
        self.cache = cache
        self.store_timeout = store_timeout
        self.store_retries = store_retries
        self.retry_backoff = retry_backoff
        self._inflight: Dict[str, asyncio.Task] = {}

    @classmethod
    def from_settings(
        cls, store: PermissionStore, settings: Settings
    ) -> "PermissionEngine":
        cache = None
        if settings.permission_cache_enabled:
            cache = LocalCache(
                timedelta(minutes=settings.permission_cache_ttl_minutes),
                name="permission",
            )
        return cls(
            store,
            cache=cache,
            store_timeout=settings.store_timeout_seconds,
            store_retries=settings.store_retry_attempts,
        )

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    # -- queries -------------------------------------------------------

    async def resolve(
        self, principal: Principal, tenant: TenantContext, resource: str
    ) -> PermissionLevel:
        permissions = await self.resolve_all(principal, tenant)
        return permissions.level(resource)

    async def resolve_all(
        self, principal: Principal, tenant: TenantContext
    ) -> PermissionSet:
        if principal.is_admin:
            return ADMIN_ACCESS

        key = permission_key(tenant.organization_id, principal.user_id)
        if self.cache is not None:
            cached = self.cache.get(key)
            if cached is not None:
                logger.debug(
                    "permission_cache_hit", tenant_id=tenant.organization_id, user_id=principal.user_id
                )
                return cached
            logger.debug(
                "permission_cache_miss", tenant_id=tenant.organization_id, user_id=principal.user_id
            )

        return await self._load(key, principal.user_id, tenant.organization_id)

    async def has_permission(
        self,
        principal: Principal,
        tenant: TenantContext,
        resource: str,
        level: PermissionLevel,
    ) -> bool:
        actual = await self.resolve(principal, tenant, resource)
        return actual >= level

    async def require_permission(
        self,
        principal: Principal,
        tenant: TenantContext,
        resource: str,
        level: PermissionLevel,
    ) -> PermissionLevel:
        actual = await self.resolve(principal, tenant, resource)
        if actual < level:
            logger.info(
                "permission_denied",
                tenant_id=tenant.organization_id,
                user_id=principal.user_id,
                resource=resource,
                required_level=int(level),
                actual_level=int(actual),
            )
            raise PermissionDeniedError(resource, level, actual)
        return actual

    # -- recomputation -------------------------------------------------

    async def _load(self, key: str, user_id: str, tenant_id: str) -> PermissionSet:
        task = self._inflight.get(key)
        if task is None:
            task = asyncio.get_running_loop().create_task(
                self._recompute(key, user_id, tenant_id)
            )
            self._inflight[key] = task
            task.add_done_callback(lambda done: self._finish(key, done))
        return await asyncio.shield(task)

    def _finish(self, key: str, task: asyncio.Task) -> None:
        if self._inflight.get(key) is task:
            del self._inflight[key]
        # Every caller may have been cancelled; mark the outcome as retrieved
        if not task.cancelled():
            task.exception()

    async def _recompute(self, key: str, user_id: str, tenant_id: str) -> PermissionSet:
        started_at = self._now()
        permissions = await self._compute(user_id, tenant_id)
        if self.cache is not None:
            self.cache.fill(key, permissions, started_at=started_at)
        return permissions

    async def _compute(self, user_id: str, tenant_id: str) -> PermissionSet:
        user = await self._call(
            "get_user",
            lambda: self.store.get_user(user_id),
            user_id=user_id,
            tenant_id=tenant_id,
        )
        if user is None:
            return NO_ACCESS
        if user.is_admin:
            return ADMIN_ACCESS

        membership = await self._call(
            "get_membership",
            lambda: self.store.get_membership(user_id, tenant_id),
            user_id=user_id,
            tenant_id=tenant_id,
        )
        if membership is None:
            # Stray assignments in a tenant the user does not belong to grant nothing
            logger.debug("permission_no_membership", user_id=user_id, tenant_id=tenant_id)
            return NO_ACCESS

        authorities = await self._call(
            "list_user_authorities",
            lambda: self.store.list_user_authorities(user_id),
            user_id=user_id,
            tenant_id=tenant_id,
        )
        authority_ids = [a.id for a in authorities if a.applies_to(tenant_id)]
        if not authority_ids:
            return NO_ACCESS

        rows = await self._call(
            "list_resource_permissions",
            lambda: self.store.list_resource_permissions(authority_ids),
            user_id=user_id,
            tenant_id=tenant_id,
        )
        levels: Dict[str, PermissionLevel] = {}
        for row in rows:
            level = PermissionLevel(row.level)
            if level > levels.get(row.resource_name, PermissionLevel.NONE):
                levels[row.resource_name] = level
        return PermissionSet(levels=MappingProxyType(levels))

    async def _call(self, operation: str, call: Callable, **log_fields):
        return await call_store(
            operation,
            call,
            timeout=self.store_timeout,
            retries=self.store_retries,
            backoff=self.retry_backoff,
            retry_event="permission_store_retry",
            **log_fields,
        )

    # -- invalidation --------------------------------------------------

    def invalidate(self, message: CacheInvalidationMessage) -> None:
        """Apply one invalidation delivered by the cache bus."""
        if message.type == InvalidationType.PATTERN:
            pattern = message.pattern
            if not pattern_may_match(pattern, PERMISSION_PREFIX + ":"):
                return
            self._drop_inflight(lambda key: fnmatchcase(key, pattern))
            if self.cache is None:
                return
            applied = self.cache.invalidate_pattern(pattern, message.timestamp)
            targets: dict = {"pattern": pattern}
        else:
            keys = [
                k for k in message.target_keys if k.startswith(PERMISSION_PREFIX + ":")
            ]
            if not keys:
                return
            wanted = set(keys)
            self._drop_inflight(lambda key: key in wanted)
            if self.cache is None:
                return
            applied = self.cache.invalidate_keys(keys, message.timestamp) > 0
            targets = {"keys": keys}

        if applied:
            logger.info(
                "cache_invalidation_applied",
                cache=self.cache.name,
                invalidation_type=message.type.value,
                timestamp=message.timestamp.isoformat(),
                **targets,
            )
        else:
            logger.info(
                "cache_invalidation_stale_ignored",
                cache=self.cache.name,
                invalidation_type=message.type.value,
                timestamp=message.timestamp.isoformat(),
                **targets,
            )

    def _drop_inflight(self, matches: Callable[[str], bool]) -> None:
        # Later callers start a fresh recomputation instead of joining a stale one
        for key in [k for k in self._inflight if matches(k)]:
            self._inflight.pop(key, None)

    def attach(self, bus: CacheBus) -> None:
        bus.subscribe(self.invalidate)

    def clear(self) -> None:
        if self.cache is not None:
            self.cache.clear()
