from __future__ import annotations

import asyncio
import inspect
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, List, Optional, Set, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
    model_validator,
)

from tenantauth.logging import get_logger
from tenantauth.service.permission_cache import (
    ALL_PERMISSIONS_PATTERN,
    permission_key,
    tenant_permissions_pattern,
    tenant_slug_key,
    user_permissions_pattern,
)
from tenantauth.storage.redis_cache import RedisCache

logger = get_logger(__name__)


class InvalidationType(str, Enum):
    KEY = "Key"
    KEYS = "Keys"
    PATTERN = "Pattern"


class CacheInvalidationMessage(BaseModel):
    """Wire format: ``{type, keys?, pattern?, timestamp}``."""

    type: InvalidationType
    keys: Optional[List[str]] = None
    pattern: Optional[str] = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    model_config = ConfigDict(frozen=True)

    @field_validator("timestamp")
    @classmethod
    def _ensure_aware(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    @model_validator(mode="after")
    def _check_shape(self) -> "CacheInvalidationMessage":
        if self.type == InvalidationType.KEY and not self.keys:
            raise ValueError("Key invalidation requires one key")
        if self.type == InvalidationType.KEYS and self.keys is None:
            raise ValueError("Keys invalidation requires a keys list")
        if self.type == InvalidationType.PATTERN and not self.pattern:
            raise ValueError("Pattern invalidation requires a pattern")
        return self

    @classmethod
    def for_key(cls, key: str) -> "CacheInvalidationMessage":
        return cls(type=InvalidationType.KEY, keys=[key])

    @classmethod
    def for_keys(cls, keys: List[str]) -> "CacheInvalidationMessage":
        return cls(type=InvalidationType.KEYS, keys=list(keys))

    @classmethod
    def for_pattern(cls, pattern: str) -> "CacheInvalidationMessage":
        return cls(type=InvalidationType.PATTERN, pattern=pattern)

    @property
    def target_keys(self) -> List[str]:
        if self.type == InvalidationType.KEY:
            return list(self.keys or [])[:1]
        if self.type == InvalidationType.KEYS:
            return list(self.keys or [])
        return []

    def to_wire(self) -> str:
        return self.model_dump_json(exclude_none=True)

    @classmethod
    def from_wire(cls, raw: Union[str, bytes]) -> "CacheInvalidationMessage":
        return cls.model_validate_json(raw)


InvalidationHandler = Callable[[CacheInvalidationMessage], Union[Awaitable[None], None]]


class CacheBus:
    """Fire-and-forget publish/subscribe channel for cache invalidations.

    ``publish`` schedules delivery and returns immediately; it never raises
    into the mutation that triggered it. Subclasses implement ``_send``.
    """

    def __init__(self) -> None:
        self._handlers: List[InvalidationHandler] = []
        self._pending: Set[asyncio.Task] = set()

    def subscribe(self, handler: InvalidationHandler) -> None:
        if handler not in self._handlers:
            self._handlers.append(handler)

    def unsubscribe(self, handler: InvalidationHandler) -> None:
        if handler in self._handlers:
            self._handlers.remove(handler)

    async def start(self) -> None:
        return None

    async def stop(self) -> None:
        await self.flush()

    async def publish(self, message: CacheInvalidationMessage) -> None:
        try:
            task = asyncio.get_running_loop().create_task(self._safe_send(message))
        except RuntimeError as exc:
            logger.warning(
                "cache_bus_publish_failed",
                error=str(exc),
                invalidation_type=message.type.value,
            )
            return
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def flush(self) -> None:
        """Wait for every publish scheduled so far to finish delivering."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def _safe_send(self, message: CacheInvalidationMessage) -> None:
        try:
            await self._send(message)
        except Exception as exc:
            logger.warning(
                "cache_bus_publish_failed",
                error_type=type(exc).__name__,
                error=str(exc),
                invalidation_type=message.type.value,
            )

    async def _send(self, message: CacheInvalidationMessage) -> None:
        raise NotImplementedError

    async def _dispatch(self, message: CacheInvalidationMessage) -> None:
        for handler in list(self._handlers):
            try:
                result = handler(message)
                if inspect.isawaitable(result):
                    await result
            except Exception as exc:
                # One failing subscriber must not starve the others
                logger.error(
                    "cache_invalidation_handler_failed",
                    error_type=type(exc).__name__,
                    error=str(exc),
                )

    # -- publisher helpers ---------------------------------------------

    async def invalidate_key(self, key: str) -> None:
        await self.publish(CacheInvalidationMessage.for_key(key))

    async def invalidate_keys(self, keys: List[str]) -> None:
        if not keys:
            return
        await self.publish(CacheInvalidationMessage.for_keys(keys))

    async def invalidate_pattern(self, pattern: str) -> None:
        await self.publish(CacheInvalidationMessage.for_pattern(pattern))

    async def invalidate_user_permissions(self, tenant_id: str, user_id: str) -> None:
        await self.invalidate_key(permission_key(tenant_id, user_id))

    async def invalidate_tenant_permissions(self, tenant_id: str) -> None:
        await self.invalidate_pattern(tenant_permissions_pattern(tenant_id))

    async def invalidate_user_everywhere(self, user_id: str) -> None:
        await self.invalidate_pattern(user_permissions_pattern(user_id))

    async def invalidate_all_permissions(self) -> None:
        await self.invalidate_pattern(ALL_PERMISSIONS_PATTERN)

    async def invalidate_tenant_resolution(self, slug: str) -> None:
        await self.invalidate_key(tenant_slug_key(slug))


class InMemoryCacheBus(CacheBus):
    """In-process bus: every subscriber in this process sees every message."""

    async def _send(self, message: CacheInvalidationMessage) -> None:
        # Round-trip through the wire format so both buses deliver identical values
        await self._dispatch(CacheInvalidationMessage.from_wire(message.to_wire()))


class RedisCacheBus(CacheBus):
    """Redis pub/sub bus shared by every instance connected to the same server."""

    def __init__(
        self,
        cache: RedisCache,
        *,
        channel: str = "cache:invalidate",
        publish_timeout: float = 2.0,
        reconnect_delay: float = 1.0,
    ) -> None:
        super().__init__()
        self.cache = cache
        self.channel = channel
        self.publish_timeout = publish_timeout
        self.reconnect_delay = reconnect_delay
        self._pubsub: Any = None
        self._listener: Optional[asyncio.Task] = None

    async def start(self) -> None:
        if self._listener is not None:
            return
        self._pubsub = self.cache.pubsub()
        await self._pubsub.subscribe(self.channel)
        self._listener = asyncio.create_task(self._listen())
        logger.info("cache_bus_subscribed", channel=self.channel)

    async def stop(self) -> None:
        await self.flush()
        if self._listener is not None:
            self._listener.cancel()
            try:
                await self._listener
            except asyncio.CancelledError:
                pass
            self._listener = None
        if self._pubsub is not None:
            try:
                await self._pubsub.unsubscribe(self.channel)
            except Exception as exc:
                logger.warning("cache_bus_unsubscribe_failed", error=str(exc))
            await self._pubsub.aclose()
            self._pubsub = None
        logger.info("cache_bus_stopped", channel=self.channel)

    async def _send(self, message: CacheInvalidationMessage) -> None:
        receivers = await asyncio.wait_for(
            self.cache.publish(self.channel, message.to_wire()),
            timeout=self.publish_timeout,
        )
        logger.debug(
            "cache_invalidation_published",
            channel=self.channel,
            invalidation_type=message.type.value,
            receivers=receivers,
        )

    async def _listen(self) -> None:
        while True:
            try:
                await self._consume()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.error(
                    "cache_bus_listener_failed",
                    channel=self.channel,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
                await asyncio.sleep(self.reconnect_delay)

    async def _consume(self) -> None:
        async for raw in self._pubsub.listen():
            if not isinstance(raw, dict) or raw.get("type") != "message":
                continue
            try:
                message = CacheInvalidationMessage.from_wire(raw.get("data") or "")
            except ValidationError as exc:
                logger.warning(
                    "cache_invalidation_malformed",
                    channel=self.channel,
                    error_count=exc.error_count(),
                )
                continue
            await self._dispatch(message)
