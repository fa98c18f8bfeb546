from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, TypeVar

from tenantauth.logging import get_logger
from tenantauth.service.errors import StoreUnavailableError

logger = get_logger(__name__)

T = TypeVar("T")

DEFAULT_BACKOFF_SECONDS = 0.05


async def call_store(
    operation: str,
    call: Callable[[], Awaitable[T]],
    *,
    timeout: float,
    retries: int = 0,
    backoff: float = DEFAULT_BACKOFF_SECONDS,
    retry_event: str = "store_call_retry",
    **log_fields: Any,
) -> T:
    """Run one store accessor call under a timeout.

    Timeouts and connection failures are retried up to ``retries`` extra
    times with doubling backoff, then surface as StoreUnavailableError.
    Anything else the store raises propagates unchanged.
    """
    attempt = 0
    while True:
        try:
            return await asyncio.wait_for(call(), timeout=timeout)
        except (asyncio.TimeoutError, OSError) as exc:
            attempt += 1
            if attempt > retries:
                logger.error(
                    "store_call_failed",
                    operation=operation,
                    attempts=attempt,
                    error_type=type(exc).__name__,
                    **log_fields,
                )
                raise StoreUnavailableError(
                    f"store unavailable during {operation}",
                    detail={"operation": operation, "attempts": attempt},
                ) from exc
            delay = backoff * (2 ** (attempt - 1))
            logger.warning(
                retry_event,
                operation=operation,
                attempt=attempt,
                max_retries=retries,
                backoff_seconds=delay,
                error_type=type(exc).__name__,
                **log_fields,
            )
            await asyncio.sleep(delay)
