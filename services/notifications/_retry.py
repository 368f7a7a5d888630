from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Mapping, Optional

from .types import NotificationError, NotificationResult

logger = logging.getLogger(__name__)

Delivery = Callable[[], Awaitable[Optional[Mapping[str, Any]]]]


async def execute_with_retries(
    channel: str,
    operation: Delivery,
    *,
    max_retries: int,
    backoff_seconds: float,
) -> NotificationResult:
    """Run ``operation`` up to ``max_retries + 1`` times and report the outcome.

    Never raises: delivery failures are returned as an unsuccessful result.
    """

    total = max(max_retries, 0) + 1
    failure: Optional[Exception] = None
    for attempt in range(1, total + 1):
        if attempt > 1:
            await asyncio.sleep(backoff_seconds * (attempt - 1))
        try:
            payload = await operation()
        except Exception as exc:
            failure = exc
            logger.debug("%s delivery attempt %s/%s failed: %s", channel, attempt, total, exc)
            continue
        return NotificationResult(channel=channel, success=True, attempts=attempt, payload=payload)

    logger.warning("%s delivery gave up after %s attempts: %s", channel, total, failure)
    return NotificationResult(
        channel=channel,
        success=False,
        attempts=total,
        error=NotificationError(channel=channel, reason=str(failure), retryable=False, details={"attempts": total}),
    )
