from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional

import httpx

from ._retry import execute_with_retries
from .types import NotificationResult

logger = logging.getLogger(__name__)

API_BASE = "https://api.telegram.org"

RequestFunc = Callable[[str, Mapping[str, Any]], Awaitable[Mapping[str, Any]]]


def send_message_url(token: str) -> str:
    return f"{API_BASE}/bot{token}/sendMessage"


async def send_telegram_message(
    token: str,
    chat_id: str,
    message: str,
    *,
    parse_mode: str = "Markdown",
    request_func: Optional[RequestFunc] = None,
    max_retries: int = 2,
    backoff_seconds: float = 0.5,
    timeout: float = 10.0,
) -> NotificationResult:
    """Post ``message`` to a chat through the Bot API, retrying failed deliveries."""

    url = send_message_url(token)
    body: Dict[str, Any] = {"chat_id": chat_id, "text": message, "parse_mode": parse_mode}
    post = request_func or (lambda target, data: _post_json(target, data, timeout))
    return await execute_with_retries(
        "telegram",
        lambda: post(url, body),
        max_retries=max_retries,
        backoff_seconds=backoff_seconds,
    )


async def _post_json(url: str, body: Mapping[str, Any], timeout: float) -> Mapping[str, Any]:
    async with httpx.AsyncClient(timeout=timeout) as client:
        response = await client.post(url, json=dict(body))
    if response.is_error:
        raise RuntimeError(f"Bot API HTTP {response.status_code}: {response.text!r}")
    data = response.json()
    if data.get("ok") is False:
        raise RuntimeError(f"Bot API rejected message: {data.get('description') or data}")
    return data
