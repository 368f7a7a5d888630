"""Outbound notifications for rebalancing lifecycle events."""

from __future__ import annotations

import abc
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, Sequence

from services.notifications import Notification, NotificationResult, send_email_message, send_telegram_message

from .config import EmailSettings, NotificationConfig
from .models import NotificationPreferences, NotificationRecord, RebalancingOperation, utcnow

logger = logging.getLogger(__name__)

EVENT_STARTED = "started"
EVENT_SIMULATED = "simulated"
EVENT_WAITING_APPROVAL = "waiting_approval"
EVENT_COMPLETED = "completed"
EVENT_PARTIAL = "partial"
EVENT_FAILED = "failed"
EVENT_REJECTED = "rejected"

_TEMPLATES: Mapping[str, tuple[str, str, str]] = {
    EVENT_WAITING_APPROVAL: (
        "Rebalancing Approval Required",
        'Your rebalancing operation for strategy "{strategy}" requires approval.',
        "high",
    ),
    EVENT_SIMULATED: (
        "Rebalancing Simulation Completed",
        'Simulation for strategy "{strategy}" finished with result {simulation}.',
        "medium",
    ),
    EVENT_STARTED: (
        "Rebalancing Started",
        'Rebalancing for strategy "{strategy}" has started ({transactions} transactions).',
        "medium",
    ),
    EVENT_COMPLETED: (
        "Rebalancing Completed",
        'Rebalancing for strategy "{strategy}" completed successfully.',
        "medium",
    ),
    EVENT_PARTIAL: (
        "Rebalancing Partially Completed",
        'Rebalancing for strategy "{strategy}" completed with {failed} failed transactions.',
        "medium",
    ),
    EVENT_FAILED: (
        "Rebalancing Failed",
        'Rebalancing for strategy "{strategy}" failed: {error}',
        "high",
    ),
    EVENT_REJECTED: (
        "Rebalancing Rejected",
        'Rebalancing for strategy "{strategy}" was rejected.',
        "medium",
    ),
}


@dataclass
class OperationEvent:
    """A lifecycle event of one operation, rendered into a notification."""

    kind: str
    operation: RebalancingOperation
    strategy_name: str = ""
    extra: Dict[str, Any] = field(default_factory=dict)

    def to_notification(self) -> Notification:
        title, template, importance = _TEMPLATES[self.kind]
        operation = self.operation
        counts = operation.transaction_counts()
        message = template.format(
            strategy=self.strategy_name or operation.strategy_id,
            transactions=len(operation.transactions),
            failed=counts["failed"],
            simulation=operation.simulation.result if operation.simulation else "n/a",
            error=operation.error.message if operation.error else "unknown error",
        )
        metadata = {"operation_id": operation.id, "strategy_id": operation.strategy_id, "status": operation.status.value}
        metadata.update(self.extra)
        return Notification(title=title, message=message, importance=importance, event=self.kind, metadata=metadata)


class NotificationSink(abc.ABC):
    """Deliver a notification to a user. Implementations must not raise."""

    name = "sink"

    @abc.abstractmethod
    async def notify(self, user_id: str, notification: Notification) -> None:
        ...


class LoggingNotificationSink(NotificationSink):
    name = "log"

    def __init__(self, log: Optional[logging.Logger] = None) -> None:
        self._logger = log or logger

    async def notify(self, user_id: str, notification: Notification) -> None:
        level = logging.WARNING if notification.importance == "high" else logging.INFO
        self._logger.log(
            level,
            "[%s] %s: %s",
            user_id,
            notification.title,
            notification.message,
            extra={"user": user_id, "event": notification.event},
        )


TelegramSender = Callable[..., Awaitable[NotificationResult]]
EmailSender = Callable[..., Awaitable[NotificationResult]]


class TelegramNotificationSink(NotificationSink):
    name = "telegram"

    def __init__(self, token: str, chat_id: str, *, sender: TelegramSender = send_telegram_message) -> None:
        self._token = token
        self._chat_id = chat_id
        self._sender = sender

    async def notify(self, user_id: str, notification: Notification) -> None:
        text = f"*{notification.title}*\n{notification.message}"
        try:
            result = await self._sender(self._token, self._chat_id, text)
        except Exception as exc:
            logger.warning("Telegram notification raised: %s", exc, exc_info=True)
            return
        if not result.success:
            reason = result.error.reason if result.error else "unknown"
            logger.warning("Telegram notification failed after %s attempts: %s", result.attempts, reason)


class EmailNotificationSink(NotificationSink):
    name = "email"

    def __init__(self, settings: EmailSettings, *, sender: EmailSender = send_email_message) -> None:
        self._settings = settings
        self._sender = sender

    async def notify(self, user_id: str, notification: Notification) -> None:
        recipients = self._settings.recipients.get(user_id) or self._settings.recipients.get("*") or []
        if not recipients:
            logger.debug("No email recipients configured for %s", user_id)
            return
        try:
            result = await self._sender(
                smtp_server=self._settings.host,
                smtp_port=self._settings.port,
                from_address=self._settings.sender or self._settings.username or "rebalancer@localhost",
                to_addresses=list(recipients),
                subject=notification.title,
                body=notification.message,
                username=self._settings.username,
                password=self._settings.password,
                use_tls=self._settings.use_tls,
            )
        except Exception as exc:
            logger.warning("Email notification raised: %s", exc, exc_info=True)
            return
        if not result.success:
            reason = result.error.reason if result.error else "unknown"
            logger.warning("Email notification failed after %s attempts: %s", result.attempts, reason)


class FanoutNotificationSink(NotificationSink):
    name = "fanout"

    def __init__(self, sinks: Sequence[NotificationSink]) -> None:
        self.sinks = list(sinks)

    async def notify(self, user_id: str, notification: Notification) -> None:
        results = await asyncio.gather(
            *(sink.notify(user_id, notification) for sink in self.sinks), return_exceptions=True
        )
        for sink, result in zip(self.sinks, results):
            if isinstance(result, Exception):
                logger.warning("Notification sink %s raised: %s", sink.name, result)


def build_sink(config: NotificationConfig) -> NotificationSink:
    """Create the sink described by ``config.channels``."""

    sinks: list[NotificationSink] = []
    for channel in config.channels:
        channel = channel.lower()
        if channel == "log":
            sinks.append(LoggingNotificationSink())
        elif channel == "telegram":
            if config.telegram_token and config.telegram_chat_id:
                sinks.append(TelegramNotificationSink(config.telegram_token, config.telegram_chat_id))
            else:
                logger.warning("Telegram channel enabled without token and chat id; skipping")
        elif channel == "email":
            if config.email is not None:
                sinks.append(EmailNotificationSink(config.email))
            else:
                logger.warning("Email channel enabled without SMTP settings; skipping")
        else:
            logger.warning("Unknown notification channel %s", channel)
    if len(sinks) == 1:
        return sinks[0]
    return FanoutNotificationSink(sinks)


class NotificationDispatcher:
    """Send each operation event at most once and record it on the operation."""

    def __init__(self, sink: Optional[NotificationSink] = None) -> None:
        self.sink = sink or LoggingNotificationSink()

    async def dispatch(self, event: OperationEvent, preferences: Optional[NotificationPreferences] = None) -> bool:
        operation = event.operation
        preferences = preferences or NotificationPreferences()
        if operation.notified(event.kind):
            return False
        if not preferences.wants(event.kind):
            logger.debug("User %s opted out of %s notifications", operation.user, event.kind)
            return False
        await self._deliver(operation.user, event.to_notification())
        operation.notifications_sent.append(
            NotificationRecord(event=event.kind, timestamp=utcnow(), channels=list(preferences.channels))
        )
        return True

    async def notify_user(self, user_id: str, notification: Notification) -> None:
        await self._deliver(user_id, notification)

    async def _deliver(self, user_id: str, notification: Notification) -> None:
        try:
            await self.sink.notify(user_id, notification)
        except Exception:
            logger.error("Notification delivery failed", extra={"user": user_id, "event": notification.event}, exc_info=True)


__all__ = [
    "EVENT_COMPLETED",
    "EVENT_FAILED",
    "EVENT_PARTIAL",
    "EVENT_REJECTED",
    "EVENT_SIMULATED",
    "EVENT_STARTED",
    "EVENT_WAITING_APPROVAL",
    "EmailNotificationSink",
    "FanoutNotificationSink",
    "LoggingNotificationSink",
    "NotificationDispatcher",
    "NotificationSink",
    "OperationEvent",
    "TelegramNotificationSink",
    "build_sink",
]
