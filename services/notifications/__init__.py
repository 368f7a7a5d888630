from .telegram import send_telegram_message
from .email import send_email_message
from .types import Notification, NotificationError, NotificationResult

__all__ = [
    "send_email_message",
    "send_telegram_message",
    "Notification",
    "NotificationError",
    "NotificationResult",
]
