"""User-facing notifications for sync results and failures."""

import logging
import os
from collections import deque
from datetime import datetime
from typing import Deque, Dict, List, Optional

import httpx

logger = logging.getLogger(__name__)

VERSION = "0.1.0"
MESSAGE_PREFIX = f"Note Push sync [{VERSION}]"

_LEVELS = {
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


class NotificationService:
    """
    Delivers messages meant for the user.

    Messages are logged, kept in a bounded in-memory feed the host
    application polls, and optionally posted to a webhook.
    """

    def __init__(
        self,
        enabled: Optional[bool] = None,
        webhook_url: Optional[str] = None,
        history_size: int = 100
    ):
        if enabled is None:
            enabled = os.getenv("ENABLE_NOTIFICATIONS", "false").lower() == "true"
        self.notification_enabled = enabled
        self.notification_webhook = webhook_url or os.getenv("NOTIFICATION_WEBHOOK_URL")
        self.messages: Deque[Dict[str, str]] = deque(maxlen=history_size)

    async def notify(self, message: str, level: str = "info") -> None:
        """
        Show a message to the user.

        Args:
            message: Text to show
            level: info, warning or error
        """
        text = f"{MESSAGE_PREFIX}: {message}"
        logger.log(_LEVELS.get(level, logging.INFO), text)
        self.messages.append({
            "level": level,
            "message": message,
            "created_at": datetime.utcnow().isoformat(),
        })

        if not self.notification_enabled or not self.notification_webhook:
            return

        try:
            async with httpx.AsyncClient() as client:
                await client.post(
                    self.notification_webhook,
                    json={"text": text, "level": level},
                    timeout=10.0
                )
        except httpx.HTTPError as e:
            logger.error(f"Failed to send notification: {e}")

    def recent(self, limit: int = 20) -> List[Dict[str, str]]:
        """Most recent messages, newest last."""
        if limit <= 0:
            return []
        return list(self.messages)[-limit:]
