"""Push notification bridge.

Push payloads become user-facing notifications; clicking "View Weather"
opens the dashboard's root page. Delivery is delegated to a Notifier:
webhooks (JSON POST with retries) when configured, the log otherwise.
"""

import logging
import time
import webbrowser
from abc import ABC, abstractmethod
from collections.abc import Callable

import requests

from .models import Notification, NotificationAction

logger = logging.getLogger(__name__)

DEFAULT_BODY = "Weather update available"
ICON = "/icon-192x192.png"
BADGE = "/icon-72x72.png"
ACTION_ICON = "/icon-96x96.png"
VIBRATE_PATTERN = (100, 50, 100)

VIEW_ACTION = "explore"
CLOSE_ACTION = "close"


class Notifier(ABC):
    """Displays notifications on behalf of the bridge."""

    @abstractmethod
    def show(self, notification: Notification) -> None:
        """Deliver a notification."""


class LogNotifier(Notifier):
    """Writes notifications to the log."""

    def show(self, notification: Notification) -> None:
        logger.info("Notification: %s - %s", notification.title, notification.body)


class WebhookNotifier(Notifier):
    """Delivers notifications as JSON POSTs to webhook URLs."""

    def __init__(self, urls: list[str], max_retries: int = 3, retry_delay: int = 2, timeout: int = 10):
        """Initialize the notifier.

        Args:
            urls: Webhook URLs receiving every notification.
            max_retries: Maximum number of retry attempts for a failed webhook.
            retry_delay: Base delay in seconds between retries (increases exponentially).
            timeout: Request timeout in seconds.
        """
        self._urls = list(urls)
        self._max_retries = max_retries
        self._retry_delay = retry_delay
        self._timeout = timeout

    def show(self, notification: Notification) -> None:
        payload = {"event": "notification", "notification": notification.to_dict()}
        for url in self._urls:
            self._send(url, payload)

    def _send(self, url: str, payload: dict) -> bool:
        retry_count = 0

        while retry_count <= self._max_retries:
            try:
                response = requests.post(url, json=payload, timeout=self._timeout)
                response.raise_for_status()
                logger.info("Notification sent to %s", url)
                return True

            except requests.RequestException as e:
                retry_count += 1
                if retry_count <= self._max_retries:
                    delay = self._retry_delay * (2 ** (retry_count - 1))
                    logger.warning(
                        "Notification webhook failed (attempt %d/%d, retrying in %ds): %s",
                        retry_count,
                        self._max_retries + 1,
                        delay,
                        e,
                    )
                    time.sleep(delay)
                else:
                    logger.error("Notification webhook failed after %d attempts: %s", retry_count, e)

        return False


class NotificationBridge:
    """Turns push events and notification clicks into user-facing effects."""

    def __init__(
        self,
        notifier: Notifier,
        root_url: str,
        title: str = "Meteora Weather",
        opener: Callable[[str], object] = webbrowser.open,
    ) -> None:
        """Initialize the bridge.

        Args:
            notifier: Delivers built notifications.
            root_url: Application root page opened by the view action.
            title: Notification title.
            opener: Opens or focuses a page.
        """
        self._notifier = notifier
        self._root_url = root_url
        self._title = title
        self._opener = opener

    def build(self, payload: bytes | str | None) -> Notification:
        """Build the notification for a push payload."""
        if isinstance(payload, bytes):
            payload = payload.decode("utf-8", errors="replace")
        body = payload if payload else DEFAULT_BODY

        return Notification(
            title=self._title,
            body=body,
            icon=ICON,
            badge=BADGE,
            vibrate=VIBRATE_PATTERN,
            data={"date_of_arrival": int(time.time() * 1000), "primary_key": 1},
            actions=(
                NotificationAction(VIEW_ACTION, "View Weather", ACTION_ICON),
                NotificationAction(CLOSE_ACTION, "Close", ACTION_ICON),
            ),
        )

    def on_push(self, payload: bytes | str | None) -> Notification:
        """Show a notification for a push payload."""
        logger.info("Push notification received")
        notification = self.build(payload)
        self._notifier.show(notification)
        return notification

    def on_notification_click(self, action: str | None) -> bool:
        """Handle a click on a notification action.

        Returns:
            True if the root page was opened.
        """
        logger.info("Notification clicked (action: %s)", action or "none")
        if action != VIEW_ACTION:
            return False
        self._opener(self._root_url)
        return True
