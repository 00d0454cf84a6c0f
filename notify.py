"""
Notification sender for puller: plain-text POST to a single URL.

Failures are logged and never re-raised; a broken
notification channel cannot interrupt the update cycle. Nothing is retried.
"""

import logging
from typing import Optional

import requests

logger = logging.getLogger(__name__)

_REQUEST_TIMEOUT = 10  # seconds


def send_text(url: str, message: str) -> bool:
    """POST message as text/plain to url.

    Returns True when the endpoint answered with a status below 400.
    """
    try:
        response = requests.post(url, data=message.encode('utf-8'),
                                 headers={'Content-Type': 'text/plain'},
                                 timeout=_REQUEST_TIMEOUT)
    except requests.RequestException as e:
        logger.error("Error sending notification: %s", e)
        return False

    try:
        if response.status_code >= 400:
            logger.warning("Notification failed with status: %d", response.status_code)
            return False
        logger.debug("Notification sent successfully")
        return True
    finally:
        response.close()


class Notifier:
    """Fire-and-forget delivery of status strings.

    Safe to call unconditionally; does nothing when no URL is configured.
    """

    def __init__(self, url: Optional[str]):
        self.url = (url or '').strip() or None

    @property
    def enabled(self) -> bool:
        return self.url is not None

    def send(self, message: str) -> bool:
        if not self.url:
            return False
        try:
            return send_text(self.url, message)
        except Exception as e:
            logger.warning("Notification: unexpected error: %s", e)
            return False
