"""
notify/senders.py -- Notification senders.

The core never delivers email or SMS itself. It hands (destination, payload)
to a sender and gets back True/False. Delivery failure does not invalidate
the token or code that was issued; the caller reports delivered=False and the
user can request a resend.

Senders:
  LogSender  -- development default. Logs the destination and channel only;
                the payload carries a secret and is never written to logs.
  HttpSender -- POSTs JSON to the provider's endpoint (NOTIFY_URL) with a
                bounded timeout. A timeout or HTTP error returns False after a
                warning; there is no retry loop here.
"""

from __future__ import annotations

import logging
from typing import Any, Protocol

import requests

from core.config import Settings

logger = logging.getLogger("keyward.notify")


class NotificationSender(Protocol):
    def send(self, destination: str, payload: dict[str, Any]) -> bool: ...


class LogSender:
    """Record hand-offs in the log instead of delivering them."""

    def send(self, destination: str, payload: dict[str, Any]) -> bool:
        logger.info("Notification (%s) queued for %s", payload.get("channel", "unknown"), destination)
        return True


class HttpSender:
    """Hand payloads to an external notification provider over HTTP."""

    def __init__(self, url: str, timeout: float = 10.0, session: requests.Session | None = None) -> None:
        self.url = url
        self.timeout = timeout
        # Shared session for connection pooling. Provider endpoints should
        # not redirect; cap hops so a misconfigured URL cannot bounce around.
        self._session = session or requests.Session()
        self._session.max_redirects = 3

    def send(self, destination: str, payload: dict[str, Any]) -> bool:
        try:
            resp = self._session.post(
                self.url,
                json={"destination": destination, **payload},
                timeout=self.timeout,
            )
            resp.raise_for_status()
        except requests.Timeout:
            logger.warning("Notification provider timed out after %.1fs for %s", self.timeout, destination)
            return False
        except requests.RequestException as e:
            logger.warning("Notification hand-off failed for %s: %s", destination, e)
            return False
        return True


def build_sender(settings: Settings) -> NotificationSender:
    """Return HttpSender when NOTIFY_URL is configured, LogSender otherwise."""
    if settings.notify_url:
        return HttpSender(settings.notify_url, timeout=settings.notify_timeout_seconds)
    logger.warning("NOTIFY_URL not set -- notifications will be logged, not delivered")
    return LogSender()
