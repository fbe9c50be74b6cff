"""Mobile push channel through the Expo push service."""

from __future__ import annotations

from typing import Any, Dict, Optional

import httpx

from tracker.config import PushConfig
from tracker.errors import DeliveryPermanentError, DeliveryTransientError
from tracker.models import Channel

from .base import Dispatcher, Notification
from .message import build_subject, chapter_lines

TRANSIENT_STATUS = {408, 429, 500, 502, 503, 504}
# A bad or revoked access token is ours to fix, not the recipient's.
CONFIG_STATUS = {401, 403}
# Ticket errors worth another attempt; everything else is final. The
# credential errors point at our own push setup, not the device.
TRANSIENT_TICKET_ERRORS = {"MessageRateExceeded", "InvalidCredentials", "MismatchSenderId"}


class PushDispatcher(Dispatcher):
    channel = Channel.PUSH

    def __init__(
        self,
        config: PushConfig,
        timeout_seconds: float = 20.0,
        client: Optional[httpx.Client] = None,
    ) -> None:
        self.endpoint = config.endpoint
        headers = {"Accept": "application/json"}
        if config.access_token:
            headers["Authorization"] = f"Bearer {config.access_token}"
        self.client = client or httpx.Client(timeout=timeout_seconds, headers=headers)

    def close(self) -> None:
        self.client.close()

    def _payload(self, notification: Notification) -> Dict[str, Any]:
        return {
            "to": notification.destination,
            "title": build_subject(notification),
            "body": "\n".join(chapter_lines(notification)),
            "sound": "default",
            "data": {
                "titleId": notification.title_id,
                "chapterIds": notification.chapter_ids,
            },
        }

    def _deliver(self, notification: Notification) -> None:
        try:
            response = self.client.post(self.endpoint, json=self._payload(notification))
        except httpx.TransportError as exc:
            raise DeliveryTransientError(f"push service unreachable: {exc}") from exc

        if response.status_code in CONFIG_STATUS:
            raise DeliveryTransientError(
                f"push service refused our access token: HTTP {response.status_code}"
            )
        if response.status_code in TRANSIENT_STATUS:
            raise DeliveryTransientError(f"push service HTTP {response.status_code}")
        if response.status_code != 200:
            raise DeliveryPermanentError(
                f"push service rejected message: HTTP {response.status_code} {response.text[:200]}"
            )

        try:
            ticket = response.json()["data"]
        except (ValueError, KeyError, TypeError) as exc:
            raise DeliveryTransientError(f"unexpected push response: {response.text[:200]}") from exc
        if isinstance(ticket, list):
            ticket = ticket[0] if ticket else {}
        if not isinstance(ticket, dict):
            raise DeliveryTransientError(f"unexpected push ticket: {response.text[:200]}")

        if ticket.get("status") == "ok":
            return
        error = (ticket.get("details") or {}).get("error") or "unknown"
        message = ticket.get("message") or error
        if error in TRANSIENT_TICKET_ERRORS:
            raise DeliveryTransientError(f"{error}: {message}")
        # DeviceNotRegistered lands here: the token was revoked.
        raise DeliveryPermanentError(f"{error}: {message}")
