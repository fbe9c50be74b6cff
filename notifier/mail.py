"""Email channel through a hosted email API (Resend-compatible)."""

from __future__ import annotations

from typing import Any, Dict, Optional

import httpx

from tracker.config import EmailConfig
from tracker.errors import DeliveryPermanentError, DeliveryTransientError
from tracker.models import Channel

from .base import Dispatcher, Notification
from .message import build_body, build_subject

TRANSIENT_STATUS = {408, 409, 429, 500, 502, 503, 504}
# Our own account or sender setup is wrong. Fixing it must not lose mail.
CONFIG_STATUS = {401, 403}
CONFIG_ERRORS = {"invalid_from_address", "invalid_api_key", "missing_api_key", "restricted_api_key"}


class EmailDispatcher(Dispatcher):
    channel = Channel.EMAIL

    def __init__(
        self,
        config: EmailConfig,
        timeout_seconds: float = 20.0,
        client: Optional[httpx.Client] = None,
    ) -> None:
        self.api_url = config.api_url
        self.sender = config.sender
        self.headers = {
            "Accept": "application/json",
            "Authorization": f"Bearer {config.api_key}",
        }
        self.client = client or httpx.Client(timeout=timeout_seconds)

    def close(self) -> None:
        self.client.close()

    def _payload(self, notification: Notification) -> Dict[str, Any]:
        return {
            "from": self.sender,
            "to": [notification.destination],
            "subject": build_subject(notification),
            "text": build_body(notification),
        }

    def _deliver(self, notification: Notification) -> None:
        try:
            response = self.client.post(
                self.api_url, json=self._payload(notification), headers=self.headers
            )
        except httpx.TransportError as exc:
            raise DeliveryTransientError(f"email API unreachable: {exc}") from exc

        if response.is_success:
            return
        status = response.status_code
        name = _error_name(response)
        if status in CONFIG_STATUS or name in CONFIG_ERRORS:
            raise DeliveryTransientError(f"email API refused our credentials or sender: HTTP {status} {name}")
        if status in TRANSIENT_STATUS or status >= 500:
            raise DeliveryTransientError(f"email API HTTP {status}")
        # 422 and friends: the recipient address itself is unusable.
        raise DeliveryPermanentError(
            f"email to {notification.destination} rejected: HTTP {status} {response.text[:200]}"
        )


def _error_name(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return ""
    if isinstance(body, dict):
        return str(body.get("name") or "")
    return ""
