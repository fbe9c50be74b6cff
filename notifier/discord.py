"""Discord channel: one embed per message, posted to the user's webhook."""

from __future__ import annotations

from typing import Any, Dict, Optional

import httpx

from tracker.errors import DeliveryPermanentError, DeliveryTransientError
from tracker.models import Channel

from .base import Dispatcher, Notification
from .message import build_subject, chapter_lines

EMBED_COLOR = 0xF47521
GONE_STATUS = {401, 403, 404}


def validate_webhook_url(url: str) -> bool:
    return url.startswith("https://discord.com/api/webhooks/") or url.startswith(
        "https://discordapp.com/api/webhooks/"
    )


class DiscordDispatcher(Dispatcher):
    channel = Channel.DISCORD

    def __init__(
        self,
        timeout_seconds: float = 20.0,
        user_agent: str = "chapterbell",
        client: Optional[httpx.Client] = None,
    ) -> None:
        self.client = client or httpx.Client(
            timeout=timeout_seconds, headers={"User-Agent": user_agent}
        )

    def close(self) -> None:
        self.client.close()

    def _payload(self, notification: Notification) -> Dict[str, Any]:
        return {
            "embeds": [
                {
                    "title": build_subject(notification),
                    "description": "\n".join(chapter_lines(notification)),
                    "color": EMBED_COLOR,
                }
            ]
        }

    def _deliver(self, notification: Notification) -> None:
        url = notification.destination
        if not validate_webhook_url(url):
            raise DeliveryPermanentError("not a Discord webhook URL")
        try:
            response = self.client.post(url, json=self._payload(notification))
        except httpx.TransportError as exc:
            raise DeliveryTransientError(f"discord unreachable: {exc}") from exc

        status = response.status_code
        if status in (200, 204):
            return
        if status == 429:
            retry_after = response.headers.get("Retry-After", "?")
            raise DeliveryTransientError(f"discord rate limited (retry after {retry_after}s)")
        if status in GONE_STATUS:
            raise DeliveryPermanentError(f"webhook rejected: HTTP {status}")
        if status >= 500:
            raise DeliveryTransientError(f"discord HTTP {status}")
        raise DeliveryPermanentError(f"discord rejected message: HTTP {status}")
