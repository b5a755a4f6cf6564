"""
LINE Messaging API push notifier.
"""

import time
from typing import Any

import requests

from .base import Notifier, NotificationResult, OutboundMessage


class LineNotifier(Notifier):
    """Pushes text messages to LINE users."""

    # Messaging API limits
    MAX_MESSAGES = 5
    MAX_QUICK_REPLIES = 13
    MAX_LABEL_LENGTH = 20

    def __init__(self, channel_access_token: str, push_url: str):
        """
        Initialize LINE notifier.

        Args:
            channel_access_token: Long-lived channel access token
            push_url: Push message endpoint
        """
        self.channel_access_token = channel_access_token
        self.push_url = push_url

    def send(self, user_id: str, messages: list[OutboundMessage]) -> NotificationResult:
        """Push messages to a LINE user."""
        try:
            payload = self._create_payload(user_id, messages)
            response = self._post(payload)

            if response.ok:
                return NotificationResult(success=True, channel="line")
            else:
                return NotificationResult(
                    success=False,
                    channel="line",
                    error=f"HTTP {response.status_code}: {response.text}",
                )

        except requests.exceptions.ConnectionError as e:
            return NotificationResult(
                success=False,
                channel="line",
                error=f"Connection error: {str(e)}",
            )
        except Exception as e:
            return NotificationResult(
                success=False,
                channel="line",
                error=str(e),
            )

    def _post(self, payload: dict[str, Any]) -> requests.Response:
        """Send push with rate limit handling."""
        headers = {"Authorization": f"Bearer {self.channel_access_token}"}
        response = requests.post(self.push_url, json=payload, headers=headers, timeout=10)

        if response.status_code == 429:
            retry_after = response.headers.get("Retry-After", "1")
            time.sleep(float(retry_after))
            response = requests.post(
                self.push_url, json=payload, headers=headers, timeout=10
            )

        return response

    def _create_payload(
        self, user_id: str, messages: list[OutboundMessage]
    ) -> dict[str, Any]:
        """Create push message payload."""
        return {
            "to": user_id,
            "messages": [
                self._create_message(message)
                for message in messages[: self.MAX_MESSAGES]
            ],
        }

    def _create_message(self, message: OutboundMessage) -> dict[str, Any]:
        body: dict[str, Any] = {"type": "text", "text": message.text}
        if message.quick_replies:
            body["quickReply"] = {
                "items": [
                    {
                        "type": "action",
                        "action": {
                            "type": "message",
                            "label": label[: self.MAX_LABEL_LENGTH],
                            "text": label,
                        },
                    }
                    for label in message.quick_replies[: self.MAX_QUICK_REPLIES]
                ]
            }
        return body
