"""
Base notifier classes.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Optional

from smartcapital.config import AppConfig

logger = logging.getLogger(__name__)


@dataclass
class OutboundMessage:
    """A chat reply, optionally offering quick-reply buttons."""

    text: str
    quick_replies: list[str] = field(default_factory=list)


@dataclass
class NotificationResult:
    """Result of a notification attempt."""

    success: bool
    channel: str
    error: Optional[str] = None


class Notifier(ABC):
    """Abstract base class for notifiers."""

    @abstractmethod
    def send(self, user_id: str, messages: list[OutboundMessage]) -> NotificationResult:
        """
        Push messages to a chat user.

        Implementations never raise; failures are reported in the result.

        Args:
            user_id: Chat platform user ID
            messages: Messages to deliver, in order

        Returns:
            NotificationResult indicating success or failure
        """
        pass

    def send_text(self, user_id: str, text: str) -> NotificationResult:
        return self.send(user_id, [OutboundMessage(text)])


class DryRunNotifier(Notifier):
    """Logs messages instead of delivering them."""

    def send(self, user_id: str, messages: list[OutboundMessage]) -> NotificationResult:
        for message in messages:
            logger.info(f"[dry-run] to {user_id}: {message.text}")
        return NotificationResult(success=True, channel="dry-run")


class NotifierFactory:
    """Factory for creating notifier instances."""

    @staticmethod
    def create(config: AppConfig, dry_run: bool = False) -> Notifier:
        """
        Create the push notifier for a configuration.

        Falls back to logging-only delivery when dry_run is set or no LINE
        channel token is configured.
        """
        if dry_run:
            return DryRunNotifier()

        if not config.line.channel_access_token:
            logger.warning("No LINE channel access token configured, pushes will only be logged")
            return DryRunNotifier()

        from .line import LineNotifier

        return LineNotifier(
            channel_access_token=config.line.channel_access_token,
            push_url=config.line.push_url,
        )
