"""
Application composition root.
"""

import logging
from typing import Optional

from smartcapital.alerts import AlertService, AlertTriggerEngine
from smartcapital.config import AppConfig
from smartcapital.conversation.engine import ConversationEngine
from smartcapital.data.fetcher import MarketDataGateway, StockDataFetcher
from smartcapital.database.connection import Database
from smartcapital.database.repository import (
    AlertRepository,
    KeywordRepository,
    LedgerRepository,
    NotificationRepository,
    PositionRepository,
    SessionRepository,
)
from smartcapital.digest import DailyDigest
from smartcapital.notifiers.base import Notifier, OutboundMessage
from smartcapital.scheduler import Scheduler

logger = logging.getLogger(__name__)


class SmartCapitalApp:
    """Main SmartCapital application."""

    def __init__(
        self,
        db: Database,
        config: AppConfig,
        notifier: Notifier,
        gateway: Optional[MarketDataGateway] = None,
    ):
        """
        Initialize SmartCapital app.

        Args:
            db: Initialized database
            config: Application configuration
            notifier: Push channel for alerts and digests
            gateway: Market data gateway (built from config if omitted)
        """
        self.db = db
        self.config = config
        self.notifier = notifier
        self.gateway = gateway or MarketDataGateway(
            StockDataFetcher(
                max_retries=config.market_data.max_retries,
                retry_delay=config.market_data.retry_delay_seconds,
            ),
            timeout=config.market_data.timeout_seconds,
            max_workers=config.market_data.max_workers,
        )

        # Initialize repositories
        self.session_repo = SessionRepository(db)
        self.keyword_repo = KeywordRepository(db)
        self.ledger_repo = LedgerRepository(db)
        self.position_repo = PositionRepository(db)
        self.alert_repo = AlertRepository(db)
        self.notification_repo = NotificationRepository(db)

        # Initialize services
        self.conversation = ConversationEngine(
            sessions=self.session_repo,
            ledger=self.ledger_repo,
            positions=self.position_repo,
            keywords=self.keyword_repo,
            gateway=self.gateway,
            web_url=config.app.web_url,
        )
        self.alert_engine = AlertTriggerEngine(
            alerts=self.alert_repo,
            notifications=self.notification_repo,
            gateway=self.gateway,
            notifier=notifier,
        )
        self.alert_service = AlertService(self.alert_repo, self.position_repo)
        self.digest = DailyDigest(
            ledger=self.ledger_repo,
            positions=self.position_repo,
            gateway=self.gateway,
            notifier=notifier,
        )
        self.scheduler = Scheduler(
            config.schedule,
            alert_job=self.run_alert_tick,
            digest_job=self.run_daily_digest,
        )

    def process_inbound_message(self, user_id: str, text: str) -> list[OutboundMessage]:
        """Handle one chat message and return the replies."""
        return self.conversation.process(user_id, text)

    def run_alert_tick(self) -> int:
        """Evaluate all active alerts once; returns the number fired."""
        return self.alert_engine.run_tick()

    def run_daily_digest(self) -> int:
        """Send the daily digest; returns the number of recipients."""
        return self.digest.run()

    def start(self) -> None:
        self.scheduler.start()

    def stop(self) -> None:
        self.scheduler.stop()
        self.gateway.close()
        self.db.close()
