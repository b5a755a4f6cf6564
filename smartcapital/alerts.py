"""
Price alert evaluation and management.
"""

import logging
from datetime import datetime
from typing import Optional

from smartcapital.data.fetcher import MarketDataGateway, StockData
from smartcapital.data.symbols import normalize_symbol
from smartcapital.database.models import (
    AlertDirection,
    AlertType,
    Notification,
    PriceAlert,
    REFERENCE_PRICE_TYPES,
)
from smartcapital.database.repository import (
    AlertRepository,
    NotificationRepository,
    PositionRepository,
)
from smartcapital.errors import AlertValidationError
from smartcapital.notifiers.base import Notifier
from smartcapital.rules.engine import RuleEngine, TriggeredAlert

logger = logging.getLogger(__name__)


class AlertTriggerEngine:
    """
    Re-evaluates every active alert against live quotes.

    Each alert is handled as one unit: evaluate, then store the notification
    and stamp the trigger bookkeeping in one transaction, then push it to the
    owner. A firing that could not be stored is not pushed. An alert whose
    symbol has no quote this tick is left untouched. Alerts fire on every
    tick for as long as their condition holds.
    """

    def __init__(
        self,
        alerts: AlertRepository,
        notifications: NotificationRepository,
        gateway: MarketDataGateway,
        notifier: Notifier,
        rule_engine: Optional[RuleEngine] = None,
    ):
        self.alerts = alerts
        self.notifications = notifications
        self.gateway = gateway
        self.notifier = notifier
        self.rule_engine = rule_engine or RuleEngine()

    def run_tick(self, now: Optional[datetime] = None) -> int:
        """
        Run one evaluation pass over all active alerts.

        Returns:
            Number of alerts that fired
        """
        active = self.alerts.list_active()
        if not active:
            logger.debug("No active alerts")
            return 0

        symbols = list(dict.fromkeys(alert.symbol for alert in active))
        logger.info(f"Checking {len(active)} alerts across {len(symbols)} symbols")
        quotes = self.gateway.quote_many(symbols)

        fired = 0
        for alert in active:
            stock_data = quotes.get(alert.symbol)
            if stock_data is None:
                logger.warning(f"Skipping alert {alert.id}: no quote for {alert.symbol}")
                continue
            try:
                if self._process(alert, stock_data, now):
                    fired += 1
            except Exception as e:
                logger.error(f"Error checking alert {alert.id} ({alert.symbol}): {e}")

        logger.info(f"Alert check complete, {fired} fired")
        return fired

    def _process(
        self, alert: PriceAlert, stock_data: StockData, now: Optional[datetime]
    ) -> bool:
        triggered = self.rule_engine.evaluate(alert, stock_data, now)
        if triggered is None:
            return False

        logger.info(f"Alert {alert.id} triggered: {triggered.message}")
        with self.alerts.db.transaction():
            self.notifications.create(
                Notification(
                    user_id=triggered.user_id,
                    kind="alert",
                    title=triggered.title,
                    message=triggered.message,
                    created_at=triggered.triggered_at,
                )
            )
            self.alerts.record_trigger(alert.id, triggered.triggered_at)
        # Pushed only once the firing is stored, outside the database lock
        self._push(triggered)
        return True

    def _push(self, triggered: TriggeredAlert) -> None:
        result = self.notifier.send_text(triggered.user_id, triggered.push_text)
        if not result.success:
            logger.error(
                f"Push for alert {triggered.alert_id} via {result.channel} failed: {result.error}"
            )


class AlertService:
    """User-facing alert management."""

    def __init__(self, alerts: AlertRepository, positions: PositionRepository):
        self.alerts = alerts
        self.positions = positions

    def create_alert(
        self,
        user_id: str,
        symbol: str,
        alert_type: AlertType,
        threshold: Optional[float] = None,
        target_price: Optional[float] = None,
        direction: Optional[AlertDirection] = None,
        reference_price: Optional[float] = None,
        name: Optional[str] = None,
    ) -> PriceAlert:
        """
        Create an alert for a user.

        Profit/loss alerts without a reference price use the average cost of
        the user's position in the symbol.

        Raises:
            AlertValidationError: If a field the alert type needs is missing
        """
        symbol = normalize_symbol(symbol)
        position = self.positions.get(user_id, symbol)
        if alert_type in REFERENCE_PRICE_TYPES and reference_price is None and position:
            reference_price = position.avg_price

        alert = PriceAlert(
            user_id=user_id,
            symbol=symbol,
            name=name or (position.name if position else None),
            alert_type=alert_type,
            threshold=threshold,
            target_price=target_price,
            direction=direction,
            reference_price=reference_price,
        )
        return self.alerts.create(alert)

    def list_alerts(self, user_id: str, only_active: bool = False) -> list[PriceAlert]:
        return self.alerts.list_for_user(user_id, only_active=only_active)

    def set_active(self, user_id: str, alert_id: int, is_active: bool) -> PriceAlert:
        alert = self._owned(user_id, alert_id)
        self.alerts.set_active(alert_id, is_active)
        alert.is_active = is_active
        return alert

    def delete_alert(self, user_id: str, alert_id: int) -> None:
        self._owned(user_id, alert_id)
        self.alerts.delete(alert_id)

    def create_default_alerts(
        self,
        user_id: str,
        daily_change_threshold: float = 5,
        profit_threshold: float = 10,
        loss_threshold: float = 10,
    ) -> list[PriceAlert]:
        """
        Seed a daily-move, take-profit and stop-loss alert for every position.

        Returns:
            The alerts created
        """
        created = []
        for position in self.positions.list_for_user(user_id):
            specs = [
                (AlertType.DAILY_CHANGE, daily_change_threshold, AlertDirection.BOTH),
                (AlertType.STOP_PROFIT, profit_threshold, None),
                (AlertType.STOP_LOSS, loss_threshold, None),
            ]
            for alert_type, threshold, direction in specs:
                created.append(
                    self.alerts.create(
                        PriceAlert(
                            user_id=user_id,
                            symbol=position.symbol,
                            name=position.name,
                            alert_type=alert_type,
                            threshold=threshold,
                            direction=direction,
                            reference_price=(
                                position.avg_price
                                if alert_type in REFERENCE_PRICE_TYPES
                                else None
                            ),
                        )
                    )
                )
        logger.info(f"Created {len(created)} default alerts for {user_id}")
        return created

    def _owned(self, user_id: str, alert_id: int) -> PriceAlert:
        alert = self.alerts.get_by_id(alert_id)
        if alert is None or alert.user_id != user_id:
            raise AlertValidationError(f"No alert {alert_id} for user {user_id}")
        return alert
