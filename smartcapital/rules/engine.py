"""
Rule evaluation engine.
"""

from datetime import datetime
from typing import Optional

from smartcapital.data.fetcher import StockData
from smartcapital.database.models import AlertDirection, AlertType, PriceAlert
from .types import (
    DailyChangeRule,
    ProfitLossRule,
    Rule,
    StopLossRule,
    StopProfitRule,
    TargetPriceRule,
    TriggeredAlert,
)

# Re-export for convenience
__all__ = ["RuleEngine", "TriggeredAlert"]


class RuleEngine:
    """Evaluates price alerts against live quotes."""

    def evaluate(
        self,
        alert: PriceAlert,
        stock_data: StockData,
        now: Optional[datetime] = None,
    ) -> Optional[TriggeredAlert]:
        """
        Evaluate one alert against a quote for its symbol.

        Returns:
            TriggeredAlert if the alert fires, otherwise None

        Raises:
            ValueError: If the alert's type is unknown or misconfigured
        """
        match = self.create_rule(alert).evaluate(stock_data)
        if match is None:
            return None

        return TriggeredAlert(
            alert_id=alert.id,
            user_id=alert.user_id,
            symbol=alert.symbol,
            alert_type=alert.alert_type,
            title=f"Price alert: {alert.display_name}",
            message=match.message,
            current_price=stock_data.current_price,
            triggered_at=now or datetime.now(),
            metadata=match.metadata,
        )

    def create_rule(self, alert: PriceAlert) -> Rule:
        """
        Create a Rule instance from a stored alert.

        Raises:
            ValueError: If the alert type is unknown or a required field is missing
        """
        alert_type = alert.alert_type
        label = alert.display_name

        if alert_type == AlertType.TARGET_PRICE:
            if alert.target_price is None:
                raise ValueError(f"Alert {alert.id} has no target price")
            return TargetPriceRule(label, target_price=alert.target_price)

        if alert.threshold is None:
            raise ValueError(f"Alert {alert.id} has no threshold")

        if alert_type == AlertType.DAILY_CHANGE:
            return DailyChangeRule(
                label,
                threshold=alert.threshold,
                direction=alert.direction or AlertDirection.BOTH,
            )

        rule_classes = {
            AlertType.PROFIT_LOSS: ProfitLossRule,
            AlertType.STOP_PROFIT: StopProfitRule,
            AlertType.STOP_LOSS: StopLossRule,
        }
        rule_class = rule_classes.get(alert_type)
        if rule_class is None:
            raise ValueError(f"Unknown alert type: {alert_type}")
        if not alert.reference_price:
            raise ValueError(f"Alert {alert.id} has no reference price")
        return rule_class(
            label, threshold=alert.threshold, reference_price=alert.reference_price
        )
