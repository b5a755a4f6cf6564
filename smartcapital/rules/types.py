"""
Price alert rule types.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

from smartcapital.data.fetcher import StockData
from smartcapital.database.models import AlertDirection, AlertType


@dataclass
class TriggeredAlert:
    """A price alert that fired on a tick."""

    alert_id: Optional[int]
    user_id: str
    symbol: str
    alert_type: AlertType
    title: str
    message: str
    current_price: float
    triggered_at: datetime
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def push_text(self) -> str:
        return f"🔔 {self.message}\n\nCurrent price: ${self.current_price:.2f}"


@dataclass
class RuleMatch:
    """What a rule reports when its condition holds."""

    message: str
    metadata: dict[str, Any] = field(default_factory=dict)


def change_from_reference(price: float, reference_price: float) -> float:
    """Percent move of price relative to a reference price."""
    return (price - reference_price) / reference_price * 100


class Rule(ABC):
    """Base class for alert rules."""

    alert_type: AlertType

    def __init__(self, label: str):
        self.label = label

    @abstractmethod
    def evaluate(self, stock_data: StockData) -> Optional[RuleMatch]:
        """
        Evaluate the rule against a live quote.

        Returns:
            RuleMatch if the condition holds, otherwise None
        """
        pass


class DailyChangeRule(Rule):
    """Fires when the day's move reaches a percentage in a given direction."""

    alert_type = AlertType.DAILY_CHANGE

    def __init__(self, label: str, threshold: float, direction: AlertDirection):
        super().__init__(label)
        self.threshold = threshold
        self.direction = direction

    def evaluate(self, stock_data: StockData) -> Optional[RuleMatch]:
        pct = stock_data.daily_change_pct
        if abs(pct) < self.threshold:
            return None
        if self.direction == AlertDirection.UP and pct <= 0:
            return None
        if self.direction == AlertDirection.DOWN and pct >= 0:
            return None

        move = "up" if pct > 0 else "down"
        return RuleMatch(
            message=(
                f"{self.label} is {move} {abs(pct):.2f}% today, "
                f"reaching your {self.threshold:g}% alert"
            ),
            metadata={"change_pct": pct, "threshold": self.threshold},
        )


class ReferencePriceRule(Rule):
    """Base for rules measured against a reference (cost) price."""

    def __init__(self, label: str, threshold: float, reference_price: float):
        super().__init__(label)
        self.threshold = threshold
        self.reference_price = reference_price

    def evaluate(self, stock_data: StockData) -> Optional[RuleMatch]:
        pct = change_from_reference(stock_data.current_price, self.reference_price)
        if not self.triggered(pct):
            return None
        return RuleMatch(
            message=self.describe(pct),
            metadata={
                "change_pct": pct,
                "threshold": self.threshold,
                "reference_price": self.reference_price,
            },
        )

    @abstractmethod
    def triggered(self, pct: float) -> bool:
        pass

    @abstractmethod
    def describe(self, pct: float) -> str:
        pass


class ProfitLossRule(ReferencePriceRule):
    """Fires on a move of at least threshold percent either way."""

    alert_type = AlertType.PROFIT_LOSS

    def triggered(self, pct: float) -> bool:
        return abs(pct) >= self.threshold

    def describe(self, pct: float) -> str:
        outcome = "gain" if pct > 0 else "loss"
        return (
            f"{self.label} shows a {abs(pct):.2f}% {outcome} against your cost "
            f"${self.reference_price:.2f}, reaching your {self.threshold:g}% alert"
        )


class StopProfitRule(ReferencePriceRule):
    alert_type = AlertType.STOP_PROFIT

    def triggered(self, pct: float) -> bool:
        return pct >= self.threshold

    def describe(self, pct: float) -> str:
        return (
            f"🎉 {self.label} reached its take-profit level: "
            f"up {pct:.2f}% (target {self.threshold:g}%)"
        )


class StopLossRule(ReferencePriceRule):
    alert_type = AlertType.STOP_LOSS

    def triggered(self, pct: float) -> bool:
        return pct <= -self.threshold

    def describe(self, pct: float) -> str:
        return (
            f"⚠️ {self.label} reached its stop-loss level: "
            f"down {abs(pct):.2f}% (stop at -{self.threshold:g}%)"
        )


class TargetPriceRule(Rule):
    """Fires once the price is at or above a target."""

    alert_type = AlertType.TARGET_PRICE

    def __init__(self, label: str, target_price: float):
        super().__init__(label)
        self.target_price = target_price

    def evaluate(self, stock_data: StockData) -> Optional[RuleMatch]:
        if stock_data.current_price < self.target_price:
            return None
        return RuleMatch(
            message=(
                f"🎯 {self.label} reached your target price ${self.target_price:.2f}. "
                f"Current price: ${stock_data.current_price:.2f}"
            ),
            metadata={"target_price": self.target_price},
        )
