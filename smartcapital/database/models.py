"""
Data models for SmartCapital.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional

from smartcapital.errors import AlertValidationError


class Direction(str, Enum):
    """Money flow direction of a ledger entry."""

    INCOME = "income"
    EXPENSE = "expense"


class AlertType(str, Enum):
    """Kinds of price alert."""

    DAILY_CHANGE = "DAILY_CHANGE"
    PROFIT_LOSS = "PROFIT_LOSS"
    STOP_PROFIT = "STOP_PROFIT"
    STOP_LOSS = "STOP_LOSS"
    TARGET_PRICE = "TARGET_PRICE"


class AlertDirection(str, Enum):
    """Which side of a daily move a DAILY_CHANGE alert watches."""

    UP = "UP"
    DOWN = "DOWN"
    BOTH = "BOTH"


# Alert types measured against a baseline cost
REFERENCE_PRICE_TYPES = frozenset(
    {AlertType.PROFIT_LOSS, AlertType.STOP_PROFIT, AlertType.STOP_LOSS}
)

# Share quantities are compared and stored at this many decimal places
SHARE_DECIMALS = 6


def round_shares(quantity: float) -> float:
    """Snap a share quantity to the stored precision (0.1 + 0.2 == 0.3)."""
    return round(quantity, SHARE_DECIMALS)


@dataclass
class KeywordMapping:
    """A learned keyword to category mapping for one user."""

    user_id: str
    keyword: str
    category: str
    subcategory: Optional[str] = None
    usage_count: int = 1
    id: Optional[int] = None


@dataclass
class LedgerEntry:
    """A recorded income or expense."""

    user_id: str
    direction: Direction
    amount: float
    category: str
    note: Optional[str] = None
    created_at: Optional[datetime] = None
    id: Optional[int] = None


@dataclass
class Position:
    """An equity holding."""

    user_id: str
    symbol: str
    quantity: float
    avg_price: float
    name: Optional[str] = None
    id: Optional[int] = None

    @property
    def cost(self) -> float:
        return self.quantity * self.avg_price


@dataclass
class PriceAlert:
    """User-defined condition over a symbol's live price."""

    user_id: str
    symbol: str
    alert_type: AlertType
    threshold: Optional[float] = None
    target_price: Optional[float] = None
    direction: Optional[AlertDirection] = None
    reference_price: Optional[float] = None
    name: Optional[str] = None
    is_active: bool = True
    last_triggered: Optional[datetime] = None
    trigger_count: int = 0
    created_at: Optional[datetime] = None
    id: Optional[int] = None

    @property
    def display_name(self) -> str:
        return self.name or self.symbol

    def validate(self) -> None:
        """
        Check that the fields required by the alert type are present.

        Raises:
            AlertValidationError: If a required field is missing or invalid
        """
        if self.alert_type == AlertType.TARGET_PRICE:
            if self.target_price is None or self.target_price <= 0:
                raise AlertValidationError(
                    "TARGET_PRICE alerts require a positive target price"
                )
            return

        if self.threshold is None or self.threshold <= 0:
            raise AlertValidationError(
                f"{self.alert_type.value} alerts require a positive threshold"
            )

        if self.alert_type == AlertType.DAILY_CHANGE and self.direction is None:
            self.direction = AlertDirection.BOTH

        if self.alert_type in REFERENCE_PRICE_TYPES:
            if self.reference_price is None or self.reference_price <= 0:
                raise AlertValidationError(
                    f"{self.alert_type.value} alerts require a reference price"
                )


@dataclass
class Notification:
    """In-app notification record."""

    user_id: str
    kind: str
    title: str
    message: str
    is_read: bool = False
    created_at: Optional[datetime] = None
    id: Optional[int] = None
