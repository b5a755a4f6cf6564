"""
Conversation states and the context each one carries between turns.

Every non-idle state has exactly one context type. The idle state has none,
so moving to IDLE always drops whatever the previous flow was holding.
"""

from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Optional, Union

from smartcapital.database.models import Direction


class ConversationState(str, Enum):
    """Where a user is in a multi-turn flow."""

    IDLE = "IDLE"
    WAITING_EXPENSE_CATEGORY = "WAITING_EXPENSE_CATEGORY"
    WAITING_INCOME_CATEGORY = "WAITING_INCOME_CATEGORY"
    WAITING_BUY_QUANTITY = "WAITING_BUY_QUANTITY"
    WAITING_SELL_QUANTITY = "WAITING_SELL_QUANTITY"
    WAITING_CATEGORY_CONFIRMATION = "WAITING_CATEGORY_CONFIRMATION"
    WAITING_CATEGORY_SELECTION = "WAITING_CATEGORY_SELECTION"


@dataclass
class PendingEntry:
    """An amount waiting for the user to pick a category."""

    amount: float
    note: Optional[str] = None
    suggested_category: Optional[str] = None


@dataclass
class PendingBuy:
    """A buy order waiting for a share quantity."""

    symbol: str
    price: float
    name: Optional[str] = None


@dataclass
class PendingSell:
    """A sell order waiting for a share quantity."""

    symbol: str
    price: float
    available_quantity: float
    avg_price: float


@dataclass
class PendingConfirmation:
    """A low-confidence category guess waiting for yes/no."""

    amount: float
    direction: Direction
    keyword: str
    category: str
    subcategory: Optional[str] = None
    note: Optional[str] = None


@dataclass
class PendingSelection:
    """A rejected guess waiting for the user to choose from the menu."""

    amount: float
    direction: Direction
    keyword: str


Context = Union[
    PendingEntry, PendingBuy, PendingSell, PendingConfirmation, PendingSelection
]

CONTEXT_TYPES: dict[ConversationState, type] = {
    ConversationState.WAITING_EXPENSE_CATEGORY: PendingEntry,
    ConversationState.WAITING_INCOME_CATEGORY: PendingEntry,
    ConversationState.WAITING_BUY_QUANTITY: PendingBuy,
    ConversationState.WAITING_SELL_QUANTITY: PendingSell,
    ConversationState.WAITING_CATEGORY_CONFIRMATION: PendingConfirmation,
    ConversationState.WAITING_CATEGORY_SELECTION: PendingSelection,
}


@dataclass
class Session:
    """Durable per-user conversation record."""

    user_id: str
    state: ConversationState = ConversationState.IDLE
    context: Optional[Context] = None

    def __post_init__(self):
        expected = CONTEXT_TYPES.get(self.state)
        if expected is None:
            if self.context is not None:
                raise ValueError("IDLE sessions cannot carry a context")
        elif not isinstance(self.context, expected):
            raise ValueError(
                f"{self.state.value} requires a {expected.__name__} context, "
                f"got {type(self.context).__name__}"
            )

    @classmethod
    def idle(cls, user_id: str) -> "Session":
        return cls(user_id=user_id)

    def context_dict(self) -> dict[str, Any]:
        """Serializable form of the context ({} when idle)."""
        if self.context is None:
            return {}
        data = asdict(self.context)
        for key, value in data.items():
            if isinstance(value, Enum):
                data[key] = value.value
        return data


def context_from_dict(state: ConversationState, data: dict[str, Any]) -> Optional[Context]:
    """
    Rebuild the typed context for a state from its stored form.

    Raises:
        TypeError: If the stored fields don't match the state's context type
    """
    context_type = CONTEXT_TYPES.get(state)
    if context_type is None:
        return None
    values = dict(data)
    if "direction" in values:
        values["direction"] = Direction(values["direction"])
    return context_type(**values)
