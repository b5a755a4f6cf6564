"""
Intent classification for inbound chat messages.

Classification is an ordered list of pure rules. Each rule looks at the
normalized text and either returns an intent or None; the first intent wins.
"""

import re
from dataclasses import dataclass
from typing import Callable, Optional, Union

from smartcapital.data.symbols import normalize_symbol
from smartcapital.database.models import Direction
from .categories import resolve_category

CANCEL_PATTERN = re.compile(r"^(取消|cancel|exit)$", re.IGNORECASE)

# Words that look like tickers but are commands
RESERVED_WORDS = frozenset({
    "help", "buy", "sell", "log", "yes", "no", "y", "n", "ok",
    "exit", "cancel", "quote", "stock", "web", "app",
})

_SYMBOL = r"[A-Za-z0-9]{1,5}(?:\.[A-Za-z]{1,3})?"
_AMOUNT = r"[+-]?\d+(?:\.\d{1,2})?"

_SIGNED_AMOUNT = re.compile(r"^([+-]?)(\d+(?:\.\d{1,2})?)$")
_BARE_SYMBOL = re.compile(r"^[A-Za-z0-9]{1,5}$")
_QUOTE_COMMAND = re.compile(rf"^(?:(?:quote|stock)\s+|(?:查詢|股票)\s*)({_SYMBOL})$", re.IGNORECASE)
_BUY_COMMAND = re.compile(rf"^(?:buy\s+|(?:買入|買)\s*)({_SYMBOL})$", re.IGNORECASE)
_SELL_COMMAND = re.compile(rf"^(?:sell\s+|(?:賣出|賣)\s*)({_SYMBOL})$", re.IGNORECASE)
_LABEL_THEN_AMOUNT = re.compile(rf"^(?P<label>\D+?)\s*(?P<amount>{_AMOUNT})$")
_AMOUNT_THEN_LABEL = re.compile(rf"^(?P<amount>{_AMOUNT})\s*(?P<label>\D+)$")
_LOG_PREFIX = re.compile(r"^(?:log(?=\s)|記)\s*(?P<body>.*)$", re.IGNORECASE | re.DOTALL)
_AMOUNT_WITH_TEXT = re.compile(r"^[+-]?\d+(?:\.\d+)?\s*[^\d\s.]", re.DOTALL)
_HELP = re.compile(r"^(help|說明|幫助|\?)$", re.IGNORECASE)
_PORTFOLIO = re.compile(r"^(portfolio|positions|資產|持倉)$", re.IGNORECASE)
_WEBSITE = re.compile(r"^(website|web|app|網站)$", re.IGNORECASE)


@dataclass(frozen=True)
class ExpenseAmount:
    amount: float


@dataclass(frozen=True)
class IncomeAmount:
    amount: float


@dataclass(frozen=True)
class StockQuery:
    symbol: str


@dataclass(frozen=True)
class BuyAction:
    symbol: str


@dataclass(frozen=True)
class SellAction:
    symbol: str


@dataclass(frozen=True)
class ExpenseCategoryLabel:
    category: str
    amount: float


@dataclass(frozen=True)
class IncomeCategoryLabel:
    category: str
    amount: float


@dataclass(frozen=True)
class SmartEntry:
    """Free-text entry for the keyword parser; may span several lines."""

    text: str

    @property
    def lines(self) -> list[str]:
        return [line.strip() for line in self.text.splitlines() if line.strip()]


@dataclass(frozen=True)
class Help:
    pass


@dataclass(frozen=True)
class PortfolioQuery:
    pass


@dataclass(frozen=True)
class WebsiteLink:
    pass


@dataclass(frozen=True)
class Unrecognized:
    pass


Intent = Union[
    ExpenseAmount, IncomeAmount, StockQuery, BuyAction, SellAction,
    ExpenseCategoryLabel, IncomeCategoryLabel, SmartEntry,
    Help, PortfolioQuery, WebsiteLink, Unrecognized,
]


def is_cancel(text: str) -> bool:
    return bool(CANCEL_PATTERN.match(text.strip()))


def match_amount(text: str) -> Optional[Intent]:
    """`120`, `-120` are expenses; `+5000` is income. Zero is not an amount."""
    match = _SIGNED_AMOUNT.match(text)
    if not match:
        return None
    amount = float(match.group(2))
    if amount == 0:
        return None
    if match.group(1) == "+":
        return IncomeAmount(amount)
    return ExpenseAmount(amount)


def match_stock_query(text: str) -> Optional[Intent]:
    """`TSLA`, or `quote 2330` for numeric codes."""
    match = _QUOTE_COMMAND.match(text)
    if match:
        return StockQuery(normalize_symbol(match.group(1)))
    if (
        _BARE_SYMBOL.match(text)
        and not text.isdigit()
        and text.lower() not in RESERVED_WORDS
    ):
        return StockQuery(normalize_symbol(text))
    return None


def match_trade(text: str) -> Optional[Intent]:
    match = _BUY_COMMAND.match(text)
    if match:
        return BuyAction(normalize_symbol(match.group(1)))
    match = _SELL_COMMAND.match(text)
    if match:
        return SellAction(normalize_symbol(match.group(1)))
    return None


def match_category_label(text: str) -> Optional[Intent]:
    """
    `飲食 120`, `120 food`, `+50000 salary`.

    A `+` forces the income table and `-` the expense table. Unsigned
    amounts use whichever table knows the label, expense first.
    """
    match = _LABEL_THEN_AMOUNT.match(text) or _AMOUNT_THEN_LABEL.match(text)
    if not match:
        return None

    amount_text = match.group("amount")
    amount = abs(float(amount_text))
    if amount == 0:
        return None

    label = match.group("label")
    if amount_text.startswith("+"):
        directions = (Direction.INCOME,)
    elif amount_text.startswith("-"):
        directions = (Direction.EXPENSE,)
    else:
        directions = (Direction.EXPENSE, Direction.INCOME)

    for direction in directions:
        category = resolve_category(label, direction)
        if category is None:
            continue
        if direction == Direction.INCOME:
            return IncomeCategoryLabel(category, amount)
        return ExpenseCategoryLabel(category, amount)
    return None


def match_smart_entry(text: str) -> Optional[Intent]:
    """`log -120 lunch`, `記100午餐`, or `-120 lunch`."""
    match = _LOG_PREFIX.match(text)
    if match:
        body = match.group("body").strip()
        return SmartEntry(body) if body else None
    if _AMOUNT_WITH_TEXT.match(text):
        return SmartEntry(text)
    return None


def match_keyword(text: str) -> Optional[Intent]:
    if _HELP.match(text):
        return Help()
    if _PORTFOLIO.match(text):
        return PortfolioQuery()
    if _WEBSITE.match(text):
        return WebsiteLink()
    return None


RULES: list[Callable[[str], Optional[Intent]]] = [
    match_amount,
    match_stock_query,
    match_trade,
    match_category_label,
    match_smart_entry,
    match_keyword,
]


def classify(text: str) -> Intent:
    """Classify a message; never raises."""
    normalized = text.strip()
    for rule in RULES:
        intent = rule(normalized)
        if intent is not None:
            return intent
    return Unrecognized()
