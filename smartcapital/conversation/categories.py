"""
Ledger categories, category prediction and the keyword entry parser.
"""

import logging
import re
import sqlite3
from collections import Counter
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional

from smartcapital.database.models import Direction
from smartcapital.database.repository import KeywordRepository, LedgerRepository
from smartcapital.errors import PersistenceError

logger = logging.getLogger(__name__)

FOOD = "Food"
TRANSPORT = "Transport"
HOUSING = "Housing"
ENTERTAINMENT = "Entertainment"
SHOPPING = "Shopping"
MEDICAL = "Medical"
INVESTMENT = "Investment"
OTHER = "Other"
SALARY = "Salary"
BONUS = "Bonus"
DIVIDEND = "Dividend"
INVESTMENT_GAIN = "Investment Gain"
PART_TIME = "Part-time"

EXPENSE_CATEGORIES = (
    FOOD, TRANSPORT, HOUSING, ENTERTAINMENT, SHOPPING, MEDICAL, INVESTMENT, OTHER,
)
INCOME_CATEGORIES = (SALARY, BONUS, DIVIDEND, INVESTMENT_GAIN, PART_TIME, OTHER)

_EXPENSE_ALIASES = {
    "飲食": FOOD,
    "餐飲": FOOD,
    "交通": TRANSPORT,
    "transportation": TRANSPORT,
    "居住": HOUSING,
    "娛樂": ENTERTAINMENT,
    "購物": SHOPPING,
    "醫療": MEDICAL,
    "投資": INVESTMENT,
    "其他": OTHER,
}

_INCOME_ALIASES = {
    "薪資": SALARY,
    "薪水": SALARY,
    "獎金": BONUS,
    "股息": DIVIDEND,
    "股利": DIVIDEND,
    "投資獲利": INVESTMENT_GAIN,
    "兼職": PART_TIME,
    "part time": PART_TIME,
    "其他": OTHER,
}

# (category, subcategory, keywords); first match wins
EXPENSE_KEYWORDS = (
    (FOOD, None, ("lunch", "dinner", "breakfast", "meal", "restaurant", "bento",
                  "吃", "喝", "午餐", "晚餐", "早餐", "便當", "餐廳", "食物")),
    (FOOD, "Afternoon Tea", ("coffee", "starbucks", "dessert", "cake", "latte",
                             "下午茶", "咖啡", "甜點", "蛋糕", "星巴克")),
    (FOOD, "Snacks", ("snack", "chips", "candy", "chocolate",
                      "零食", "餅乾", "糖果", "巧克力", "點心")),
    (FOOD, "Late-night Snack", ("night market", "宵夜", "消夜", "夜市", "鹽酥雞")),
    (FOOD, "Drinks", ("drink", "bubble tea", "milk tea", "juice", "cola",
                      "飲料", "手搖", "珍奶", "奶茶", "果汁", "可樂")),
    (TRANSPORT, "Taxi", ("uber", "taxi", "lyft", "計程車", "小黃")),
    (TRANSPORT, None, ("bus", "metro", "mrt", "train", "fuel", "parking", "hsr",
                       "公車", "捷運", "高鐵", "台鐵", "火車", "停車", "加油")),
    (HOUSING, None, ("rent", "water bill", "electricity", "internet", "utilities",
                     "房租", "租金", "水費", "電費", "瓦斯", "網路費", "管理費")),
    (ENTERTAINMENT, None, ("movie", "karaoke", "ktv", "game", "concert", "travel",
                           "電影", "唱歌", "遊戲", "旅遊", "旅行")),
    (SHOPPING, None, ("clothes", "shoes", "shopee", "momo", "pchome", "amazon",
                      "衣服", "鞋子", "蝦皮", "網購")),
    (MEDICAL, None, ("medicine", "doctor", "hospital", "clinic", "pharmacy",
                     "藥", "看病", "醫院", "診所", "口罩")),
    (OTHER, None, ("misc", "repair", "雜費", "維修")),
)

INCOME_KEYWORDS = (
    (SALARY, None, ("salary", "paycheck", "payroll", "薪資", "薪水")),
    (BONUS, None, ("bonus", "獎金", "年終")),
    (DIVIDEND, None, ("dividend", "股息", "股利")),
    (PART_TIME, None, ("freelance", "part-time", "gig", "兼職", "外快")),
)

# Categories that say nothing about what a similar amount was spent on
_HISTORY_EXCLUDED = frozenset({OTHER, INVESTMENT})

HISTORY_WINDOW = 50
HISTORY_TOLERANCE = 0.2
HISTORY_MIN_SUPPORT = 2

_ENTRY_PREFIX = re.compile(r"^(?:log|記)\s*", re.IGNORECASE)
_ENTRY = re.compile(r"^([+-]?\d+(?:\.\d+)?)\s*(.*)$", re.DOTALL)


class Confidence(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


def categories_for(direction: Direction) -> tuple[str, ...]:
    return INCOME_CATEGORIES if direction == Direction.INCOME else EXPENSE_CATEGORIES


def default_category(direction: Direction) -> str:
    """Fallback used when free text can't be resolved."""
    return OTHER if direction == Direction.INCOME else FOOD


def resolve_category(label: str, direction: Direction) -> Optional[str]:
    """Map a category name or alias to its canonical name, case-insensitively."""
    key = label.strip().lower()
    for category in categories_for(direction):
        if category.lower() == key:
            return category
    aliases = _INCOME_ALIASES if direction == Direction.INCOME else _EXPENSE_ALIASES
    return aliases.get(key)


def category_menu(direction: Direction, suggested: Optional[str] = None) -> list[str]:
    """Categories in menu order, with the suggestion (if any) first."""
    categories = list(categories_for(direction))
    if suggested in categories:
        categories.remove(suggested)
        categories.insert(0, suggested)
    return categories


@dataclass
class Prediction:
    category: str
    confidence: Confidence
    source: str


@dataclass
class ParseResult:
    """Outcome of parsing one `[sign]amount [text]` entry."""

    amount: float
    direction: Direction
    category: str
    confidence: Confidence
    needs_confirmation: bool
    subcategory: Optional[str] = None
    note: Optional[str] = None
    keyword: str = ""


class CategoryPredictor:
    """
    Suggests a category for a bare amount.

    Layers are tried in order: time and magnitude heuristics, then the
    user's own history of similar amounts, then a per-direction default.
    """

    def __init__(self, ledger: LedgerRepository):
        self.ledger = ledger

    def predict(
        self,
        user_id: str,
        amount: float,
        direction: Direction,
        at: Optional[datetime] = None,
    ) -> Prediction:
        at = at or datetime.now()

        if direction == Direction.EXPENSE:
            category = self._expense_heuristic(amount, at)
        else:
            category = self._income_heuristic(amount, at)
        if category:
            return Prediction(category, Confidence.MEDIUM, "heuristic")

        category = self._from_history(user_id, amount, direction)
        if category:
            return Prediction(category, Confidence.HIGH, "history")

        return Prediction(OTHER, Confidence.LOW, "default")

    def _expense_heuristic(self, amount: float, at: datetime) -> Optional[str]:
        hour = at.hour
        meal_time = 6 <= hour <= 9 or 11 <= hour <= 14 or 17 <= hour <= 20
        if meal_time and amount < 500:
            return FOOD
        if amount > 10000:
            return HOUSING
        if at.weekday() >= 5 and 2000 < amount <= 5000:
            return ENTERTAINMENT
        commute = 7 <= hour <= 9 or 17 <= hour <= 19
        if commute and 500 < amount <= 2000:
            return TRANSPORT
        return None

    def _income_heuristic(self, amount: float, at: datetime) -> Optional[str]:
        if 1 <= at.day <= 10 and amount > 30000:
            return SALARY
        return None

    def _from_history(
        self, user_id: str, amount: float, direction: Direction
    ) -> Optional[str]:
        try:
            entries = self.ledger.list_recent(user_id, limit=HISTORY_WINDOW)
        except sqlite3.Error as e:
            logger.warning(f"History prediction skipped for {user_id}: {e}")
            return None

        low = amount * (1 - HISTORY_TOLERANCE)
        high = amount * (1 + HISTORY_TOLERANCE)
        counts = Counter(
            entry.category
            for entry in entries
            if entry.direction == direction
            and entry.category not in _HISTORY_EXCLUDED
            and low <= entry.amount <= high
        )
        if not counts:
            return None
        category, support = counts.most_common(1)[0]
        return category if support >= HISTORY_MIN_SUPPORT else None


class KeywordParser:
    """Parses typed entries such as `log -120 lunch` or `+5000 bonus`."""

    def __init__(self, keywords: KeywordRepository, predictor: CategoryPredictor):
        self.keywords = keywords
        self.predictor = predictor

    def parse(
        self, user_id: str, command: str, at: Optional[datetime] = None
    ) -> Optional[ParseResult]:
        """
        Parse one entry.

        Returns:
            ParseResult, or None if the command has no usable amount
        """
        content = _ENTRY_PREFIX.sub("", command.strip(), count=1).strip()
        match = _ENTRY.match(content)
        if not match:
            return None

        amount_text, rest = match.group(1), match.group(2).strip()
        amount = abs(float(amount_text))
        if amount == 0:
            return None
        direction = Direction.INCOME if amount_text.startswith("+") else Direction.EXPENSE

        if not rest:
            prediction = self.predictor.predict(user_id, amount, direction, at)
            return ParseResult(
                amount=amount,
                direction=direction,
                category=prediction.category,
                confidence=prediction.confidence,
                needs_confirmation=prediction.confidence != Confidence.HIGH,
            )

        tokens = rest.split()
        category = resolve_category(tokens[0], direction)
        if category:
            subcategory = tokens[1] if len(tokens) > 1 else None
            return ParseResult(
                amount=amount,
                direction=direction,
                category=category,
                subcategory=subcategory,
                note=" ".join(tokens[2:]) or subcategory,
                confidence=Confidence.HIGH,
                needs_confirmation=False,
            )

        keyword = " ".join(tokens).lower()
        result = ParseResult(
            amount=amount,
            direction=direction,
            category=default_category(direction),
            note=" ".join(tokens),
            keyword=keyword,
            confidence=Confidence.LOW,
            needs_confirmation=True,
        )

        matched = self._learned(user_id, keyword, direction) or self._builtin(
            keyword, direction
        )
        if matched:
            result.category, result.subcategory = matched
            result.confidence = Confidence.MEDIUM
            result.needs_confirmation = False
        return result

    def parse_batch(
        self, user_id: str, text: str, at: Optional[datetime] = None
    ) -> list[tuple[str, Optional[ParseResult]]]:
        """Parse every non-empty line of a multi-line message."""
        lines = [line.strip() for line in text.splitlines() if line.strip()]
        return [(line, self.parse(user_id, line, at)) for line in lines]

    def _learned(
        self, user_id: str, keyword: str, direction: Direction
    ) -> Optional[tuple[str, Optional[str]]]:
        try:
            mapping = self.keywords.lookup(user_id, keyword)
            if mapping is None or mapping.category not in categories_for(direction):
                return None
            self.keywords.touch(mapping.id)
        except (sqlite3.Error, PersistenceError) as e:
            logger.warning(f"Learned keywords unavailable for {user_id}: {e}")
            return None
        return mapping.category, mapping.subcategory

    def _builtin(
        self, keyword: str, direction: Direction
    ) -> Optional[tuple[str, Optional[str]]]:
        table = INCOME_KEYWORDS if direction == Direction.INCOME else EXPENSE_KEYWORDS
        for category, subcategory, words in table:
            if any(word in keyword for word in words):
                return category, subcategory
        return None
