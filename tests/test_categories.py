"""
Category prediction and keyword parser tests.
"""

import sqlite3
import pytest
from datetime import datetime
from unittest.mock import Mock

from smartcapital.conversation.categories import (
    CategoryPredictor,
    Confidence,
    KeywordParser,
    category_menu,
    resolve_category,
)
from smartcapital.database.models import Direction, LedgerEntry
from smartcapital.database.repository import KeywordRepository, LedgerRepository

# Wednesday 15:00: outside every meal and commute window
QUIET_HOUR = datetime(2026, 3, 18, 15, 0)


class TestCategoryTables:
    """Test category name resolution."""

    def test_resolve_canonical_and_alias(self):
        assert resolve_category("FOOD", Direction.EXPENSE) == "Food"
        assert resolve_category("飲食", Direction.EXPENSE) == "Food"
        assert resolve_category("薪資", Direction.INCOME) == "Salary"
        assert resolve_category("investment gain", Direction.INCOME) == "Investment Gain"

    def test_resolve_respects_direction(self):
        assert resolve_category("salary", Direction.EXPENSE) is None

    def test_menu_puts_suggestion_first(self):
        menu = category_menu(Direction.EXPENSE, "Transport")
        assert menu[0] == "Transport"
        assert menu.count("Transport") == 1
        assert len(menu) == 8


class TestCategoryPredictor:
    """Test the layered category predictor."""

    @pytest.fixture
    def ledger(self, db):
        return LedgerRepository(db)

    @pytest.fixture
    def predictor(self, ledger):
        return CategoryPredictor(ledger)

    def add(self, ledger, amount, category, direction=Direction.EXPENSE):
        ledger.create(
            LedgerEntry(user_id="U1", direction=direction, amount=amount, category=category)
        )

    def test_meal_time_small_amount_is_food(self, predictor):
        """Should suggest Food for a small amount at lunch time."""
        prediction = predictor.predict("U1", 120, Direction.EXPENSE, datetime(2026, 3, 18, 12, 30))
        assert prediction.category == "Food"
        assert prediction.confidence == Confidence.MEDIUM

    def test_large_amount_is_housing(self, predictor):
        prediction = predictor.predict("U1", 15000, Direction.EXPENSE, QUIET_HOUR)
        assert prediction.category == "Housing"

    def test_weekend_mid_amount_is_entertainment(self, predictor):
        saturday = datetime(2026, 3, 21, 15, 0)
        assert predictor.predict("U1", 3000, Direction.EXPENSE, saturday).category == "Entertainment"

    def test_commute_mid_amount_is_transport(self, predictor):
        evening = datetime(2026, 3, 18, 18, 0)
        assert predictor.predict("U1", 1200, Direction.EXPENSE, evening).category == "Transport"

    def test_early_month_large_income_is_salary(self, predictor):
        prediction = predictor.predict("U1", 45000, Direction.INCOME, datetime(2026, 3, 5, 10, 0))
        assert prediction.category == "Salary"
        assert prediction.confidence == Confidence.MEDIUM

    def test_history_with_two_matches(self, predictor, ledger):
        """Should return the mode of similar amounts with high confidence."""
        self.add(ledger, 950, "Shopping")
        self.add(ledger, 1100, "Shopping")
        self.add(ledger, 1000, "Medical")

        prediction = predictor.predict("U1", 1000, Direction.EXPENSE, QUIET_HOUR)
        assert prediction.category == "Shopping"
        assert prediction.confidence == Confidence.HIGH

    def test_history_with_one_match_falls_through(self, predictor, ledger):
        """Should need at least two supporting entries."""
        self.add(ledger, 1000, "Shopping")

        prediction = predictor.predict("U1", 1000, Direction.EXPENSE, QUIET_HOUR)
        assert prediction.category == "Other"
        assert prediction.confidence == Confidence.LOW

    def test_history_ignores_dissimilar_amounts(self, predictor, ledger):
        """Should only count amounts within 20%."""
        self.add(ledger, 1300, "Shopping")
        self.add(ledger, 700, "Shopping")

        assert predictor.predict("U1", 1000, Direction.EXPENSE, QUIET_HOUR).source == "default"

    def test_history_ignores_other_and_investment(self, predictor, ledger):
        self.add(ledger, 1000, "Other")
        self.add(ledger, 1000, "Other")
        self.add(ledger, 1000, "Investment")
        self.add(ledger, 1000, "Investment")

        assert predictor.predict("U1", 1000, Direction.EXPENSE, QUIET_HOUR).source == "default"

    def test_history_matches_direction(self, predictor, ledger):
        self.add(ledger, 1000, "Bonus", Direction.INCOME)
        self.add(ledger, 1000, "Bonus", Direction.INCOME)

        assert predictor.predict("U1", 1000, Direction.EXPENSE, QUIET_HOUR).source == "default"
        assert predictor.predict("U1", 1000, Direction.INCOME, QUIET_HOUR).category == "Bonus"

    def test_ledger_failure_skips_history(self):
        """Should fall through to the default when the ledger can't be read."""
        ledger = Mock(spec=LedgerRepository)
        ledger.list_recent.side_effect = sqlite3.OperationalError("database is locked")

        prediction = CategoryPredictor(ledger).predict("U1", 1000, Direction.EXPENSE, QUIET_HOUR)
        assert prediction.category == "Other"
        assert prediction.confidence == Confidence.LOW


class TestKeywordParser:
    """Test `[sign]amount [text]` parsing."""

    @pytest.fixture
    def keywords(self, db):
        return KeywordRepository(db)

    @pytest.fixture
    def parser(self, db, keywords):
        return KeywordParser(keywords, CategoryPredictor(LedgerRepository(db)))

    def test_leading_category_is_authoritative(self, parser):
        result = parser.parse("U1", "-250 Shopping shoes nike")
        assert result.category == "Shopping"
        assert result.subcategory == "shoes"
        assert result.note == "nike"
        assert result.confidence == Confidence.HIGH
        assert result.needs_confirmation is False

    def test_builtin_keyword_is_medium(self, parser):
        result = parser.parse("U1", "-60 uber home")
        assert result.category == "Transport"
        assert result.subcategory == "Taxi"
        assert result.confidence == Confidence.MEDIUM
        assert result.needs_confirmation is False

    def test_subcategory_keyword(self, parser):
        result = parser.parse("U1", "log 150 Starbucks latte")
        assert result.category == "Food"
        assert result.subcategory == "Afternoon Tea"

    def test_learned_keyword_beats_builtin(self, parser, keywords):
        """Should prefer the user's own mapping and count the hit."""
        keywords.learn("U1", "coffee", "Shopping")

        result = parser.parse("U1", "-300 coffee")
        assert result.category == "Shopping"
        assert result.confidence == Confidence.MEDIUM
        assert keywords.get("U1", "coffee").usage_count == 2

    def test_unknown_text_needs_confirmation(self, parser):
        result = parser.parse("U1", "-80 zxqv")
        assert result.category == "Food"
        assert result.keyword == "zxqv"
        assert result.confidence == Confidence.LOW
        assert result.needs_confirmation is True

    def test_income_defaults_to_other(self, parser):
        result = parser.parse("U1", "+800 zxqv")
        assert result.direction == Direction.INCOME
        assert result.category == "Other"
        assert result.needs_confirmation is True

    def test_income_keyword(self, parser):
        result = parser.parse("U1", "+20000 year end bonus")
        assert result.category == "Bonus"

    def test_amount_only_uses_predictor(self, parser):
        result = parser.parse("U1", "log 15000", at=QUIET_HOUR)
        assert result.category == "Housing"
        assert result.needs_confirmation is True

    def test_no_space_between_amount_and_text(self, parser):
        result = parser.parse("U1", "記100午餐")
        assert result.amount == 100
        assert result.category == "Food"

    def test_zero_and_garbage(self, parser):
        assert parser.parse("U1", "0 lunch") is None
        assert parser.parse("U1", "lunch") is None

    def test_learning_store_failure_falls_back_to_builtin(self):
        """Should skip learned mappings when the store can't be read."""
        keywords = Mock(spec=KeywordRepository)
        keywords.lookup.side_effect = sqlite3.OperationalError("disk I/O error")
        predictor = Mock(spec=CategoryPredictor)
        parser = KeywordParser(keywords, predictor)

        result = parser.parse("U1", "-60 taxi")
        assert result.category == "Transport"

    def test_parse_batch(self, parser):
        results = parser.parse_batch("U1", "-120 lunch\n\nnonsense\n+5000 bonus")
        assert [line for line, _ in results] == ["-120 lunch", "nonsense", "+5000 bonus"]
        assert results[1][1] is None
        assert results[2][1].category == "Bonus"
