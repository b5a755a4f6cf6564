"""
Database layer tests.
Tests for SQLite connection, schema creation, and the repositories.
"""

import pytest
import sqlite3
from datetime import datetime, timedelta
from pathlib import Path

from smartcapital.conversation.states import (
    ConversationState,
    PendingBuy,
    PendingConfirmation,
    Session,
)
from smartcapital.database.connection import Database
from smartcapital.database.models import (
    AlertDirection,
    AlertType,
    Direction,
    LedgerEntry,
    Notification,
    PriceAlert,
)
from smartcapital.database.repository import (
    AlertRepository,
    KeywordRepository,
    LedgerRepository,
    NotificationRepository,
    PositionRepository,
    SessionRepository,
)
from smartcapital.errors import (
    AlertValidationError,
    PersistenceError,
    QuantityValidationError,
)


class TestDatabaseConnection:
    """Test database connection and initialization."""

    def test_create_in_memory_database(self):
        """Should create an in-memory SQLite database."""
        db = Database(":memory:")
        assert db.connection is not None

    def test_create_file_database(self, tmp_path: Path):
        """Should create a file-based SQLite database, including parent dirs."""
        db_path = tmp_path / "nested" / "test.db"
        Database(str(db_path))
        assert db_path.exists()

    def test_initialize_schema(self, db: Database):
        """Should create all required tables on initialization."""
        cursor = db.connection.cursor()
        cursor.execute("SELECT name FROM sqlite_master WHERE type='table'")
        tables = {row[0] for row in cursor.fetchall()}

        expected_tables = {
            "conversation_sessions",
            "keyword_mappings",
            "ledger_entries",
            "positions",
            "price_alerts",
            "notifications",
        }
        assert expected_tables.issubset(tables)

    def test_initialize_is_idempotent(self, db: Database):
        """Should allow initialize to run on an existing schema."""
        db.initialize()

    def test_close_connection(self):
        """Should properly close database connection."""
        db = Database(":memory:")
        db.close()
        with pytest.raises(sqlite3.ProgrammingError):
            db.connection.execute("SELECT 1")


class TestTransaction:
    """Test grouping repository writes into one commit."""

    def test_commits_all_writes(self, db: Database):
        """Should keep every write made inside the block."""
        ledger = LedgerRepository(db)
        positions = PositionRepository(db)

        with db.transaction():
            positions.add_shares("U1", "TSLA", 10, 250.0)
            ledger.create(
                LedgerEntry(user_id="U1", direction=Direction.EXPENSE, amount=2500, category="Investment")
            )
            assert db.in_transaction

        assert not db.in_transaction
        db.connection.rollback()
        assert positions.get("U1", "TSLA").quantity == 10
        assert len(ledger.list_recent("U1")) == 1

    def test_rolls_back_all_writes_on_error(self, db: Database):
        """Should discard earlier writes when a later one fails."""
        positions = PositionRepository(db)
        sessions = SessionRepository(db)

        with pytest.raises(RuntimeError):
            with db.transaction():
                positions.add_shares("U1", "TSLA", 10, 250.0)
                sessions.reset("U1")
                raise RuntimeError("ledger write failed")

        assert not db.in_transaction
        assert positions.get("U1", "TSLA") is None

    def test_nested_block_joins_outer(self, db: Database):
        """Should leave the commit to the outermost block."""
        positions = PositionRepository(db)

        with pytest.raises(PersistenceError):
            with db.transaction():
                with db.transaction():
                    positions.add_shares("U1", "TSLA", 10, 250.0)
                raise PersistenceError("disk full")

        assert positions.get("U1", "TSLA") is None

    def test_failed_statement_rolls_back_block(self, db: Database):
        """Should surface a failed write as PersistenceError and undo the block."""
        positions = PositionRepository(db)
        sessions = SessionRepository(db)
        db.connection.execute("DROP TABLE conversation_sessions")

        with pytest.raises(PersistenceError):
            with db.transaction():
                positions.add_shares("U1", "TSLA", 10, 250.0)
                sessions.reset("U1")

        assert positions.get("U1", "TSLA") is None


class TestSessionRepository:
    """Test conversation session persistence."""

    @pytest.fixture
    def repo(self, db):
        return SessionRepository(db)

    def test_missing_session_is_idle(self, repo: SessionRepository):
        """Should return a fresh IDLE session for an unknown user."""
        session = repo.get("U1")
        assert session.state == ConversationState.IDLE
        assert session.context is None
        assert session.context_dict() == {}

    def test_round_trip_buy_context(self, repo: SessionRepository):
        """Should persist and restore a typed context."""
        repo.set(
            Session(
                user_id="U1",
                state=ConversationState.WAITING_BUY_QUANTITY,
                context=PendingBuy(symbol="TSLA", price=250.0, name="Tesla"),
            )
        )

        session = repo.get("U1")
        assert session.state == ConversationState.WAITING_BUY_QUANTITY
        assert session.context == PendingBuy(symbol="TSLA", price=250.0, name="Tesla")

    def test_round_trip_direction_enum(self, repo: SessionRepository):
        """Should restore the direction field as an enum."""
        repo.set(
            Session(
                user_id="U1",
                state=ConversationState.WAITING_CATEGORY_CONFIRMATION,
                context=PendingConfirmation(
                    amount=80, direction=Direction.EXPENSE, keyword="kale", category="Food"
                ),
            )
        )
        assert repo.get("U1").context.direction == Direction.EXPENSE

    def test_set_overwrites(self, repo: SessionRepository):
        """Should keep exactly one session per user."""
        repo.set(
            Session(
                user_id="U1",
                state=ConversationState.WAITING_BUY_QUANTITY,
                context=PendingBuy(symbol="TSLA", price=250.0),
            )
        )
        repo.reset("U1")

        session = repo.get("U1")
        assert session.state == ConversationState.IDLE
        cursor = repo.db.connection.cursor()
        cursor.execute("SELECT COUNT(*) FROM conversation_sessions WHERE user_id = 'U1'")
        assert cursor.fetchone()[0] == 1

    def test_idle_persists_empty_context(self, repo: SessionRepository):
        """Should store {} for IDLE sessions."""
        repo.reset("U1")
        cursor = repo.db.connection.cursor()
        cursor.execute("SELECT context FROM conversation_sessions WHERE user_id = 'U1'")
        assert cursor.fetchone()[0] == "{}"

    def test_unreadable_context_falls_back_to_idle(self, repo: SessionRepository):
        """Should discard a stored context that doesn't fit its state."""
        cursor = repo.db.connection.cursor()
        cursor.execute(
            "INSERT INTO conversation_sessions (user_id, state, context) VALUES (?, ?, ?)",
            ("U1", "WAITING_BUY_QUANTITY", '{"amount": 5}'),
        )
        repo.db.connection.commit()

        assert repo.get("U1").state == ConversationState.IDLE

    def test_write_failure_raises_persistence_error(self, repo: SessionRepository):
        """Should surface store failures as PersistenceError."""
        repo.db.connection.execute("DROP TABLE conversation_sessions")
        with pytest.raises(PersistenceError):
            repo.reset("U1")


class TestKeywordRepository:
    """Test learned keyword mappings."""

    @pytest.fixture
    def repo(self, db):
        return KeywordRepository(db)

    def test_learn_creates_mapping(self, repo: KeywordRepository):
        """Should store keywords lower-cased with usage 1."""
        mapping = repo.learn("U1", "Kale Salad", "Food", "Lunch")
        assert mapping.keyword == "kale salad"
        assert mapping.category == "Food"
        assert mapping.subcategory == "Lunch"
        assert mapping.usage_count == 1

    def test_learn_again_increments_usage(self, repo: KeywordRepository):
        """Should upsert and count repeat confirmations."""
        repo.learn("U1", "kale", "Food")
        mapping = repo.learn("U1", "kale", "Shopping")
        assert mapping.usage_count == 2
        assert mapping.category == "Shopping"

    def test_lookup_is_case_insensitive_substring(self, repo: KeywordRepository):
        """Should match when either side contains the other."""
        repo.learn("U1", "gym membership", "Entertainment")

        assert repo.lookup("U1", "GYM").category == "Entertainment"
        assert repo.lookup("U1", "monthly gym membership fee").category == "Entertainment"
        assert repo.lookup("U1", "pool") is None

    def test_lookup_prefers_higher_usage(self, repo: KeywordRepository):
        """Should rank matches by usage count."""
        repo.learn("U1", "coffee beans", "Shopping")
        repo.learn("U1", "coffee shop", "Food")
        repo.learn("U1", "coffee shop", "Food")

        assert repo.lookup("U1", "coffee").category == "Food"

    def test_lookup_scoped_to_user(self, repo: KeywordRepository):
        """Should not see other users' mappings."""
        repo.learn("U1", "kale", "Food")
        assert repo.lookup("U2", "kale") is None

    def test_touch_increments_usage(self, repo: KeywordRepository):
        """Should count a lookup hit."""
        mapping = repo.learn("U1", "kale", "Food")
        repo.touch(mapping.id)
        assert repo.get("U1", "kale").usage_count == 2


class TestLedgerRepository:
    """Test ledger entries."""

    @pytest.fixture
    def repo(self, db):
        return LedgerRepository(db)

    def test_create_entry(self, repo: LedgerRepository):
        """Should assign id and timestamp."""
        entry = repo.create(
            LedgerEntry(user_id="U1", direction=Direction.EXPENSE, amount=120, category="Food")
        )
        assert entry.id is not None
        assert entry.created_at is not None

    def test_list_recent_newest_first(self, repo: LedgerRepository):
        """Should return most recent entries first, bounded by limit."""
        now = datetime.now()
        for i in range(5):
            repo.create(
                LedgerEntry(
                    user_id="U1",
                    direction=Direction.EXPENSE,
                    amount=100 + i,
                    category="Food",
                    created_at=now - timedelta(hours=5 - i),
                )
            )

        recent = repo.list_recent("U1", limit=3)
        assert [e.amount for e in recent] == [104, 103, 102]

    def test_list_recent_by_direction(self, repo: LedgerRepository):
        """Should filter by direction."""
        repo.create(LedgerEntry(user_id="U1", direction=Direction.EXPENSE, amount=1, category="Food"))
        repo.create(LedgerEntry(user_id="U1", direction=Direction.INCOME, amount=2, category="Salary"))

        entries = repo.list_recent("U1", direction=Direction.INCOME)
        assert [e.category for e in entries] == ["Salary"]

    def test_list_between(self, repo: LedgerRepository):
        """Should include start and exclude end."""
        start = datetime(2026, 3, 1)
        repo.create(LedgerEntry(user_id="U1", direction=Direction.EXPENSE, amount=1, category="Food", created_at=start))
        repo.create(LedgerEntry(user_id="U1", direction=Direction.EXPENSE, amount=2, category="Food", created_at=start + timedelta(days=1)))

        entries = repo.list_between("U1", start, start + timedelta(days=1))
        assert [e.amount for e in entries] == [1]

    def test_list_user_ids(self, repo: LedgerRepository):
        """Should list each user once."""
        for user_id in ("U2", "U1", "U2"):
            repo.create(LedgerEntry(user_id=user_id, direction=Direction.EXPENSE, amount=1, category="Food"))
        assert repo.list_user_ids() == ["U1", "U2"]


class TestPositionRepository:
    """Test holdings bookkeeping."""

    @pytest.fixture
    def repo(self, db):
        return PositionRepository(db)

    def test_first_buy_creates_position(self, repo: PositionRepository):
        """Should create a position at the buy price."""
        position = repo.add_shares("U1", "TSLA", 10, 250.0, "Tesla")
        assert position.quantity == 10
        assert position.avg_price == 250.0
        assert repo.get("U1", "TSLA").name == "Tesla"

    def test_weighted_average_cost(self, repo: PositionRepository):
        """Should fold a second lot into a weighted average."""
        repo.add_shares("U1", "TSLA", 10, 200.0)
        position = repo.add_shares("U1", "TSLA", 30, 300.0)

        assert position.quantity == 40
        assert position.avg_price == pytest.approx((10 * 200 + 30 * 300) / 40)
        assert repo.get("U1", "TSLA").avg_price == pytest.approx(275.0)

    def test_partial_sell_keeps_average(self, repo: PositionRepository):
        """Should reduce quantity without touching the cost basis."""
        repo.add_shares("U1", "TSLA", 10, 200.0)
        remaining = repo.remove_shares("U1", "TSLA", 4)

        assert remaining.quantity == 6
        assert remaining.avg_price == 200.0

    def test_sell_all_removes_position(self, repo: PositionRepository):
        """Should delete a position sold down to exactly zero."""
        repo.add_shares("U1", "TSLA", 10, 200.0)
        assert repo.remove_shares("U1", "TSLA", 10) is None
        assert repo.get("U1", "TSLA") is None

    def test_fractional_lots_sell_down_to_zero(self, repo: PositionRepository):
        """Should close a fractional position sold off in pieces."""
        repo.add_shares("U1", "TSLA", 0.1, 200.0)
        repo.add_shares("U1", "TSLA", 0.2, 200.0)
        assert repo.get("U1", "TSLA").quantity == 0.3

        assert repo.remove_shares("U1", "TSLA", 0.1).quantity == 0.2
        assert repo.remove_shares("U1", "TSLA", 0.2) is None
        assert repo.get("U1", "TSLA") is None

    def test_oversell_rejected(self, repo: PositionRepository):
        """Should refuse to sell more than held and leave the position alone."""
        repo.add_shares("U1", "TSLA", 10, 200.0)
        with pytest.raises(QuantityValidationError):
            repo.remove_shares("U1", "TSLA", 11)
        assert repo.get("U1", "TSLA").quantity == 10

    def test_sell_unknown_symbol_rejected(self, repo: PositionRepository):
        """Should refuse to sell a symbol that isn't held."""
        with pytest.raises(QuantityValidationError):
            repo.remove_shares("U1", "AAPL", 1)

    def test_list_for_user(self, repo: PositionRepository):
        """Should list positions by symbol."""
        repo.add_shares("U1", "TSLA", 1, 1.0)
        repo.add_shares("U1", "AAPL", 1, 1.0)
        repo.add_shares("U2", "MSFT", 1, 1.0)

        assert [p.symbol for p in repo.list_for_user("U1")] == ["AAPL", "TSLA"]
        assert repo.list_user_ids() == ["U1", "U2"]


class TestAlertRepository:
    """Test price alert CRUD and trigger bookkeeping."""

    @pytest.fixture
    def repo(self, db):
        return AlertRepository(db)

    @pytest.fixture
    def alert(self):
        return PriceAlert(
            user_id="U1",
            symbol="TSLA",
            alert_type=AlertType.STOP_LOSS,
            threshold=10,
            reference_price=200.0,
        )

    def test_create_and_get(self, repo: AlertRepository, alert: PriceAlert):
        """Should create an alert with fresh bookkeeping."""
        created = repo.create(alert)
        fetched = repo.get_by_id(created.id)

        assert fetched.alert_type == AlertType.STOP_LOSS
        assert fetched.reference_price == 200.0
        assert fetched.is_active is True
        assert fetched.trigger_count == 0
        assert fetched.last_triggered is None

    def test_create_validates(self, repo: AlertRepository):
        """Should reject an alert missing a required field."""
        with pytest.raises(AlertValidationError):
            repo.create(PriceAlert(user_id="U1", symbol="TSLA", alert_type=AlertType.TARGET_PRICE))

    def test_daily_change_defaults_to_both(self, repo: AlertRepository):
        """Should default DAILY_CHANGE direction to BOTH."""
        created = repo.create(
            PriceAlert(user_id="U1", symbol="TSLA", alert_type=AlertType.DAILY_CHANGE, threshold=5)
        )
        assert repo.get_by_id(created.id).direction == AlertDirection.BOTH

    def test_list_active_excludes_disabled(self, repo: AlertRepository, alert: PriceAlert):
        """Should only list active alerts."""
        created = repo.create(alert)
        repo.set_active(created.id, False)

        assert repo.list_active() == []
        assert len(repo.list_for_user("U1")) == 1
        assert repo.list_for_user("U1", only_active=True) == []

    def test_record_trigger(self, repo: AlertRepository, alert: PriceAlert):
        """Should stamp last_triggered and increment the count."""
        created = repo.create(alert)
        fired_at = datetime(2026, 5, 4, 10, 30)

        repo.record_trigger(created.id, fired_at)
        repo.record_trigger(created.id, fired_at + timedelta(minutes=5))

        fetched = repo.get_by_id(created.id)
        assert fetched.trigger_count == 2
        assert fetched.last_triggered == fired_at + timedelta(minutes=5)

    def test_delete(self, repo: AlertRepository, alert: PriceAlert):
        """Should delete an alert."""
        created = repo.create(alert)
        repo.delete(created.id)
        assert repo.get_by_id(created.id) is None


class TestNotificationRepository:
    """Test in-app notifications."""

    def test_create_and_list(self, db):
        """Should list newest first and support read flags."""
        repo = NotificationRepository(db)
        first = repo.create(Notification(user_id="U1", kind="alert", title="A", message="one"))
        repo.create(Notification(user_id="U1", kind="alert", title="B", message="two"))

        assert [n.title for n in repo.list_for_user("U1")] == ["B", "A"]

        repo.mark_read(first.id)
        assert [n.title for n in repo.list_for_user("U1", unread_only=True)] == ["B"]
