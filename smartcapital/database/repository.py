"""
Repository classes for the stores the engines read and write.
"""

import json
import logging
import sqlite3
from datetime import datetime
from typing import Any, Optional

from smartcapital.conversation.states import (
    ConversationState,
    Session,
    context_from_dict,
)
from smartcapital.errors import PersistenceError, QuantityValidationError
from .connection import Database
from .models import (
    AlertDirection,
    AlertType,
    Direction,
    KeywordMapping,
    LedgerEntry,
    Notification,
    Position,
    PriceAlert,
    round_shares,
)

logger = logging.getLogger(__name__)


def _write(db: Database, sql: str, params: tuple = ()) -> sqlite3.Cursor:
    """
    Execute a single write statement and commit it.

    Inside Database.transaction() the commit (or rollback) is left to the
    enclosing block.
    """
    with db.lock:
        try:
            cursor = db.connection.cursor()
            cursor.execute(sql, params)
            if not db.in_transaction:
                db.connection.commit()
            return cursor
        except sqlite3.Error as e:
            if not db.in_transaction:
                db.connection.rollback()
            raise PersistenceError(f"Database write failed: {e}") from e


def _parse_timestamp(value: Any) -> Optional[datetime]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


class SessionRepository:
    """Durable per-user conversation state."""

    def __init__(self, db: Database):
        self.db = db

    def get(self, user_id: str) -> Session:
        """Get a user's session, or a fresh idle one if none is stored."""
        with self.db.lock:
            cursor = self.db.connection.cursor()
            cursor.execute(
                "SELECT * FROM conversation_sessions WHERE user_id = ?", (user_id,)
            )
            row = cursor.fetchone()
        if row is None:
            return Session.idle(user_id)
        return self._row_to_session(row)

    def set(self, session: Session) -> None:
        """Persist a session, replacing any previous one for the user."""
        _write(
            self.db,
            """
            INSERT INTO conversation_sessions (user_id, state, context, updated_at)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(user_id) DO UPDATE SET
                state = excluded.state,
                context = excluded.context,
                updated_at = excluded.updated_at
            """,
            (
                session.user_id,
                session.state.value,
                json.dumps(session.context_dict()),
                datetime.now().isoformat(),
            ),
        )

    def reset(self, user_id: str) -> Session:
        """Return a user to IDLE with an empty context."""
        session = Session.idle(user_id)
        self.set(session)
        return session

    def _row_to_session(self, row) -> Session:
        """Convert database row to Session."""
        user_id = row["user_id"]
        try:
            state = ConversationState(row["state"])
            context = context_from_dict(state, json.loads(row["context"] or "{}"))
            return Session(user_id=user_id, state=state, context=context)
        except (TypeError, ValueError) as e:
            logger.warning(f"Discarding unreadable session for {user_id}: {e}")
            return Session.idle(user_id)


class KeywordRepository:
    """Per-user learned keyword to category mappings."""

    def __init__(self, db: Database):
        self.db = db

    def lookup(self, user_id: str, text: str) -> Optional[KeywordMapping]:
        """
        Find the best learned mapping for some free text.

        A mapping matches when its keyword contains the text or the text
        contains its keyword, case-insensitively. The most used mapping wins.
        """
        needle = text.strip().lower()
        if not needle:
            return None
        with self.db.lock:
            cursor = self.db.connection.cursor()
            cursor.execute(
                """
                SELECT * FROM keyword_mappings
                WHERE user_id = ?
                  AND (instr(keyword, ?) > 0 OR instr(?, keyword) > 0)
                ORDER BY usage_count DESC, length(keyword) DESC, id
                LIMIT 1
                """,
                (user_id, needle, needle),
            )
            row = cursor.fetchone()
        if row is None:
            return None
        return self._row_to_mapping(row)

    def touch(self, mapping_id: int) -> None:
        """Count one more use of a mapping."""
        _write(
            self.db,
            "UPDATE keyword_mappings SET usage_count = usage_count + 1 WHERE id = ?",
            (mapping_id,),
        )

    def learn(
        self,
        user_id: str,
        keyword: str,
        category: str,
        subcategory: Optional[str] = None,
    ) -> KeywordMapping:
        """Create a mapping, or re-point an existing one and count the use."""
        keyword = keyword.strip().lower()
        _write(
            self.db,
            """
            INSERT INTO keyword_mappings (user_id, keyword, category, subcategory)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(user_id, keyword) DO UPDATE SET
                category = excluded.category,
                subcategory = excluded.subcategory,
                usage_count = usage_count + 1
            """,
            (user_id, keyword, category, subcategory),
        )
        logger.info(f"Learned keyword '{keyword}' -> {category} for {user_id}")
        return self.get(user_id, keyword)

    def get(self, user_id: str, keyword: str) -> Optional[KeywordMapping]:
        """Get an exact keyword mapping."""
        with self.db.lock:
            cursor = self.db.connection.cursor()
            cursor.execute(
                "SELECT * FROM keyword_mappings WHERE user_id = ? AND keyword = ?",
                (user_id, keyword.strip().lower()),
            )
            row = cursor.fetchone()
        if row is None:
            return None
        return self._row_to_mapping(row)

    def _row_to_mapping(self, row) -> KeywordMapping:
        """Convert database row to KeywordMapping."""
        return KeywordMapping(
            id=row["id"],
            user_id=row["user_id"],
            keyword=row["keyword"],
            category=row["category"],
            subcategory=row["subcategory"],
            usage_count=row["usage_count"],
        )


class LedgerRepository:
    """Recorded income and expense entries."""

    def __init__(self, db: Database):
        self.db = db

    def create(self, entry: LedgerEntry) -> LedgerEntry:
        """Record a new entry."""
        if entry.created_at is None:
            entry.created_at = datetime.now()
        cursor = _write(
            self.db,
            """
            INSERT INTO ledger_entries
            (user_id, direction, amount, category, note, created_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                entry.user_id,
                entry.direction.value,
                entry.amount,
                entry.category,
                entry.note,
                entry.created_at.isoformat(),
            ),
        )
        entry.id = cursor.lastrowid
        return entry

    def list_recent(
        self,
        user_id: str,
        limit: int = 50,
        direction: Optional[Direction] = None,
    ) -> list[LedgerEntry]:
        """Most recent entries first."""
        sql = "SELECT * FROM ledger_entries WHERE user_id = ?"
        params: list[Any] = [user_id]
        if direction is not None:
            sql += " AND direction = ?"
            params.append(direction.value)
        sql += " ORDER BY created_at DESC, id DESC LIMIT ?"
        params.append(limit)

        with self.db.lock:
            cursor = self.db.connection.cursor()
            cursor.execute(sql, params)
            rows = cursor.fetchall()
        return [self._row_to_entry(row) for row in rows]

    def list_between(
        self, user_id: str, start: datetime, end: datetime
    ) -> list[LedgerEntry]:
        """Entries with start <= created_at < end, newest first."""
        with self.db.lock:
            cursor = self.db.connection.cursor()
            cursor.execute(
                """
                SELECT * FROM ledger_entries
                WHERE user_id = ? AND created_at >= ? AND created_at < ?
                ORDER BY created_at DESC, id DESC
                """,
                (user_id, start.isoformat(), end.isoformat()),
            )
            rows = cursor.fetchall()
        return [self._row_to_entry(row) for row in rows]

    def list_user_ids(self) -> list[str]:
        """Users that have recorded anything."""
        with self.db.lock:
            cursor = self.db.connection.cursor()
            cursor.execute(
                "SELECT DISTINCT user_id FROM ledger_entries ORDER BY user_id"
            )
            return [row["user_id"] for row in cursor.fetchall()]

    def _row_to_entry(self, row) -> LedgerEntry:
        """Convert database row to LedgerEntry."""
        return LedgerEntry(
            id=row["id"],
            user_id=row["user_id"],
            direction=Direction(row["direction"]),
            amount=row["amount"],
            category=row["category"],
            note=row["note"],
            created_at=_parse_timestamp(row["created_at"]),
        )


class PositionRepository:
    """Equity holdings per user."""

    def __init__(self, db: Database):
        self.db = db

    def get(self, user_id: str, symbol: str) -> Optional[Position]:
        """Get a user's position in a symbol."""
        with self.db.lock:
            cursor = self.db.connection.cursor()
            cursor.execute(
                "SELECT * FROM positions WHERE user_id = ? AND symbol = ?",
                (user_id, symbol),
            )
            row = cursor.fetchone()
        if row is None:
            return None
        return self._row_to_position(row)

    def list_for_user(self, user_id: str) -> list[Position]:
        """All positions of a user."""
        with self.db.lock:
            cursor = self.db.connection.cursor()
            cursor.execute(
                "SELECT * FROM positions WHERE user_id = ? ORDER BY symbol",
                (user_id,),
            )
            rows = cursor.fetchall()
        return [self._row_to_position(row) for row in rows]

    def list_user_ids(self) -> list[str]:
        """Users holding at least one position."""
        with self.db.lock:
            cursor = self.db.connection.cursor()
            cursor.execute("SELECT DISTINCT user_id FROM positions ORDER BY user_id")
            return [row["user_id"] for row in cursor.fetchall()]

    def add_shares(
        self,
        user_id: str,
        symbol: str,
        quantity: float,
        price: float,
        name: Optional[str] = None,
    ) -> Position:
        """
        Buy shares, folding the lot into a weighted average cost.

        Returns:
            The updated (or newly created) position
        """
        quantity = round_shares(quantity)
        with self.db.lock:
            existing = self.get(user_id, symbol)
            if existing is None:
                position = Position(
                    user_id=user_id,
                    symbol=symbol,
                    name=name,
                    quantity=quantity,
                    avg_price=price,
                )
                cursor = _write(
                    self.db,
                    """
                    INSERT INTO positions (user_id, symbol, name, quantity, avg_price)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (user_id, symbol, name, quantity, price),
                )
                position.id = cursor.lastrowid
                return position

            total_quantity = round_shares(existing.quantity + quantity)
            existing.avg_price = (
                existing.quantity * existing.avg_price + quantity * price
            ) / total_quantity
            existing.quantity = total_quantity
            existing.name = existing.name or name
            _write(
                self.db,
                """
                UPDATE positions SET quantity = ?, avg_price = ?, name = ?
                WHERE id = ?
                """,
                (existing.quantity, existing.avg_price, existing.name, existing.id),
            )
            return existing

    def remove_shares(
        self, user_id: str, symbol: str, quantity: float
    ) -> Optional[Position]:
        """
        Sell shares from a position.

        Returns:
            The reduced position, or None when it was closed out

        Raises:
            QuantityValidationError: If the user holds fewer shares than requested
        """
        quantity = round_shares(quantity)
        with self.db.lock:
            existing = self.get(user_id, symbol)
            held = round_shares(existing.quantity) if existing else 0
            if existing is None or quantity > held:
                raise QuantityValidationError(
                    f"Cannot sell {quantity:g} {symbol}, only {held:g} held"
                )

            remaining = round_shares(held - quantity)
            if remaining <= 0:
                _write(self.db, "DELETE FROM positions WHERE id = ?", (existing.id,))
                return None

            existing.quantity = remaining
            _write(
                self.db,
                "UPDATE positions SET quantity = ? WHERE id = ?",
                (remaining, existing.id),
            )
            return existing

    def _row_to_position(self, row) -> Position:
        """Convert database row to Position."""
        return Position(
            id=row["id"],
            user_id=row["user_id"],
            symbol=row["symbol"],
            name=row["name"],
            quantity=row["quantity"],
            avg_price=row["avg_price"],
        )


class AlertRepository:
    """CRUD and trigger bookkeeping for price alerts."""

    def __init__(self, db: Database):
        self.db = db

    def create(self, alert: PriceAlert) -> PriceAlert:
        """
        Create a new alert.

        Raises:
            AlertValidationError: If the alert lacks a field its type requires
        """
        alert.validate()
        if alert.created_at is None:
            alert.created_at = datetime.now()
        cursor = _write(
            self.db,
            """
            INSERT INTO price_alerts
            (user_id, symbol, name, alert_type, threshold, target_price,
             direction, reference_price, is_active, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                alert.user_id,
                alert.symbol,
                alert.name,
                alert.alert_type.value,
                alert.threshold,
                alert.target_price,
                alert.direction.value if alert.direction else None,
                alert.reference_price,
                1 if alert.is_active else 0,
                alert.created_at.isoformat(),
            ),
        )
        alert.id = cursor.lastrowid
        return alert

    def get_by_id(self, alert_id: int) -> Optional[PriceAlert]:
        """Get alert by ID."""
        with self.db.lock:
            cursor = self.db.connection.cursor()
            cursor.execute("SELECT * FROM price_alerts WHERE id = ?", (alert_id,))
            row = cursor.fetchone()
        if row is None:
            return None
        return self._row_to_alert(row)

    def list_for_user(self, user_id: str, only_active: bool = False) -> list[PriceAlert]:
        """A user's alerts, newest first."""
        sql = "SELECT * FROM price_alerts WHERE user_id = ?"
        if only_active:
            sql += " AND is_active = 1"
        sql += " ORDER BY created_at DESC, id DESC"
        with self.db.lock:
            cursor = self.db.connection.cursor()
            cursor.execute(sql, (user_id,))
            rows = cursor.fetchall()
        return [self._row_to_alert(row) for row in rows]

    def list_active(self) -> list[PriceAlert]:
        """Every active alert across all users."""
        with self.db.lock:
            cursor = self.db.connection.cursor()
            cursor.execute("SELECT * FROM price_alerts WHERE is_active = 1 ORDER BY id")
            rows = cursor.fetchall()
        return [self._row_to_alert(row) for row in rows]

    def set_active(self, alert_id: int, is_active: bool) -> None:
        """Activate or deactivate an alert."""
        _write(
            self.db,
            "UPDATE price_alerts SET is_active = ? WHERE id = ?",
            (1 if is_active else 0, alert_id),
        )

    def delete(self, alert_id: int) -> None:
        """Delete an alert."""
        _write(self.db, "DELETE FROM price_alerts WHERE id = ?", (alert_id,))

    def record_trigger(self, alert_id: int, triggered_at: datetime) -> None:
        """Stamp a firing and bump the trigger count."""
        _write(
            self.db,
            """
            UPDATE price_alerts
            SET last_triggered = ?, trigger_count = trigger_count + 1
            WHERE id = ?
            """,
            (triggered_at.isoformat(), alert_id),
        )

    def _row_to_alert(self, row) -> PriceAlert:
        """Convert database row to PriceAlert."""
        return PriceAlert(
            id=row["id"],
            user_id=row["user_id"],
            symbol=row["symbol"],
            name=row["name"],
            alert_type=AlertType(row["alert_type"]),
            threshold=row["threshold"],
            target_price=row["target_price"],
            direction=AlertDirection(row["direction"]) if row["direction"] else None,
            reference_price=row["reference_price"],
            is_active=bool(row["is_active"]),
            last_triggered=_parse_timestamp(row["last_triggered"]),
            trigger_count=row["trigger_count"],
            created_at=_parse_timestamp(row["created_at"]),
        )


class NotificationRepository:
    """In-app notifications shown alongside chat pushes."""

    def __init__(self, db: Database):
        self.db = db

    def create(self, notification: Notification) -> Notification:
        """Record a notification."""
        if notification.created_at is None:
            notification.created_at = datetime.now()
        cursor = _write(
            self.db,
            """
            INSERT INTO notifications (user_id, kind, title, message, is_read, created_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                notification.user_id,
                notification.kind,
                notification.title,
                notification.message,
                1 if notification.is_read else 0,
                notification.created_at.isoformat(),
            ),
        )
        notification.id = cursor.lastrowid
        return notification

    def list_for_user(
        self, user_id: str, unread_only: bool = False, limit: int = 50
    ) -> list[Notification]:
        """A user's notifications, newest first."""
        sql = "SELECT * FROM notifications WHERE user_id = ?"
        if unread_only:
            sql += " AND is_read = 0"
        sql += " ORDER BY created_at DESC, id DESC LIMIT ?"
        with self.db.lock:
            cursor = self.db.connection.cursor()
            cursor.execute(sql, (user_id, limit))
            rows = cursor.fetchall()
        return [self._row_to_notification(row) for row in rows]

    def mark_read(self, notification_id: int) -> None:
        """Mark a notification as read."""
        _write(
            self.db,
            "UPDATE notifications SET is_read = 1 WHERE id = ?",
            (notification_id,),
        )

    def _row_to_notification(self, row) -> Notification:
        """Convert database row to Notification."""
        return Notification(
            id=row["id"],
            user_id=row["user_id"],
            kind=row["kind"],
            title=row["title"],
            message=row["message"],
            is_read=bool(row["is_read"]),
            created_at=_parse_timestamp(row["created_at"]),
        )
