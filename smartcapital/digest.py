"""
Daily morning summary pushed to every active user.
"""

import logging
from datetime import datetime, timedelta
from typing import Optional

from smartcapital.data.fetcher import MarketDataGateway
from smartcapital.database.models import Direction
from smartcapital.database.repository import LedgerRepository, PositionRepository
from smartcapital.notifiers.base import Notifier

logger = logging.getLogger(__name__)


def _signed(value: float) -> str:
    return f"+{value:,.0f}" if value >= 0 else f"-{abs(value):,.0f}"


class DailyDigest:
    """Summarizes yesterday's ledger and current holdings per user."""

    def __init__(
        self,
        ledger: LedgerRepository,
        positions: PositionRepository,
        gateway: MarketDataGateway,
        notifier: Notifier,
    ):
        self.ledger = ledger
        self.positions = positions
        self.gateway = gateway
        self.notifier = notifier

    def run(self, now: Optional[datetime] = None) -> int:
        """
        Send the digest to every user with activity.

        Returns:
            Number of users the digest was delivered to
        """
        now = now or datetime.now()
        user_ids = sorted(set(self.ledger.list_user_ids()) | set(self.positions.list_user_ids()))
        logger.info(f"Building daily digest for {len(user_ids)} users")

        sent = 0
        failed = 0
        for user_id in user_ids:
            try:
                summary = self.build_summary(user_id, now)
                if summary is None:
                    logger.debug(f"No activity for {user_id}, skipping digest")
                    continue
                result = self.notifier.send_text(user_id, summary)
                if result.success:
                    sent += 1
                else:
                    failed += 1
                    logger.error(f"Digest for {user_id} not delivered: {result.error}")
            except Exception as e:
                failed += 1
                logger.error(f"Error building digest for {user_id}: {e}")

        logger.info(f"Daily digest complete: {sent} sent, {failed} failed")
        return sent

    def build_summary(self, user_id: str, now: datetime) -> Optional[str]:
        """
        Render one user's digest.

        Returns:
            The message text, or None if the user had no entries yesterday
            and holds no positions
        """
        today = now.replace(hour=0, minute=0, second=0, microsecond=0)
        entries = self.ledger.list_between(user_id, today - timedelta(days=1), today)
        positions = self.positions.list_for_user(user_id)
        if not entries and not positions:
            return None

        lines = ["🌅 Good morning! Here is your summary for yesterday:", ""]

        if entries:
            income = sum(e.amount for e in entries if e.direction == Direction.INCOME)
            expense = sum(e.amount for e in entries if e.direction == Direction.EXPENSE)
            lines += [
                "💰 Ledger",
                f"Income: +${income:,.0f}",
                f"Expense: -${expense:,.0f}",
                f"Net: {_signed(income - expense)}",
                "",
            ]

        if positions:
            quotes = self.gateway.quote_many([p.symbol for p in positions])
            total_value = 0.0
            total_cost = 0.0
            lines.append("📊 Holdings")
            for position in positions:
                stock_data = quotes.get(position.symbol)
                if stock_data is None:
                    lines.append(f"{position.symbol}: {position.quantity:g} shares (price unavailable)")
                    continue
                value = position.quantity * stock_data.current_price
                profit = value - position.cost
                pct = profit / position.cost * 100 if position.cost else 0.0
                total_value += value
                total_cost += position.cost
                marker = "📈" if profit >= 0 else "📉"
                lines.append(
                    f"{position.symbol}: {position.quantity:g} shares "
                    f"{marker} {_signed(profit)} ({pct:.2f}%)"
                )
            total_profit = total_value - total_cost
            total_pct = total_profit / total_cost * 100 if total_cost else 0.0
            lines += [
                "",
                f"Market value: ${total_value:,.0f}",
                f"Unrealized P&L: {_signed(total_profit)} ({total_pct:.2f}%)",
            ]

        return "\n".join(lines).rstrip()
