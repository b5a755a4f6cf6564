"""
Conversation engine: turns chat messages into ledger and portfolio actions.

Each user has one persisted session. While a session is IDLE, messages are
classified and dispatched by intent. Any other state is waiting for one
specific reply (a category, a share quantity, a yes/no) and only that reply
is accepted; everything else gets a re-prompt and the state is kept.
"""

import logging
import re
from datetime import datetime
from typing import Callable, Optional

from smartcapital.data.fetcher import MarketDataGateway
from smartcapital.database.models import Direction, LedgerEntry, round_shares
from smartcapital.database.repository import (
    KeywordRepository,
    LedgerRepository,
    PositionRepository,
    SessionRepository,
)
from smartcapital.errors import PersistenceError, QuantityValidationError, QuoteUnavailableError
from smartcapital.notifiers.base import OutboundMessage
from .categories import (
    INVESTMENT,
    CategoryPredictor,
    KeywordParser,
    ParseResult,
    category_menu,
    resolve_category,
)
from .intents import (
    BuyAction,
    ExpenseAmount,
    ExpenseCategoryLabel,
    Help,
    IncomeAmount,
    IncomeCategoryLabel,
    Intent,
    PortfolioQuery,
    SellAction,
    SmartEntry,
    StockQuery,
    Unrecognized,
    WebsiteLink,
    classify,
    is_cancel,
)
from .locks import KeyedLock
from .states import (
    ConversationState,
    PendingBuy,
    PendingConfirmation,
    PendingEntry,
    PendingSelection,
    PendingSell,
    Session,
)

logger = logging.getLogger(__name__)

MAX_QUANTITY = 1_000_000

_QUANTITY = re.compile(r"^\d+(\.\d+)?$")
_LABEL_WITH_AMOUNT = re.compile(r"^(?P<label>\D+?)\s*[+-]?\d+(?:\.\d+)?$")

YES_WORDS = frozenset({"yes", "y", "ok", "是", "對", "確認", "好"})
NO_WORDS = frozenset({"no", "n", "否", "不是", "不對", "不"})

HELP_TEXT = """📖 SmartCapital help

【Ledger】
• Expense: send "-120" or "120"
• Income: send "+5000"
→ then pick a category from the menu
• Quick entry: "-120 lunch", "log +5000 bonus", "飲食 120"
• Several entries: "log" followed by one entry per line

【Investing】
• Quote: send a ticker ("TSLA") or "quote 2330"
• Trade: "buy TSLA" / "sell TSLA", then the number of shares

【Other】
• Holdings: "portfolio"
• Web app: "web"
• Stop any step: "cancel"
"""

CANCELLED_TEXT = "❎ Cancelled. Send a new message whenever you're ready."
UNRECOGNIZED_TEXT = "🤔 Sorry, I didn't understand that. Type \"help\" to see what I can do."


def parse_quantity(text: str) -> float:
    """
    Parse a share quantity reply.

    Raises:
        QuantityValidationError: If the text is not a number in (0, 1,000,000]
    """
    text = text.strip()
    if not _QUANTITY.match(text):
        raise QuantityValidationError("Please enter a number of shares, e.g. 10 or 0.5")
    quantity = round_shares(float(text))
    if quantity <= 0:
        raise QuantityValidationError("Quantity must be greater than 0")
    if quantity > MAX_QUANTITY:
        raise QuantityValidationError("That quantity is too large, please check it")
    return quantity


def _money(value: float) -> str:
    return f"${value:,.2f}"


class ConversationEngine:
    """Processes inbound chat messages, one user at a time."""

    def __init__(
        self,
        sessions: SessionRepository,
        ledger: LedgerRepository,
        positions: PositionRepository,
        keywords: KeywordRepository,
        gateway: MarketDataGateway,
        web_url: str = "",
        predictor: Optional[CategoryPredictor] = None,
        parser: Optional[KeywordParser] = None,
        locks: Optional[KeyedLock] = None,
    ):
        self.sessions = sessions
        self.ledger = ledger
        self.positions = positions
        self.keywords = keywords
        self.gateway = gateway
        self.web_url = web_url
        self.predictor = predictor or CategoryPredictor(ledger)
        self.parser = parser or KeywordParser(keywords, self.predictor)
        self.locks = locks or KeyedLock()

        self._intent_handlers: dict[type, Callable[[str, Intent], list[OutboundMessage]]] = {
            ExpenseAmount: self._on_amount,
            IncomeAmount: self._on_amount,
            ExpenseCategoryLabel: self._on_category_label,
            IncomeCategoryLabel: self._on_category_label,
            StockQuery: self._on_stock_query,
            BuyAction: self._on_buy,
            SellAction: self._on_sell,
            SmartEntry: self._on_smart_entry,
            PortfolioQuery: self._on_portfolio,
            Help: lambda user_id, intent: [OutboundMessage(HELP_TEXT.strip())],
            WebsiteLink: self._on_website,
            Unrecognized: lambda user_id, intent: [OutboundMessage(UNRECOGNIZED_TEXT)],
        }
        self._state_handlers: dict[
            ConversationState, Callable[[Session, str], list[OutboundMessage]]
        ] = {
            ConversationState.WAITING_EXPENSE_CATEGORY: self._on_category_reply,
            ConversationState.WAITING_INCOME_CATEGORY: self._on_category_reply,
            ConversationState.WAITING_BUY_QUANTITY: self._on_buy_quantity,
            ConversationState.WAITING_SELL_QUANTITY: self._on_sell_quantity,
            ConversationState.WAITING_CATEGORY_CONFIRMATION: self._on_confirmation_reply,
            ConversationState.WAITING_CATEGORY_SELECTION: self._on_selection_reply,
        }

    def process(self, user_id: str, text: str) -> list[OutboundMessage]:
        """
        Handle one inbound message.

        Returns:
            Replies to send back, in order

        Raises:
            PersistenceError: If the session or ledger could not be saved
        """
        with self.locks.hold(user_id):
            text = text.strip()
            if is_cancel(text):
                self.sessions.reset(user_id)
                return [OutboundMessage(CANCELLED_TEXT)]

            session = self.sessions.get(user_id)
            if session.state == ConversationState.IDLE:
                intent = classify(text)
                logger.debug(f"{user_id}: {type(intent).__name__}")
                return self._intent_handlers[type(intent)](user_id, intent)

            return self._state_handlers[session.state](session, text)

    # Transitions

    def _wait(self, user_id: str, state: ConversationState, context) -> None:
        self.sessions.set(Session(user_id=user_id, state=state, context=context))

    def _finish(self, user_id: str) -> None:
        self.sessions.reset(user_id)

    def _transaction(self):
        """Commit a flow's writes and its return to IDLE together, or none of them."""
        return self.ledger.db.transaction()

    # Ledger

    def _category_prompt(
        self, direction: Direction, amount: float, suggested: Optional[str] = None
    ) -> OutboundMessage:
        menu = category_menu(direction, suggested)
        kind = "Income" if direction == Direction.INCOME else "Expense"
        lines = [f"{'💰' if direction == Direction.INCOME else '💸'} {kind} {_money(amount)}"]
        if suggested:
            lines.append(f"Suggested category: {suggested}")
        lines.append("Pick a category:")
        lines += [f"{i}. {category}" for i, category in enumerate(menu, start=1)]
        return OutboundMessage("\n".join(lines), quick_replies=menu)

    def _on_amount(self, user_id: str, intent: Intent) -> list[OutboundMessage]:
        if isinstance(intent, IncomeAmount):
            direction = Direction.INCOME
            state = ConversationState.WAITING_INCOME_CATEGORY
        else:
            direction = Direction.EXPENSE
            state = ConversationState.WAITING_EXPENSE_CATEGORY

        prediction = self.predictor.predict(user_id, intent.amount, direction)
        self._wait(
            user_id,
            state,
            PendingEntry(amount=intent.amount, suggested_category=prediction.category),
        )
        return [self._category_prompt(direction, intent.amount, prediction.category)]

    def _on_category_label(self, user_id: str, intent: Intent) -> list[OutboundMessage]:
        direction = (
            Direction.INCOME if isinstance(intent, IncomeCategoryLabel) else Direction.EXPENSE
        )
        return [self._record(user_id, direction, intent.amount, intent.category)]

    def _on_category_reply(self, session: Session, text: str) -> list[OutboundMessage]:
        direction = (
            Direction.INCOME
            if session.state == ConversationState.WAITING_INCOME_CATEGORY
            else Direction.EXPENSE
        )
        pending: PendingEntry = session.context
        menu = category_menu(direction, pending.suggested_category)
        category = self._pick_category(text, direction, menu)
        if category is None:
            return [
                OutboundMessage("Please choose one of the categories below, or type \"cancel\"."),
                self._category_prompt(direction, pending.amount, pending.suggested_category),
            ]

        with self._transaction():
            reply = self._record(session.user_id, direction, pending.amount, category, pending.note)
            self._finish(session.user_id)
        return [reply]

    def _pick_category(
        self, text: str, direction: Direction, menu: list[str]
    ) -> Optional[str]:
        """A menu number, a category name or alias, or a name followed by an amount."""
        text = text.strip()
        if text.isdigit():
            index = int(text)
            return menu[index - 1] if 1 <= index <= len(menu) else None
        category = resolve_category(text, direction)
        if category:
            return category
        match = _LABEL_WITH_AMOUNT.match(text)
        if match:
            return resolve_category(match.group("label"), direction)
        return None

    def _record(
        self,
        user_id: str,
        direction: Direction,
        amount: float,
        category: str,
        note: Optional[str] = None,
    ) -> OutboundMessage:
        entry = self.ledger.create(
            LedgerEntry(
                user_id=user_id,
                direction=direction,
                amount=amount,
                category=category,
                note=note,
            )
        )
        logger.info(f"Recorded {direction.value} {amount:g} ({category}) for {user_id}")
        income, expense = self._month_totals(user_id, entry.created_at)
        kind = "income" if direction == Direction.INCOME else "expense"
        lines = [f"✅ Recorded {kind} {_money(amount)} under {category}"]
        if note:
            lines.append(f"📝 {note}")
        lines.append(f"This month: income {_money(income)}, expense {_money(expense)}")
        return OutboundMessage("\n".join(lines))

    def _month_totals(self, user_id: str, now: datetime) -> tuple[float, float]:
        start = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
        if start.month == 12:
            end = start.replace(year=start.year + 1, month=1)
        else:
            end = start.replace(month=start.month + 1)
        entries = self.ledger.list_between(user_id, start, end)
        income = sum(e.amount for e in entries if e.direction == Direction.INCOME)
        expense = sum(e.amount for e in entries if e.direction == Direction.EXPENSE)
        return income, expense

    # Keyword entries

    def _on_smart_entry(self, user_id: str, intent: Intent) -> list[OutboundMessage]:
        lines = intent.lines
        if len(lines) > 1:
            return [self._record_batch(user_id, lines)]

        result = self.parser.parse(user_id, lines[0])
        if result is None:
            return [OutboundMessage(UNRECOGNIZED_TEXT)]

        if not result.needs_confirmation:
            return [self._record_parsed(user_id, result)]

        self._wait(
            user_id,
            ConversationState.WAITING_CATEGORY_CONFIRMATION,
            PendingConfirmation(
                amount=result.amount,
                direction=result.direction,
                keyword=result.keyword,
                category=result.category,
                subcategory=result.subcategory,
                note=result.note,
            ),
        )
        label = result.category
        if result.subcategory:
            label += f" > {result.subcategory}"
        text = f"💰 {_money(result.amount)}\n📁 {label}"
        if result.note:
            text += f"\n📝 {result.note}"
        text += "\n\n⚠️ Is this category right? (yes/no)"
        return [OutboundMessage(text, quick_replies=["yes", "no"])]

    def _record_parsed(self, user_id: str, result: ParseResult) -> OutboundMessage:
        return self._record(
            user_id,
            result.direction,
            result.amount,
            result.category,
            result.note or result.subcategory,
        )

    def _record_batch(self, user_id: str, lines: list[str]) -> OutboundMessage:
        summary = [f"📝 Recorded entries ({len(lines)} lines):"]
        parsed = self.parser.parse_batch(user_id, "\n".join(lines))
        with self._transaction():
            for line, result in parsed:
                if result is None:
                    summary.append(f"✗ {line}: not understood")
                    continue
                self.ledger.create(
                    LedgerEntry(
                        user_id=user_id,
                        direction=result.direction,
                        amount=result.amount,
                        category=result.category,
                        note=result.note or result.subcategory,
                    )
                )
                sign = "+" if result.direction == Direction.INCOME else "-"
                summary.append(f"✓ {sign}{_money(result.amount)} {result.category}")
        return OutboundMessage("\n".join(summary))

    def _on_confirmation_reply(self, session: Session, text: str) -> list[OutboundMessage]:
        pending: PendingConfirmation = session.context
        answer = text.strip().lower()

        if answer in YES_WORDS:
            self._learn(session.user_id, pending.keyword, pending.category, pending.subcategory)
            with self._transaction():
                reply = self._record(
                    session.user_id,
                    pending.direction,
                    pending.amount,
                    pending.category,
                    pending.note or pending.subcategory,
                )
                self._finish(session.user_id)
            return [reply]

        if answer in NO_WORDS:
            self._wait(
                session.user_id,
                ConversationState.WAITING_CATEGORY_SELECTION,
                PendingSelection(
                    amount=pending.amount,
                    direction=pending.direction,
                    keyword=pending.keyword,
                ),
            )
            return [self._category_prompt(pending.direction, pending.amount)]

        return [OutboundMessage("Please answer \"yes\" or \"no\", or type \"cancel\".", quick_replies=["yes", "no"])]

    def _on_selection_reply(self, session: Session, text: str) -> list[OutboundMessage]:
        pending: PendingSelection = session.context
        category = self._pick_category(text, pending.direction, category_menu(pending.direction))
        if category is None:
            return [
                OutboundMessage("Please choose one of the categories below, or type \"cancel\"."),
                self._category_prompt(pending.direction, pending.amount),
            ]

        self._learn(session.user_id, pending.keyword, category)
        with self._transaction():
            reply = self._record(
                session.user_id, pending.direction, pending.amount, category, pending.keyword or None
            )
            self._finish(session.user_id)
        return [reply]

    def _learn(
        self, user_id: str, keyword: str, category: str, subcategory: Optional[str] = None
    ) -> None:
        if not keyword:
            return
        try:
            self.keywords.learn(user_id, keyword, category, subcategory)
        except PersistenceError as e:
            logger.warning(f"Could not learn keyword '{keyword}' for {user_id}: {e}")

    # Stocks

    def _on_stock_query(self, user_id: str, intent: Intent) -> list[OutboundMessage]:
        try:
            stock_data = self.gateway.quote(intent.symbol)
        except QuoteUnavailableError as e:
            logger.warning(str(e))
            return [OutboundMessage(f"❌ Couldn't get a quote for {intent.symbol}. Please check the symbol and try again.")]

        arrow = "📈" if stock_data.change >= 0 else "📉"
        lines = [
            f"{stock_data.display_name} ({stock_data.ticker})",
            f"Price: {stock_data.current_price:,.2f} {stock_data.currency}",
            f"{arrow} {stock_data.change:+,.2f} ({stock_data.daily_change_pct:+.2f}%)",
        ]
        quick_replies = [f"buy {stock_data.ticker}"]

        position = self.positions.get(user_id, intent.symbol)
        if position:
            value = position.quantity * stock_data.current_price
            profit = value - position.cost
            pct = profit / position.cost * 100 if position.cost else 0.0
            lines += [
                "",
                f"You hold {position.quantity:g} shares at avg {_money(position.avg_price)}",
                f"Unrealized P&L: {profit:+,.2f} ({pct:+.2f}%)",
            ]
            quick_replies.append(f"sell {stock_data.ticker}")

        return [OutboundMessage("\n".join(lines), quick_replies=quick_replies)]

    def _on_buy(self, user_id: str, intent: Intent) -> list[OutboundMessage]:
        try:
            stock_data = self.gateway.quote(intent.symbol)
        except QuoteUnavailableError as e:
            logger.warning(str(e))
            return [OutboundMessage(f"❌ Couldn't get a price for {intent.symbol}, please try again later.")]

        self._wait(
            user_id,
            ConversationState.WAITING_BUY_QUANTITY,
            PendingBuy(
                symbol=intent.symbol,
                price=stock_data.current_price,
                name=stock_data.name,
            ),
        )
        return [
            OutboundMessage(
                f"🛒 Buy {stock_data.display_name} ({intent.symbol}) at {_money(stock_data.current_price)}\n"
                "How many shares? (type \"cancel\" to stop)"
            )
        ]

    def _on_sell(self, user_id: str, intent: Intent) -> list[OutboundMessage]:
        position = self.positions.get(user_id, intent.symbol)
        if position is None:
            return [OutboundMessage(f"❌ You don't hold any {intent.symbol}.")]

        try:
            stock_data = self.gateway.quote(intent.symbol)
        except QuoteUnavailableError as e:
            logger.warning(str(e))
            return [OutboundMessage(f"❌ Couldn't get a price for {intent.symbol}, please try again later.")]

        self._wait(
            user_id,
            ConversationState.WAITING_SELL_QUANTITY,
            PendingSell(
                symbol=intent.symbol,
                price=stock_data.current_price,
                available_quantity=position.quantity,
                avg_price=position.avg_price,
            ),
        )
        return [
            OutboundMessage(
                f"💵 Sell {intent.symbol} at {_money(stock_data.current_price)}\n"
                f"You hold {position.quantity:g} shares. How many to sell?"
            )
        ]

    def _on_buy_quantity(self, session: Session, text: str) -> list[OutboundMessage]:
        pending: PendingBuy = session.context
        try:
            quantity = parse_quantity(text)
        except QuantityValidationError as e:
            return [OutboundMessage(f"⚠️ {e}")]

        total = quantity * pending.price
        with self._transaction():
            position = self.positions.add_shares(
                session.user_id, pending.symbol, quantity, pending.price, pending.name
            )
            self.ledger.create(
                LedgerEntry(
                    user_id=session.user_id,
                    direction=Direction.EXPENSE,
                    amount=total,
                    category=INVESTMENT,
                    note=f"Buy {pending.symbol} x{quantity:g}",
                )
            )
            self._finish(session.user_id)
        logger.info(f"{session.user_id} bought {quantity:g} {pending.symbol} at {pending.price}")

        label = f"{pending.name} ({pending.symbol})" if pending.name else pending.symbol
        return [
            OutboundMessage(
                f"✅ Bought {label}\n"
                f"Quantity: {quantity:g}\n"
                f"Price: ${pending.price:.2f}\n"
                f"Total: ${total:.2f}\n"
                f"Now holding {position.quantity:g} shares at avg ${position.avg_price:.2f}"
            )
        ]

    def _on_sell_quantity(self, session: Session, text: str) -> list[OutboundMessage]:
        pending: PendingSell = session.context
        try:
            quantity = parse_quantity(text)
        except QuantityValidationError as e:
            return [OutboundMessage(f"⚠️ {e}")]

        held = self.positions.get(session.user_id, pending.symbol)
        available = round_shares(held.quantity) if held else 0
        if held is None or quantity > available:
            return [
                OutboundMessage(
                    f"⚠️ You only hold {available:g} shares of {pending.symbol}. "
                    "Enter a smaller quantity, or type \"cancel\"."
                )
            ]

        avg_price = held.avg_price
        proceeds = quantity * pending.price
        profit = (pending.price - avg_price) * quantity
        pct = (pending.price - avg_price) / avg_price * 100 if avg_price else 0.0
        with self._transaction():
            remaining = self.positions.remove_shares(session.user_id, pending.symbol, quantity)
            self.ledger.create(
                LedgerEntry(
                    user_id=session.user_id,
                    direction=Direction.INCOME,
                    amount=proceeds,
                    category=INVESTMENT,
                    note=f"Sell {pending.symbol} x{quantity:g}",
                )
            )
            self._finish(session.user_id)
        logger.info(f"{session.user_id} sold {quantity:g} {pending.symbol} at {pending.price}")

        lines = [
            f"✅ Sold {pending.symbol}",
            f"Quantity: {quantity:g}",
            f"Price: ${pending.price:.2f}",
            f"Proceeds: ${proceeds:.2f}",
            f"Realized P&L: {profit:+.2f} ({pct:+.2f}%)",
        ]
        if remaining is None:
            lines.append("Position closed")
        else:
            lines.append(f"Remaining: {remaining.quantity:g} shares")
        return [OutboundMessage("\n".join(lines))]

    # Fixed replies

    def _on_portfolio(self, user_id: str, intent: Intent) -> list[OutboundMessage]:
        positions = self.positions.list_for_user(user_id)
        if not positions:
            return [OutboundMessage("📭 You have no holdings yet. Try \"buy TSLA\".")]

        quotes = self.gateway.quote_many([p.symbol for p in positions])
        total_value = 0.0
        total_cost = 0.0
        lines = ["📊 Your holdings"]
        for position in positions:
            stock_data = quotes.get(position.symbol)
            price = stock_data.current_price if stock_data else position.avg_price
            value = position.quantity * price
            total_value += value
            total_cost += position.cost
            line = f"{position.symbol}: {position.quantity:g} × {price:,.2f} = {value:,.2f}"
            if stock_data is None:
                line += " (price unavailable, at cost)"
            lines.append(line)

        profit = total_value - total_cost
        pct = profit / total_cost * 100 if total_cost else 0.0
        lines += [
            "",
            f"Market value: {total_value:,.2f}",
            f"Cost: {total_cost:,.2f}",
            f"Return: {profit:+,.2f} ({pct:+.2f}%)",
        ]
        return [OutboundMessage("\n".join(lines))]

    def _on_website(self, user_id: str, intent: Intent) -> list[OutboundMessage]:
        return [OutboundMessage(f"🌐 Open SmartCapital: {self.web_url}")]
