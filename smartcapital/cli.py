"""
CLI commands for SmartCapital alert and position management.
"""

import argparse
from typing import Optional

from dotenv import load_dotenv

load_dotenv()

from smartcapital.alerts import AlertService
from smartcapital.database.connection import Database
from smartcapital.database.models import AlertDirection, AlertType, Position, PriceAlert
from smartcapital.database.repository import AlertRepository, PositionRepository
from smartcapital.errors import AlertValidationError


def _service(db: Database) -> AlertService:
    return AlertService(AlertRepository(db), PositionRepository(db))


def add_alert(
    db: Database,
    user_id: str,
    symbol: str,
    alert_type: str,
    threshold: Optional[float] = None,
    target_price: Optional[float] = None,
    direction: Optional[str] = None,
    reference_price: Optional[float] = None,
) -> PriceAlert:
    """Add a price alert for a user."""
    return _service(db).create_alert(
        user_id=user_id,
        symbol=symbol,
        alert_type=AlertType(alert_type),
        threshold=threshold,
        target_price=target_price,
        direction=AlertDirection(direction) if direction else None,
        reference_price=reference_price,
    )


def format_alert(alert: PriceAlert) -> str:
    """One-line description of an alert."""
    status = "on" if alert.is_active else "off"
    if alert.alert_type == AlertType.TARGET_PRICE:
        condition = f"price >= {alert.target_price:g}"
    elif alert.alert_type == AlertType.DAILY_CHANGE:
        condition = f"daily move {alert.direction.value if alert.direction else 'BOTH'} {alert.threshold:g}%"
    else:
        condition = f"{alert.threshold:g}% vs {alert.reference_price:g}"
    return (
        f"ID: {alert.id} [{status}] {alert.symbol} {alert.alert_type.value} "
        f"{condition} (fired {alert.trigger_count}x)"
    )


def format_position(position: Position) -> str:
    return (
        f"{position.symbol}: {position.quantity:g} shares "
        f"@ {position.avg_price:.2f} (cost {position.cost:.2f})"
    )


def main():
    """CLI entry point."""
    parser = argparse.ArgumentParser(description="SmartCapital CLI")
    parser.add_argument("--db", default="data/smartcapital.db", help="Database path")

    subparsers = parser.add_subparsers(dest="command", help="Command")

    # Alert commands
    alerts_parser = subparsers.add_parser("alerts", help="Price alert management")
    alerts_subparsers = alerts_parser.add_subparsers(dest="action")

    add_parser = alerts_subparsers.add_parser("add", help="Add alert")
    add_parser.add_argument("--user", required=True, help="Chat user ID")
    add_parser.add_argument("--symbol", required=True, help="Ticker, e.g. TSLA or 2330")
    add_parser.add_argument(
        "--type", required=True, choices=[t.value for t in AlertType]
    )
    add_parser.add_argument("--threshold", type=float, help="Percent threshold")
    add_parser.add_argument("--target", type=float, help="Target price")
    add_parser.add_argument(
        "--direction", choices=[d.value for d in AlertDirection], help="Daily move direction"
    )
    add_parser.add_argument(
        "--reference", type=float, help="Reference price (defaults to position cost)"
    )

    list_parser = alerts_subparsers.add_parser("list", help="List alerts")
    list_parser.add_argument("--user", required=True, help="Chat user ID")
    list_parser.add_argument("--active", action="store_true", help="Only active alerts")

    for action, help_text in (
        ("enable", "Enable alert"),
        ("disable", "Disable alert"),
        ("delete", "Delete alert"),
    ):
        action_parser = alerts_subparsers.add_parser(action, help=help_text)
        action_parser.add_argument("--user", required=True, help="Chat user ID")
        action_parser.add_argument("--id", type=int, required=True, help="Alert ID")

    defaults_parser = alerts_subparsers.add_parser(
        "defaults", help="Create default alerts for every position"
    )
    defaults_parser.add_argument("--user", required=True, help="Chat user ID")
    defaults_parser.add_argument("--daily", type=float, default=5, help="Daily move %%")
    defaults_parser.add_argument("--profit", type=float, default=10, help="Take-profit %%")
    defaults_parser.add_argument("--loss", type=float, default=10, help="Stop-loss %%")

    # Position commands
    positions_parser = subparsers.add_parser("positions", help="Position inspection")
    positions_subparsers = positions_parser.add_subparsers(dest="action")
    positions_list_parser = positions_subparsers.add_parser("list", help="List positions")
    positions_list_parser.add_argument("--user", required=True, help="Chat user ID")

    args = parser.parse_args()

    # Initialize database
    db = Database(args.db)
    db.initialize()
    service = _service(db)

    try:
        if args.command == "alerts":
            if args.action == "add":
                alert = add_alert(
                    db,
                    user_id=args.user,
                    symbol=args.symbol,
                    alert_type=args.type,
                    threshold=args.threshold,
                    target_price=args.target,
                    direction=args.direction,
                    reference_price=args.reference,
                )
                print(f"Created alert with ID: {alert.id}")
            elif args.action == "list":
                for alert in service.list_alerts(args.user, only_active=args.active):
                    print(format_alert(alert))
            elif args.action in ("enable", "disable"):
                service.set_active(args.user, args.id, args.action == "enable")
                print(f"Alert {args.id} {args.action}d")
            elif args.action == "delete":
                service.delete_alert(args.user, args.id)
                print(f"Deleted alert {args.id}")
            elif args.action == "defaults":
                created = service.create_default_alerts(
                    args.user,
                    daily_change_threshold=args.daily,
                    profit_threshold=args.profit,
                    loss_threshold=args.loss,
                )
                print(f"Created {len(created)} alerts")

        elif args.command == "positions":
            if args.action == "list":
                for position in PositionRepository(db).list_for_user(args.user):
                    print(format_position(position))

    except AlertValidationError as e:
        print(f"Error: {e}")

    db.close()


if __name__ == "__main__":
    main()
