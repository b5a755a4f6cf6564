"""
Main application entry point.
"""

import logging
import signal
import threading

from dotenv import load_dotenv

load_dotenv()

from smartcapital.app import SmartCapitalApp
from smartcapital.config import AppConfig, load_config
from smartcapital.database.connection import Database
from smartcapital.notifiers.base import NotifierFactory

logger = logging.getLogger(__name__)


def setup_logging(config: AppConfig, debug: bool = False) -> None:
    """Configure root logging from config, or DEBUG when requested."""
    level = logging.DEBUG if debug else getattr(logging, config.advanced.log_level.upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    # yfinance and APScheduler are chatty at DEBUG
    logging.getLogger("apscheduler").setLevel(max(level, logging.INFO))
    logging.getLogger("yfinance").setLevel(max(level, logging.WARNING))


def build_app(config: AppConfig, dry_run: bool = False) -> SmartCapitalApp:
    """Create the database and wire the application from config."""
    db = Database(config.database.path)
    db.initialize()
    notifier = NotifierFactory.create(config, dry_run=dry_run)
    return SmartCapitalApp(db=db, config=config, notifier=notifier)


def serve(app: SmartCapitalApp) -> None:
    """Run the scheduler until interrupted."""
    stop = threading.Event()

    def handle_signal(signum, frame):
        logger.info(f"Received signal {signum}, shutting down")
        stop.set()

    signal.signal(signal.SIGINT, handle_signal)
    signal.signal(signal.SIGTERM, handle_signal)

    app.start()
    stop.wait()


def chat(app: SmartCapitalApp, user_id: str) -> None:
    """Local console chat against the conversation engine."""
    print(f"Chatting as {user_id}. Ctrl-D to quit.")
    while True:
        try:
            text = input("> ")
        except EOFError:
            print()
            break
        for message in app.process_inbound_message(user_id, text):
            print(message.text)
            if message.quick_replies:
                print(f"  [{' | '.join(message.quick_replies)}]")


def main():
    """CLI entry point."""
    import argparse

    parser = argparse.ArgumentParser(description="SmartCapital chat assistant service")
    parser.add_argument(
        "--config", default="config.yaml", help="Path to config file"
    )
    parser.add_argument("--debug", action="store_true", help="Enable debug mode")
    parser.add_argument(
        "--dry-run", action="store_true", help="Run without sending notifications"
    )

    subparsers = parser.add_subparsers(dest="command")
    subparsers.add_parser("serve", help="Run scheduled alert checks and digests")
    subparsers.add_parser("check", help="Run one alert check")
    subparsers.add_parser("digest", help="Send the daily digest once")
    chat_parser = subparsers.add_parser("chat", help="Chat with the engine in the console")
    chat_parser.add_argument("--user", default="console", help="Chat user ID")

    args = parser.parse_args()
    command = args.command or "serve"

    config = load_config(args.config)
    setup_logging(config, debug=args.debug)

    if args.dry_run:
        logger.info("Dry run mode - no notifications will be sent")

    app = build_app(config, dry_run=args.dry_run)

    try:
        if command == "serve":
            serve(app)
        elif command == "check":
            fired = app.run_alert_tick()
            logger.info(f"{fired} alerts fired")
        elif command == "digest":
            sent = app.run_daily_digest()
            logger.info(f"Digest sent to {sent} users")
        elif command == "chat":
            chat(app, args.user)
    finally:
        app.stop()


if __name__ == "__main__":
    main()
