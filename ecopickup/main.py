import argparse
import asyncio
import logging

from .app_factory import create_facade, initialize_app

logger = logging.getLogger(__name__)


def main():
    parser = argparse.ArgumentParser(description="EcoPickup application runner.")
    parser.add_argument(
        "command",
        choices=["init-db", "bot", "dashboard", "link-code"],
        help="The command to execute.",
    )
    parser.add_argument(
        "--db-path",
        default=None,
        help="SQLite database file (defaults to PICKUP_DB_PATH).",
    )
    parser.add_argument(
        "--user-id",
        type=int,
        help="Account to issue a Telegram link code for (link-code only).",
    )
    args = parser.parse_args()

    db_kwargs = {"db_path": args.db_path} if args.db_path else {}
    initialize_app(**db_kwargs)

    if args.command == "init-db":
        logger.info("Database initialized.")
        return

    facade = create_facade(**db_kwargs)

    if args.command == "bot":
        from telegram_bot.bot import main as run_bot
        logger.info("Starting bot...")
        asyncio.run(run_bot(facade))
    elif args.command == "dashboard":
        from dashboard.app import run_dashboard
        logger.info("Starting dashboard...")
        run_dashboard(facade)
    elif args.command == "link-code":
        if args.user_id is None:
            parser.error("link-code requires --user-id")
        code = facade.issue_link_code(args.user_id, args.user_id)
        print(f"Send /link {code} to the EcoPickup bot to connect your chat.")


if __name__ == "__main__":
    main()
