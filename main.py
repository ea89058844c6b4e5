import argparse
import asyncio
import json
import sys

from loguru import logger

from predblink.errors import StoreError
from predblink.log_config import setup_logging
from predblink.tasks.blockchain_indexer import index_predblink_events
from predblink.tasks.sql_indexer import PredBlinkSQLIndexer
from settings import settings


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="PredBlink event indexer")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("serve", help="Run the HTTP API")
    sub.add_parser("index", help="Run one indexing pass and print its summary")
    sub.add_parser("init-db", help="Create the database schema")
    return parser.parse_args(argv)


async def init_db() -> None:
    store = PredBlinkSQLIndexer(settings)
    try:
        await store.connect()
        await store.ensure_schema()
    finally:
        await store.close()


def main(argv=None) -> int:
    """Main entry point for the indexer CLI."""
    args = parse_args(argv)
    setup_logging("DEBUG" if args.debug else settings.LOG_LEVEL, settings.LOG_FILE_PATH)

    if args.command == "serve":
        import uvicorn
        from http_api import app

        logger.info(f"Starting PredBlink API on {settings.HOST}:{settings.PORT}")
        uvicorn.run(app, host=settings.HOST, port=settings.PORT)
        return 0

    if args.command == "init-db":
        try:
            asyncio.run(init_db())
        except StoreError as e:
            logger.error(f"Schema creation failed: {e}")
            return 1
        logger.info("Schema created")
        return 0

    summary = asyncio.run(index_predblink_events(settings))
    print(json.dumps(summary.to_dict(), indent=2))
    return 0 if summary.ok else 1


if __name__ == "__main__":
    sys.exit(main())
