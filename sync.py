#!/usr/bin/env python3
"""Main entry point for catalog sync.

Usage:
    python sync.py orders                 # Sync orders and project invoices
    python sync.py products --force-full  # Full product sync
    python sync.py inventory              # Reconcile cached products into inventory
    python sync.py migrate-sales          # Link historical sales to invoices
    python sync.py next-number invoice    # Issue the next invoice number
    python sync.py stats                  # Show sync statistics
"""

import argparse
import asyncio
import logging
import sys

from pythonjsonlogger.json import JsonFormatter

from catalog_sync.config import get_settings, Settings
from catalog_sync.database import DocumentStore
from catalog_sync.models import Feed
from catalog_sync.results import SyncRunResult
from catalog_sync.sequence import SEQUENCES
from catalog_sync.shopify_graphql_client import ShopifyGraphQLClient
from catalog_sync.sync_engine import SyncEngine


def setup_logging(settings: Settings) -> None:
    """Configure logging for the application.

    Args:
        settings: Application settings
    """
    settings.log_file.parent.mkdir(parents=True, exist_ok=True)

    console_formatter = logging.Formatter(
        "%(asctime)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    json_formatter = JsonFormatter(
        "%(asctime)s %(levelname)s %(name)s %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
    )

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(console_formatter)
    console_handler.setLevel(logging.DEBUG)

    # JSON file for parsing
    file_handler = logging.FileHandler(settings.log_file)
    file_handler.setFormatter(json_formatter)
    file_handler.setLevel(logging.DEBUG)

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, settings.log_level))
    root_logger.addHandler(console_handler)
    root_logger.addHandler(file_handler)

    # Reduce noise from httpx
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


def report(result: SyncRunResult) -> int:
    """Log a run result and map it to an exit code."""
    logger = logging.getLogger(__name__)

    logger.info("=" * 60)
    logger.info("Sync Complete" if result.success else "Sync Failed")
    logger.info("=" * 60)
    if result.cache:
        logger.info(f"  Cached: {result.cache.upserted} upserted, {result.cache.deleted} deleted")
    if result.inventory:
        logger.info(
            f"  Inventory: {result.inventory.added} added, {result.inventory.updated} updated, "
            f"{result.inventory.skipped} skipped"
        )
    if result.projection:
        logger.info(
            f"  Invoices: {result.projection.invoices_created} created, "
            f"{result.projection.sale_lines_created} sale lines, "
            f"{result.projection.sales_linked} sales linked"
        )

    errors = result.total_errors
    if errors:
        logger.warning("Errors encountered:")
        for error in errors[:10]:
            logger.warning(f"  - {error}")
        if len(errors) > 10:
            logger.warning(f"  ... and {len(errors) - 10} more")

    return 0 if result.success else 1


async def run_command(args: argparse.Namespace) -> int:
    """Run one command.

    Args:
        args: Command line arguments

    Returns:
        Exit code (0 for success, 1 for failure)
    """
    logger = logging.getLogger(__name__)

    try:
        settings = get_settings()
    except Exception as e:
        logger.error(f"Failed to load settings: {e}")
        logger.error("Check the .env file and environment variables")
        return 1

    setup_logging(settings)
    store = DocumentStore(settings.database_path)

    if args.command == "stats":
        stats = store.get_stats()
        logger.info("Sync Statistics:")
        logger.info(f"  Documents by collection: {stats.get('documents', {})}")
        logger.info(f"  Last successful sync: {stats.get('last_successful_sync') or 'Never'}")
        for run in store.get_sync_history(limit=5):
            logger.info(
                f"  {run['started_at']:%Y-%m-%d %H:%M} {run['feed']}: {run['status']} "
                f"({run['entities_processed']} processed)"
            )
        return 0

    async with ShopifyGraphQLClient(settings) as client:
        engine = SyncEngine(settings=settings, store=store, client=client)

        if args.command == "next-number":
            print(engine.next_number(args.sequence))
            return 0

        if args.command == "inventory":
            return report(engine.sync_inventory())

        if args.command == "migrate-sales":
            return report(engine.migrate_sales_to_invoices())

        logger.info("Verifying API connection...")
        if not await engine.verify_connection():
            logger.error("Cannot connect to Shopify API")
            return 1

        if args.command == Feed.ORDERS.value:
            result = await engine.sync_orders(force_full=args.force_full, limit=args.limit)
        else:
            result = await engine.sync_products(force_full=args.force_full, limit=args.limit)
        return report(result)


def main() -> None:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="Sync remote orders and products into local inventory and invoices",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python sync.py orders                 Delta sync of orders (full on first run)
  python sync.py products --force-full  Full product sync, removing stale cache entries
  python sync.py orders --limit 100     Fetch at most 100 orders
  python sync.py inventory              Reconcile the product cache into inventory
  python sync.py next-number invoice    Print the next invoice number
        """,
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    for feed in (Feed.ORDERS, Feed.PRODUCTS):
        feed_parser = subparsers.add_parser(feed.value, help=f"Sync {feed.value} from Shopify")
        feed_parser.add_argument(
            "--force-full",
            action="store_true",
            help="Run a full sync, ignoring the last sync timestamp",
        )
        feed_parser.add_argument(
            "--limit",
            type=int,
            default=0,
            help="Maximum number of records to fetch (0 for no limit)",
        )

    subparsers.add_parser("inventory", help="Reconcile cached products into inventory")
    subparsers.add_parser("migrate-sales", help="Link historical sales to invoices")

    number_parser = subparsers.add_parser("next-number", help="Issue the next document number")
    number_parser.add_argument("sequence", choices=sorted(SEQUENCES))

    subparsers.add_parser("stats", help="Show sync statistics and exit")

    args = parser.parse_args()

    exit_code = asyncio.run(run_command(args))
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
