"""Command-line entry point: `python -m mirror_crawler.main`."""

import argparse
import asyncio
import logging
import sys
from typing import Optional

from mirror_crawler.config import settings
from mirror_crawler.ingest.session_manager import SessionManager
from mirror_crawler.items.runner import ItemsRunOptions, run_items_stage
from mirror_crawler.logging_config import setup_logging
from mirror_crawler.metrics import start_metrics_server
from mirror_crawler.persistence.blob_store import close_stores
from mirror_crawler.sellers.runner import SellersRunOptions, run_sellers_stage
from mirror_crawler.worker.run_lock import RunLockManager, guarded_run
from mirror_crawler.worker.scheduler import setup_scheduler

logger = logging.getLogger(__name__)

STAGES = ("items", "sellers", "all")


def _csv(value: Optional[str]) -> Optional[list[str]]:
    if not value:
        return None
    parts = [p.strip() for p in value.split(",") if p.strip()]
    return parts or None


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Marketplace mirror crawler")
    parser.add_argument("--stage", choices=STAGES, default="all", help="Which stage(s) to run")
    parser.add_argument("--markets", help="Comma-separated market codes (default from MARKETS)")
    parser.add_argument("--limit", type=int, default=0, help="Cap on entities processed")
    parser.add_argument("--concurrency", type=int, help="Pool concurrency override")
    parser.add_argument("--force", action="store_true", default=None, help="Full crawl for everything")
    parser.add_argument("--refresh-share", action="store_true", default=None, help="Refetch item and seller share links")
    parser.add_argument("--refresh-shipping", action="store_true", default=None, help="Ignore shipping freshness")
    parser.add_argument("--ids", help="Comma-separated entity ids to process")
    parser.add_argument("--schedule", action="store_true", help="Run stages on an interval schedule")
    parser.add_argument("--force-unlock", action="store_true", help="Clear a stale run lock and exit")
    return parser


async def run_once(args: argparse.Namespace) -> int:
    """Run the selected stage(s) once under the run lock."""
    markets = _csv(args.markets)
    if markets:
        markets = [m.upper() for m in markets]

    async with guarded_run(args.stage) as allowed:
        if not allowed:
            logger.warning("Another crawl run is in progress; exiting")
            return 1

        client = await SessionManager().create_client()
        try:
            if args.stage in ("items", "all"):
                await run_items_stage(
                    ItemsRunOptions(
                        markets=markets,
                        ids=_csv(args.ids) if args.stage == "items" else None,
                        limit=args.limit,
                        concurrency=args.concurrency,
                        force=args.force,
                        refresh_shipping=args.refresh_shipping,
                        refresh_share=args.refresh_share,
                    ),
                    client=client,
                )
            if args.stage in ("sellers", "all"):
                await run_sellers_stage(
                    SellersRunOptions(
                        markets=markets,
                        ids=_csv(args.ids) if args.stage == "sellers" else None,
                        limit=args.limit,
                        concurrency=args.concurrency,
                        force=args.force,
                        refresh_share=args.refresh_share,
                    ),
                    client=client,
                )
        finally:
            await client.aclose()
    return 0


async def force_unlock() -> int:
    """Clear the run lock left behind by a crashed run."""
    manager = RunLockManager()
    try:
        return 0 if await manager.force_unlock() else 1
    finally:
        await manager.close()


async def run_scheduled(args: argparse.Namespace) -> int:
    """Start the interval scheduler and run until interrupted."""

    async def _items():
        await run_once(argparse.Namespace(**{**vars(args), "stage": "items"}))

    async def _sellers():
        await run_once(argparse.Namespace(**{**vars(args), "stage": "sellers"}))

    scheduler = setup_scheduler(_items, _sellers, args.stage)
    scheduler.start()
    logger.info("Scheduler started")
    try:
        await asyncio.Event().wait()
    finally:
        scheduler.shutdown(wait=False)
    return 0


async def main(argv: Optional[list[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging()
    start_metrics_server(settings.metrics_port)
    try:
        if args.force_unlock:
            return await force_unlock()
        if args.schedule:
            return await run_scheduled(args)
        return await run_once(args)
    finally:
        await close_stores()


def cli() -> None:
    try:
        sys.exit(asyncio.run(main()))
    except KeyboardInterrupt:
        sys.exit(130)


if __name__ == "__main__":
    cli()
