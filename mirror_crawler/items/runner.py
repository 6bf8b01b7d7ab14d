"""Items stage: worklist, mode planning, pooled enrichment and aggregate flush."""

import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Optional

import httpx

from mirror_crawler import metrics
from mirror_crawler.config import settings
from mirror_crawler.ingest.session_manager import SessionManager
from mirror_crawler.items.modes import MODE_FULL, PlannedItem, plan_item_modes
from mirror_crawler.items.processor import ItemProcessor, ItemResult, load_item_shares
from mirror_crawler.items.shipping import MultiMarketShippingFetcher
from mirror_crawler.items.shipping_meta import load_shipping_meta, save_shipping_meta
from mirror_crawler.items.worklist import build_worklist, load_existing_item_ids, load_market_indexes
from mirror_crawler.persistence.blob_store import BlobStore, market_store, shared_store
from mirror_crawler.worker.task_pool import TaskPool

logger = logging.getLogger(__name__)


@dataclass
class ItemsRunOptions:
    markets: Optional[list[str]] = None
    ids: Optional[list[str]] = None
    limit: int = 0
    concurrency: Optional[int] = None
    force: Optional[bool] = None
    refresh_shipping: Optional[bool] = None
    refresh_share: Optional[bool] = None


@dataclass
class ItemsRunSummary:
    unique_ids: int = 0
    to_crawl: int = 0
    already_have: int = 0
    planned_full: int = 0
    planned_reviews_only: int = 0
    index_changed: int = 0
    no_full_crawl: int = 0
    processed: int = 0
    written: int = 0
    failed: int = 0
    shipping_writes: int = 0
    shipping_failures: int = 0
    shares_new: int = 0
    meta_saved: bool = False
    duration_seconds: float = 0.0
    results: list[ItemResult] = field(default_factory=list, repr=False)


async def run_items_stage(
    options: Optional[ItemsRunOptions] = None,
    client: Optional[httpx.AsyncClient] = None,
    store: Optional[BlobStore] = None,
    market_store_for: Callable[[str], BlobStore] = market_store,
    shipping_fetcher: Optional[MultiMarketShippingFetcher] = None,
) -> ItemsRunSummary:
    """
    Run one items crawl.

    Args:
        options: Per-run overrides of the configured defaults
        client: Session client (logged in or anonymous); created when omitted
        store: Shared store; defaults to the configured backend
        market_store_for: Per-market store lookup
        shipping_fetcher: Multi-market fetcher; defaults to isolated clients

    Returns:
        ItemsRunSummary
    """
    options = options or ItemsRunOptions()
    started = time.monotonic()
    store = store or shared_store()
    markets = options.markets or settings.market_list
    force = settings.crawler_force if options.force is None else options.force
    summary = ItemsRunSummary()

    indexes = await load_market_indexes(markets, market_store_for)
    existing_ids = await load_existing_item_ids(store)
    worklist = build_worklist(indexes, existing_ids)
    summary.unique_ids = len(worklist.unique_ids)
    summary.to_crawl = len(worklist.to_crawl)
    summary.already_have = len(worklist.already_have)
    logger.info(
        f"Worklist: {summary.unique_ids} unique, {summary.to_crawl} new, "
        f"{summary.already_have} existing across {len(markets)} markets"
    )

    ids = worklist.unique_ids
    presence = worklist.presence
    if options.ids:
        wanted = [i.strip() for i in options.ids if i.strip()]
        ids = wanted
        presence = {i: presence.get(i) or list(markets) for i in wanted}

    shares = await load_item_shares(store)
    meta = await load_shipping_meta(store)
    plan = plan_item_modes(
        ids,
        presence,
        worklist.id_lua,
        meta,
        force_all=force,
        refresh_window_days=settings.crawler_full_refresh_days,
    )
    summary.planned_full = plan.full_count
    summary.planned_reviews_only = plan.reviews_only_count
    summary.index_changed = plan.index_changed_count
    summary.no_full_crawl = plan.no_full_crawl_count
    logger.info(
        f"Mode plan: {summary.planned_full} full, {summary.planned_reviews_only} reviews-only "
        f"(index changed {summary.index_changed}, never fully crawled {summary.no_full_crawl})"
    )

    planned = plan.items
    limit = options.limit or settings.crawler_limit
    if limit > 0:
        planned = planned[:limit]

    owns_client = client is None
    if owns_client:
        client = await SessionManager().create_client()

    processor = ItemProcessor(
        client,
        store,
        market_store_for,
        shipping_fetcher or MultiMarketShippingFetcher(),
        refresh_shipping=options.refresh_shipping,
        refresh_share=options.refresh_share,
        shares=shares,
    )
    pool = TaskPool(options.concurrency or settings.crawler_max_parallel, name="items")

    try:
        outcomes = await pool.run(
            planned,
            lambda p: processor.process_item(p, meta),
            describe=lambda p: f"item {p.id}",
        )
    finally:
        if owns_client:
            await client.aclose()

    for outcome in outcomes:
        summary.processed += 1
        if not outcome.ok:
            summary.failed += 1
            continue
        res: ItemResult = outcome.result
        summary.results.append(res)
        if res.core_written:
            summary.written += 1
        if not res.ok:
            summary.failed += 1
        summary.shipping_writes += len(res.shipping_written)
        summary.shipping_failures += len(res.shipping_failed)
        if res.share_status == "new":
            summary.shares_new += 1

    summary.meta_saved = await save_shipping_meta(store, meta)
    summary.duration_seconds = time.monotonic() - started
    metrics.record_run_duration("items", summary.duration_seconds)
    logger.info(
        f"Items stage done in {summary.duration_seconds:.1f}s: processed={summary.processed} "
        f"written={summary.written} failed={summary.failed} "
        f"shipping_writes={summary.shipping_writes} shipping_failures={summary.shipping_failures} "
        f"new_shares={summary.shares_new}"
    )
    return summary


async def process_item_step(
    item_id: str,
    markets: list[str],
    client: httpx.AsyncClient,
    store: Optional[BlobStore] = None,
    market_store_for: Callable[[str], BlobStore] = market_store,
    shipping_fetcher: Optional[MultiMarketShippingFetcher] = None,
    index_lua: Optional[str] = None,
    force: Optional[bool] = None,
) -> ItemResult:
    """
    Process a single item as a standalone unit of work.

    Safe to re-run for the same id: fields are re-merged, never duplicated.
    The shipping meta entry for this id is merged back into a freshly read
    aggregate so other ids' entries are not overwritten with stale copies.
    """
    store = store or shared_store()
    force = settings.crawler_force if force is None else force
    item_id = item_id.strip()

    meta = await load_shipping_meta(store)
    plan = plan_item_modes(
        [item_id],
        {item_id: list(markets)},
        {item_id: index_lua} if index_lua else {},
        meta,
        force_all=force,
        refresh_window_days=settings.crawler_full_refresh_days,
    )
    planned: PlannedItem = plan.items[0]

    processor = ItemProcessor(
        client,
        store,
        market_store_for,
        shipping_fetcher or MultiMarketShippingFetcher(),
        shares=await load_item_shares(store),
    )
    result = await processor.process_item(planned, meta)

    if planned.mode == MODE_FULL and item_id in meta:
        latest = await load_shipping_meta(store)
        latest[item_id] = meta[item_id]
        await save_shipping_meta(store, latest)
    return result
