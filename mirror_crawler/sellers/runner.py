"""Sellers stage: plan, pooled enrichment, essential retries and aggregate flush."""

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

import httpx

from mirror_crawler import metrics
from mirror_crawler.config import settings
from mirror_crawler.ingest.seller_pages import SellerPageClient
from mirror_crawler.ingest.session_manager import SessionManager
from mirror_crawler.items.worklist import load_market_indexes
from mirror_crawler.persistence import keys
from mirror_crawler.persistence.blob_store import BlobStore, StoreError, market_store, shared_store
from mirror_crawler.sellers.pipeline import (
    MODE_FULL,
    MODE_REVIEWS,
    SellerEnrichmentPipeline,
    SellerResult,
    SellerTask,
)
from mirror_crawler.sellers.planner import (
    AggregateSellerStateSource,
    SellerStateSource,
    StoreSellerStateSource,
    plan_seller_enrichment,
    save_seller_state,
)
from mirror_crawler.sellers.review_cache import SellerReviewCache
from mirror_crawler.sellers.worklist import SellerRef, build_seller_worklist
from mirror_crawler.worker.task_pool import TaskPool

logger = logging.getLogger(__name__)

# Gaps a forced re-enrichment can close; missing reviews are left to the next run
RETRYABLE_GAPS = {"image", "share", "manifesto"}


@dataclass
class SellersRunOptions:
    markets: Optional[list[str]] = None
    ids: Optional[list[str]] = None
    limit: int = 0
    concurrency: Optional[int] = None
    force: Optional[bool] = None
    refresh_share: Optional[bool] = None
    use_aggregate: bool = True


@dataclass
class SellersRunSummary:
    candidates: int = 0
    to_enrich: int = 0
    fresh: int = 0
    blacklisted: int = 0
    deferred: int = 0
    processed: int = 0
    written: int = 0
    failed: int = 0
    essential_missing: int = 0
    retried: int = 0
    duration_seconds: float = 0.0
    results: dict[str, SellerResult] = field(default_factory=dict, repr=False)


async def _load_images(store: BlobStore) -> dict[str, str]:
    try:
        data = await store.get_json(keys.SELLER_IMAGES)
    except StoreError as e:
        logger.warning(f"Failed to load seller images aggregate: {e}")
        return {}
    return data if isinstance(data, dict) else {}


async def _load_state_map(store: BlobStore) -> dict[str, Any]:
    try:
        data = await store.get_json(keys.SELLER_STATE)
    except StoreError as e:
        logger.warning(f"Failed to load seller state aggregate: {e}")
        return {}
    sellers = data.get("sellers") if isinstance(data, dict) else None
    return dict(sellers) if isinstance(sellers, dict) else {}


async def run_sellers_stage(
    options: Optional[SellersRunOptions] = None,
    client: Optional[httpx.AsyncClient] = None,
    store: Optional[BlobStore] = None,
    market_store_for: Callable[[str], BlobStore] = market_store,
    pipeline_factory: Optional[Callable[..., SellerEnrichmentPipeline]] = None,
) -> SellersRunSummary:
    """
    Run one sellers crawl.

    Args:
        options: Per-run overrides of the configured defaults
        client: Session client; created through SessionManager when omitted
        store: Shared store; defaults to the configured backend
        market_store_for: Per-market store lookup (seller ids come from indexes)
        pipeline_factory: Builds the pipeline (tests swap in fakes)

    Returns:
        SellersRunSummary
    """
    options = options or SellersRunOptions()
    started = time.monotonic()
    store = store or shared_store()
    summary = SellersRunSummary()
    force = (settings.crawler_force or settings.seller_force) if options.force is None else options.force

    if options.ids:
        refs = [SellerRef(id=i.strip()) for i in options.ids if i.strip()]
    else:
        indexes = await load_market_indexes(options.markets or settings.market_list, market_store_for)
        refs = build_seller_worklist(indexes)
    if options.limit > 0:
        refs = refs[: options.limit]
    by_id = {ref.id: ref for ref in refs}
    summary.candidates = len(refs)

    source: Optional[SellerStateSource] = None
    if options.use_aggregate:
        source = await AggregateSellerStateSource.load(store)
    if source is None:
        source = StoreSellerStateSource(store)

    plan = await plan_seller_enrichment(
        list(by_id),
        source,
        refresh_days=settings.seller_manifesto_refresh_days,
        require_manifesto=settings.seller_require_manifesto,
        blacklist=settings.seller_blacklist_ids,
        force_full=force,
        enrich_limit=settings.seller_enrich_limit,
    )
    summary.to_enrich = len(plan.to_enrich)
    summary.fresh = len(plan.fresh)
    summary.blacklisted = len(plan.blacklisted)
    summary.deferred = len(plan.deferred)
    logger.info(
        f"Seller plan: {summary.to_enrich} to enrich, {summary.fresh} fresh, "
        f"{summary.blacklisted} blacklisted, {summary.deferred} deferred by cap"
    )

    def _task(seller_id: str, mode: str, force_share: bool = False) -> SellerTask:
        ref = by_id.get(seller_id) or SellerRef(id=seller_id)
        return SellerTask(seller_id, mode=mode, name=ref.name, url=ref.url, force_share=force_share)

    tasks = [_task(i, MODE_FULL) for i in plan.to_enrich]
    tasks += [_task(i, MODE_REVIEWS) for i in plan.fresh + plan.deferred]

    review_cache = await SellerReviewCache.load(store, settings.seller_review_cache_max_age_days)
    images = await _load_images(store)

    owns_client = client is None
    if owns_client:
        client = await SessionManager().create_client()

    if pipeline_factory is None:
        pipeline = SellerEnrichmentPipeline(
            SellerPageClient(client),
            store,
            review_cache,
            images=images,
            refresh_share=options.refresh_share,
        )
    else:
        pipeline = pipeline_factory(client=client, store=store, review_cache=review_cache, images=images)

    pool = TaskPool(options.concurrency or settings.seller_concurrency, name="sellers")
    describe = lambda t: f"seller {t.seller_id}"  # noqa: E731

    try:
        outcomes = await pool.run(tasks, pipeline.enrich, describe=describe)
        summary.processed = len(outcomes)
        for outcome in outcomes:
            if outcome.ok:
                summary.results[outcome.item.seller_id] = outcome.result
            else:
                summary.failed += 1

        for round_no in range(1, settings.seller_essential_retry_limit + 1):
            retry_ids = [
                seller_id
                for seller_id, res in summary.results.items()
                if res.mode == MODE_FULL and set(res.essential_missing) & RETRYABLE_GAPS
            ]
            if not retry_ids:
                break
            logger.info(f"Essential retry round {round_no}: {len(retry_ids)} sellers")
            summary.retried += len(retry_ids)
            retry_outcomes = await pool.run(
                [_task(i, MODE_FULL, force_share=True) for i in retry_ids],
                pipeline.enrich,
                describe=describe,
            )
            for outcome in retry_outcomes:
                if outcome.ok:
                    summary.results[outcome.item.seller_id] = outcome.result
    finally:
        if owns_client:
            await client.aclose()

    summary.written = sum(1 for r in summary.results.values() if r.written)

    summary.essential_missing = sum(
        1 for r in summary.results.values() if r.mode == MODE_FULL and r.essential_missing
    )

    # Aggregates are flushed once, after the pool has drained
    try:
        await store.put_json(keys.SELLER_IMAGES, images)
    except StoreError as e:
        logger.warning(f"Failed to persist seller images aggregate: {e}")
    await review_cache.save(store)

    state = await _load_state_map(store)
    for seller_id, res in summary.results.items():
        if res.state_entry is not None:
            state[seller_id] = res.state_entry
    await save_seller_state(store, state)

    summary.duration_seconds = time.monotonic() - started
    metrics.record_run_duration("sellers", summary.duration_seconds)
    logger.info(
        f"Sellers stage done in {summary.duration_seconds:.1f}s: processed={summary.processed} "
        f"written={summary.written} failed={summary.failed} "
        f"essential_missing={summary.essential_missing} retried={summary.retried}"
    )
    return summary
