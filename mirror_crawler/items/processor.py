"""Per-item enrichment: reviews, description, share link and per-market shipping."""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

import httpx

from mirror_crawler import metrics
from mirror_crawler.config import settings
from mirror_crawler.ingest.http_client import FetchError
from mirror_crawler.ingest.item_pages import fetch_item_page, fetch_item_reviews, fetch_item_share_link
from mirror_crawler.items.modes import MODE_FULL, PlannedItem
from mirror_crawler.items.shipping import MultiMarketShippingFetcher
from mirror_crawler.items.shipping_meta import is_shipping_stale, update_shipping_meta
from mirror_crawler.logging_config import get_logger
from mirror_crawler.parse.description import extract_description
from mirror_crawler.parse.reviews import normalize_reviews
from mirror_crawler.parse.shipping import summarize_shipping
from mirror_crawler.persistence import keys
from mirror_crawler.persistence.blob_store import BlobStore, StoreError
from mirror_crawler.utils.timeutil import now_iso

logger = logging.getLogger(__name__)


@dataclass
class ItemResult:
    """Outcome of processing one item."""
    id: str
    mode: str
    ok: bool = True
    reviews_written: int = 0
    description_written: bool = False
    core_written: bool = False
    shipping_written: list[str] = field(default_factory=list)
    shipping_failed: list[str] = field(default_factory=list)
    shipping_summary: dict[str, dict] = field(default_factory=dict)
    share_status: str = "none"
    errors: list[str] = field(default_factory=list)


async def load_item_shares(store: BlobStore) -> dict[str, str]:
    """Item id to share link map from the shares aggregate; unreadable yields {}."""
    try:
        data = await store.get_json(keys.ITEM_SHARES)
    except StoreError as e:
        logger.warning(f"Failed to load item shares aggregate: {e}")
        return {}
    if not isinstance(data, dict):
        return {}
    return {str(k): v for k, v in data.items() if isinstance(v, str) and v}


class ItemProcessor:
    """
    Enriches one planned item at a time.

    Reviews and description are fetched concurrently over the shared session
    and merged into the item's core record with a single read-merge-write.
    In full mode, stale markets then get their shipping refreshed through
    isolated per-market sessions. A failing sub-step leaves previously stored
    fields untouched and never stops the others.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        shared_store: BlobStore,
        market_store_for: Callable[[str], BlobStore],
        shipping_fetcher: MultiMarketShippingFetcher,
        hosts: Optional[list[str]] = None,
        review_page_size: Optional[int] = None,
        page_timeout: Optional[float] = None,
        page_max_bytes: Optional[int] = None,
        refresh_shipping: Optional[bool] = None,
        refresh_share: Optional[bool] = None,
        shares: Optional[dict[str, str]] = None,
    ):
        self.client = client
        self.shared_store = shared_store
        self.market_store_for = market_store_for
        self.shipping_fetcher = shipping_fetcher
        self.hosts = hosts or settings.site_hosts
        self.review_page_size = review_page_size or settings.crawler_review_fetch_size
        self.page_timeout = page_timeout or settings.item_page_timeout_seconds
        self.page_max_bytes = page_max_bytes or settings.item_page_max_bytes
        self.refresh_shipping = settings.crawler_refresh_shipping if refresh_shipping is None else refresh_shipping
        self.refresh_share = settings.crawler_refresh_share if refresh_share is None else refresh_share
        self.shares = shares if shares is not None else {}

    async def _fetch_reviews(self, item_id: str) -> list[dict]:
        raw = await fetch_item_reviews(self.client, item_id, self.hosts, self.review_page_size)
        return normalize_reviews(raw, include_item=False)

    async def _fetch_description(self, item_id: str, market: Optional[str]) -> tuple[Optional[dict], str]:
        page = await fetch_item_page(
            self.client,
            item_id,
            self.hosts,
            self.page_timeout,
            self.page_max_bytes,
            market=market,
            require_description=True,
        )
        return extract_description(page.text), page.text

    async def process_item(self, planned: PlannedItem, meta: dict[str, Any]) -> ItemResult:
        """
        Process one item and record shipping freshness in `meta` (in memory).

        Args:
            planned: Item id, markets, mode and index token
            meta: Shipping meta aggregate, mutated for this item only

        Returns:
            ItemResult
        """
        item_id = planned.id
        log = get_logger(__name__, item_id=item_id, mode=planned.mode)
        result = ItemResult(id=item_id, mode=planned.mode)
        full = planned.mode == MODE_FULL

        try:
            existing = await self.shared_store.get_json(keys.item_core(item_id))
        except StoreError as e:
            # Writing without the stored record would drop its fields
            log.error(f"[item {item_id}] core record unreadable, skipping: {e}")
            result.ok = False
            result.errors.append("core_read")
            metrics.record_item(planned.mode, "error")
            return result

        steps = [self._fetch_reviews(item_id)]
        if full:
            steps.append(self._fetch_description(item_id, planned.markets[0] if planned.markets else None))
        outcomes = await asyncio.gather(*steps, return_exceptions=True)

        reviews = self._settle("reviews", outcomes[0], result, log)
        description, html = None, None
        if full:
            page = self._settle("description", outcomes[1], result, log)
            if page is not None:
                description, html = page
        if full and description is None and "description" not in result.errors:
            result.errors.append("no_description")
            log.info(f"[item {item_id}] no description extracted")

        share = await self._resolve_share(item_id, existing, html, full, result, log)

        await self._write_core(item_id, existing, reviews, description, share, result, log)

        if full:
            await self._refresh_shipping(planned, meta, result, log)

        status = "ok" if result.ok and not result.errors else ("partial" if result.ok else "error")
        metrics.record_item(planned.mode, status)
        return result

    def _settle(self, step: str, outcome: Any, result: ItemResult, log) -> Any:
        if isinstance(outcome, BaseException):
            metrics.record_item_failure(step)
            result.errors.append(step)
            if isinstance(outcome, FetchError):
                log.warning(f"[item {result.id}] {step} fetch failed: {outcome}")
            else:
                log.error(f"[item {result.id}] {step} failed: {type(outcome).__name__}: {outcome}")
            return None
        return outcome

    async def _resolve_share(
        self,
        item_id: str,
        existing: Optional[dict],
        html: Optional[str],
        full: bool,
        result: ItemResult,
        log,
    ) -> Optional[str]:
        """
        Share link for the core record.

        The stored `sl` wins, then the shares aggregate. Full mode fetches a
        new link when neither has one or when refresh is requested, and falls
        back to the known link if the fetch yields nothing.
        """
        stored = existing.get("sl") if isinstance(existing, dict) else None
        known = stored if isinstance(stored, str) and stored else self.shares.get(item_id)

        if not full or (known and not self.refresh_share):
            if known:
                result.share_status = "reused"
            return known

        link = await fetch_item_share_link(self.client, item_id, self.hosts, html=html)
        if link:
            result.share_status = "new"
            return link
        if known:
            result.share_status = "reused"
        else:
            metrics.record_item_failure("share")
            result.errors.append("share")
            log.info(f"[item {item_id}] no share link obtained")
        return known

    async def _write_core(
        self,
        item_id: str,
        existing: Optional[dict],
        reviews: Optional[list],
        description: Optional[dict],
        share: Optional[str],
        result: ItemResult,
        log,
    ) -> None:
        if reviews is None and description is None and result.share_status != "new":
            if existing is None:
                log.info(f"[item {item_id}] nothing fetched and no stored record, not writing")
            return

        stamp = now_iso()
        record = dict(existing) if isinstance(existing, dict) else {}
        record["id"] = item_id
        if reviews is not None:
            record["reviews"] = reviews
            record["lastReviewsRefresh"] = stamp
        if description is not None:
            record["description"] = description["description"]
            record["descriptionMeta"] = description["meta"]
            record["lastDescriptionRefresh"] = stamp
        if share:
            record["sl"] = share

        try:
            await self.shared_store.put_json(keys.item_core(item_id), record)
        except StoreError as e:
            log.warning(f"[item {item_id}] core record write failed: {e}")
            result.errors.append("core_write")
            return

        result.core_written = True
        result.reviews_written = len(reviews) if reviews is not None else 0
        result.description_written = description is not None

    async def _refresh_shipping(self, planned: PlannedItem, meta: dict[str, Any], result: ItemResult, log) -> None:
        item_id = planned.id
        if self.refresh_shipping:
            targets = list(planned.markets)
        else:
            targets = is_shipping_stale(meta, item_id, planned.markets).stale_markets

        if targets:
            fetched = await self.shipping_fetcher.fetch_markets(item_id, targets)
        else:
            fetched = {}

        stamp = now_iso()
        for market in targets:
            res = fetched.get(market)
            if res is None or not res.ok:
                result.shipping_failed.append(market)
                metrics.record_shipping_write(market, False)
                continue
            record = {
                "id": item_id,
                "market": market,
                "options": res.options,
                "warnings": res.warnings,
                "lastShippingRefresh": stamp,
            }
            try:
                await self.market_store_for(market).put_json(keys.market_shipping(item_id), record)
            except StoreError as e:
                log.warning(f"[item {item_id}] [{market}] shipping write failed: {e}")
                result.shipping_failed.append(market)
                metrics.record_shipping_write(market, False)
                continue
            metrics.record_shipping_write(market, True)
            result.shipping_written.append(market)
            summary = summarize_shipping(res.options)
            if summary:
                result.shipping_summary[market] = summary

        if result.shipping_failed:
            result.errors.append("shipping")
            metrics.record_item_failure("shipping")

        if result.shipping_written or item_id in meta:
            update_shipping_meta(
                meta,
                item_id,
                result.shipping_written,
                index_lua=planned.lua,
                full_crawl=result.description_written,
            )
