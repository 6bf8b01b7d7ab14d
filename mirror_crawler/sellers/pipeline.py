"""Per-seller enrichment: page fetch, field extraction, share link, summary and reviews."""

import logging
from dataclasses import dataclass, field
from typing import Any, Optional

from mirror_crawler import metrics
from mirror_crawler.config import settings
from mirror_crawler.ingest.escalation import AttemptSpec
from mirror_crawler.ingest.http_client import FetchError
from mirror_crawler.ingest.seller_pages import SellerPageClient
from mirror_crawler.logging_config import get_logger
from mirror_crawler.parse.manifesto import extract_manifesto
from mirror_crawler.parse.seller_meta import (
    extract_online_and_joined,
    extract_seller_image_url,
    scan_online_and_joined,
)
from mirror_crawler.persistence import keys
from mirror_crawler.persistence.blob_store import BlobStore, StoreError
from mirror_crawler.sellers.planner import build_seller_state_entry
from mirror_crawler.sellers.review_cache import SellerReviewCache
from mirror_crawler.sellers.reviews import collect_seller_reviews
from mirror_crawler.utils.timeutil import now_iso

logger = logging.getLogger(__name__)

MODE_FULL = "full"
MODE_REVIEWS = "reviews"

ESSENTIAL_FIELDS = ("image", "share", "manifesto", "reviews")


@dataclass
class SellerTask:
    seller_id: str
    mode: str = MODE_FULL
    name: Optional[str] = None
    url: Optional[str] = None
    force_share: bool = False


@dataclass
class SellerResult:
    seller_id: str
    mode: str
    written: bool = False
    tier: Optional[str] = None
    reviews_mode: Optional[str] = None
    essential_missing: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    state_entry: Optional[dict[str, Any]] = None


def essential_missing(profile: dict[str, Any]) -> list[str]:
    """Which essential fields a merged profile still lacks."""
    manifesto = profile.get("manifesto")
    present = {
        "image": bool(profile.get("imageUrl")),
        "share": bool(profile.get("share")),
        "manifesto": isinstance(manifesto, str) and bool(manifesto.strip()),
        "reviews": bool(profile.get("reviews")),
    }
    return [name for name in ESSENTIAL_FIELDS if not present[name]]


class SellerEnrichmentPipeline:
    """
    Enriches one seller per call; intended to run inside a TaskPool.

    Extraction steps run sequentially against one fetched page and the
    profile record is written exactly once at the end. Fields that could not
    be captured this time keep their stored values.
    """

    def __init__(
        self,
        pages: SellerPageClient,
        store: BlobStore,
        review_cache: SellerReviewCache,
        images: Optional[dict[str, str]] = None,
        specs: Optional[list[AttemptSpec]] = None,
        refresh_share: Optional[bool] = None,
        reviews_page_size: Optional[int] = None,
        reviews_max_store: Optional[int] = None,
        reviews_enable_skip: Optional[bool] = None,
        manifesto_retry_timeout: Optional[float] = None,
        sleep=None,
    ):
        self.pages = pages
        self.store = store
        self.review_cache = review_cache
        self.images = images if images is not None else {}
        self.specs = specs
        self.refresh_share = settings.seller_refresh_share if refresh_share is None else refresh_share
        self.reviews_page_size = reviews_page_size or settings.seller_reviews_page_size
        self.reviews_max_store = reviews_max_store or settings.seller_reviews_max_store
        self.reviews_enable_skip = (
            settings.seller_reviews_enable_skip if reviews_enable_skip is None else reviews_enable_skip
        )
        self.manifesto_retry_timeout = manifesto_retry_timeout or settings.seller_fetch_t3_seconds
        self._sleep = sleep

    async def enrich(self, task: SellerTask) -> SellerResult:
        """
        Run every enrichment step for one seller and persist the merged profile.

        Raises:
            StoreError: when the existing profile cannot be read (the task
                fails rather than overwrite stored fields)
        """
        seller_id = task.seller_id
        log = get_logger(__name__, seller_id=seller_id, mode=task.mode)
        result = SellerResult(seller_id=seller_id, mode=task.mode)

        existing = await self.store.get_json(keys.seller_profile(seller_id))
        existing = existing if isinstance(existing, dict) else {}
        updates: dict[str, Any] = {"sellerId": seller_id}
        if task.name:
            updates["sellerName"] = task.name
        if task.url:
            updates["sellerUrl"] = task.url

        if task.mode == MODE_FULL:
            await self._enrich_from_page(task, existing, updates, result, log)

        await self._collect_reviews(seller_id, existing, updates, result, log)

        profile = {**existing, **updates}
        try:
            await self.store.put_json(keys.seller_profile(seller_id), profile)
            result.written = True
        except StoreError as e:
            log.warning(f"[seller {seller_id}] profile write failed: {e}")
            result.errors.append("write")

        if profile.get("imageUrl"):
            self.images[seller_id] = profile["imageUrl"]
        result.essential_missing = essential_missing(profile)
        result.state_entry = build_seller_state_entry(profile)

        status = "ok" if result.written and not result.errors else "partial"
        metrics.record_seller(status)
        if result.essential_missing and task.mode == MODE_FULL:
            log.info(f"[seller {seller_id}] still missing: {', '.join(result.essential_missing)}")
        return result

    async def _enrich_from_page(self, task: SellerTask, existing: dict, updates: dict, result: SellerResult, log):
        seller_id = task.seller_id
        fetched = await self.pages.fetch_page(seller_id, self.specs)
        html = fetched.html
        result.tier = fetched.tier
        if html is None:
            result.errors.append("page")
        else:
            image = extract_seller_image_url(html)
            if image:
                updates["imageUrl"] = image

            status = extract_online_and_joined(html)
            if not status["online"] and not status["joined"]:
                status = scan_online_and_joined(html)
            for name in ("online", "joined"):
                if status[name]:
                    updates[name] = status[name]

            manifesto = extract_manifesto(html)
            if manifesto["manifesto"] is None:
                log.info(f"[seller {seller_id}] manifesto empty, retrying with a larger budget")
                retry_html = await self.pages.fetch_page_large(seller_id, self.manifesto_retry_timeout)
                if retry_html:
                    manifesto = extract_manifesto(retry_html)
            if manifesto["manifesto"] is not None:
                updates["manifesto"] = manifesto["manifesto"]
                updates["manifestoMeta"] = manifesto["meta"]

            updates["lastEnrichedAt"] = now_iso()

        share = existing.get("share")
        if not share or task.force_share or self.refresh_share:
            share = await self.pages.fetch_share_link(seller_id, html)
            if share:
                updates["share"] = share
            else:
                result.errors.append("share")

        summary = await self.pages.fetch_user_summary(seller_id)
        for name in ("statistics", "summary"):
            if summary.get(name) is not None:
                updates[name] = summary[name]

    async def _collect_reviews(self, seller_id: str, existing: dict, updates: dict, result: SellerResult, log):
        kwargs = {"sleep": self._sleep} if self._sleep else {}
        try:
            outcome = await collect_seller_reviews(
                self.pages.client,
                seller_id,
                self.review_cache,
                previous=existing.get("reviews") if isinstance(existing.get("reviews"), list) else [],
                page_size=self.reviews_page_size,
                max_store=self.reviews_max_store,
                enable_skip=self.reviews_enable_skip,
                hosts=self.pages.hosts,
                **kwargs,
            )
        except FetchError as e:
            log.warning(f"[seller {seller_id}] reviews fetch failed: {e}")
            result.errors.append("reviews")
            return
        updates["reviews"] = outcome.reviews
        updates["reviewsMeta"] = outcome.meta
        updates["lastReviewsRefresh"] = now_iso()
        result.reviews_mode = outcome.meta.get("mode")
