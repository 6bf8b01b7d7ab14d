"""Paged seller review fetches with the peek/skip optimization."""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Optional

import httpx

from mirror_crawler import metrics
from mirror_crawler.config import settings
from mirror_crawler.ingest.http_client import PermanentFetchError, TransientFetchError, get_json_with_fallback
from mirror_crawler.parse.reviews import newest_review, normalize_reviews
from mirror_crawler.sellers.review_cache import SellerReviewCache

logger = logging.getLogger(__name__)

PEEK_SIZE = 20


@dataclass
class PagedReviews:
    reviews: list[dict] = field(default_factory=list)
    source_fetched: int = 0
    pages: list[dict] = field(default_factory=list)
    page_size: int = 0


@dataclass
class SellerReviewsOutcome:
    reviews: list[dict]
    meta: dict[str, Any]


async def fetch_user_reviews_page(
    client: httpx.AsyncClient,
    seller_id: str,
    offset: int,
    page_size: int,
    hosts: list[str],
    timeout: float = 30.0,
) -> tuple[list[dict], str]:
    """One page of reviews received by a seller; host fallback on 5xx/network only."""
    path = f"/core/api/reviews/user/{seller_id}/received?first={offset}&n={page_size}&requireMedia=false"
    data, url = await get_json_with_fallback(client, path, hosts, timeout)
    message = data.get("message") if isinstance(data, dict) else None
    reviews = message.get("reviews") if isinstance(message, dict) else None
    if not isinstance(reviews, list):
        raise PermanentFetchError(f"Unexpected review payload from {url}")
    return reviews, url


async def fetch_seller_reviews_paged(
    client: httpx.AsyncClient,
    seller_id: str,
    page_size: int = 100,
    max_store: int = 300,
    retries: int = 3,
    hosts: Optional[list[str]] = None,
    backoff: float = 0.5,
    sleep=asyncio.sleep,
) -> PagedReviews:
    """
    Page through a seller's received reviews.

    Stops when `max_store` reviews are held, a page is empty, or a page comes
    back shorter than `page_size`. Each page is retried up to `retries` times
    with linear backoff (`backoff * attempt` seconds) on transient failures;
    a 4xx fails immediately.

    Raises:
        FetchError: when a page cannot be fetched
    """
    hosts = hosts or settings.site_hosts
    out = PagedReviews(page_size=page_size)
    offset = 0

    while len(out.reviews) < max_store:
        page: list[dict] = []
        url = ""
        for attempt in range(1, retries + 1):
            try:
                page, url = await fetch_user_reviews_page(client, seller_id, offset, page_size, hosts)
                break
            except TransientFetchError as e:
                if attempt >= retries:
                    raise
                logger.debug(f"[seller {seller_id}] review page offset={offset} attempt {attempt} failed: {e}")
                await sleep(backoff * attempt)

        out.source_fetched += len(page)
        out.pages.append({
            "url": url,
            "count": len(page),
            "hasItem": any(isinstance(r, dict) and isinstance(r.get("item"), dict) for r in page),
        })
        if not page:
            break
        out.reviews.extend(page[: max_store - len(out.reviews)])
        if len(page) < page_size:
            break
        offset += len(page)

    return out


def _merge_reviews(fresh: list[dict], previous: list[dict], limit: int) -> list[dict]:
    seen = set()
    merged = []
    for review in list(fresh) + list(previous or []):
        rid = review.get("id")
        if rid is not None:
            if rid in seen:
                continue
            seen.add(rid)
        merged.append(review)
    return merged[:limit]


async def collect_seller_reviews(
    client: httpx.AsyncClient,
    seller_id: str,
    cache: SellerReviewCache,
    previous: Optional[list[dict]] = None,
    page_size: Optional[int] = None,
    max_store: Optional[int] = None,
    enable_skip: Optional[bool] = None,
    hosts: Optional[list[str]] = None,
    sleep=asyncio.sleep,
) -> SellerReviewsOutcome:
    """
    Fetch a seller's reviews, peeking first when skipping is enabled.

    When the peeked newest review is not newer than the cached watermark (and
    the cache entry is fresh), the full fetch is skipped and the peeked reviews
    are merged with the previously stored ones (`mode=peek`). Otherwise the
    full paged fetch runs (`mode=paged`). The watermark is updated either way.
    """
    page_size = page_size or settings.seller_reviews_page_size
    max_store = max_store or settings.seller_reviews_max_store
    enable_skip = settings.seller_reviews_enable_skip if enable_skip is None else enable_skip

    if enable_skip:
        peek = await fetch_seller_reviews_paged(
            client, seller_id, min(PEEK_SIZE, page_size), min(PEEK_SIZE, max_store), hosts=hosts, sleep=sleep,
        )
        peeked = normalize_reviews(peek.reviews, include_item=True)
        created, review_id = newest_review(peeked)
        if cache.should_skip(seller_id, created):
            cache.update(seller_id, created, review_id)
            metrics.record_seller_reviews("peek")
            reviews = _merge_reviews(peeked, previous or [], max_store)
            logger.info(f"[seller {seller_id}] reviews unchanged, reusing {len(reviews)} (mode=peek)")
            return SellerReviewsOutcome(
                reviews=reviews,
                meta={
                    "fetched": len(peeked),
                    "sourceFetched": peek.source_fetched,
                    "mode": "peek",
                    "pageSizeRequested": peek.page_size,
                    "pages": peek.pages,
                },
            )

    full = await fetch_seller_reviews_paged(client, seller_id, page_size, max_store, hosts=hosts, sleep=sleep)
    reviews = normalize_reviews(full.reviews, include_item=True)
    created, review_id = newest_review(reviews)
    cache.update(seller_id, created, review_id)
    metrics.record_seller_reviews("paged")
    logger.info(f"[seller {seller_id}] reviews stored {len(reviews)} of {full.source_fetched} (mode=paged)")
    return SellerReviewsOutcome(
        reviews=reviews,
        meta={
            "fetched": len(reviews),
            "sourceFetched": full.source_fetched,
            "mode": "paged",
            "pageSizeRequested": page_size,
            "pages": full.pages,
        },
    )
