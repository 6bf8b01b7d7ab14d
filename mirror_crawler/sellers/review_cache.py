"""Per-seller newest-review watermark used to skip unchanged review sets."""

import logging
from datetime import datetime, timedelta
from typing import Any, Optional

from mirror_crawler.persistence import keys
from mirror_crawler.persistence.blob_store import BlobStore, StoreError
from mirror_crawler.utils.timeutil import is_newer, parse_ts, to_iso, utc_now

logger = logging.getLogger(__name__)

DEFAULT_MAX_AGE_DAYS = 2


class SellerReviewCache:
    """
    Map of seller id -> {sellerId, newestReviewCreated, newestReviewId, updatedAt}.

    `newestReviewCreated` never moves backwards; `updatedAt` is refreshed on
    every fetch so the entry stays usable for skipping.
    """

    def __init__(self, entries: Optional[dict[str, Any]] = None, max_age_days: int = DEFAULT_MAX_AGE_DAYS):
        self.entries: dict[str, dict] = dict(entries or {})
        self.max_age_days = max_age_days

    def get(self, seller_id: str) -> Optional[dict]:
        return self.entries.get(str(seller_id))

    def should_skip(self, seller_id: str, candidate_created: Any, now: Optional[datetime] = None) -> bool:
        """
        True when a full review fetch can be skipped.

        Requires a cache entry updated within `max_age_days` and a candidate
        (newest peeked review) that is not newer than the cached watermark.
        """
        entry = self.get(seller_id)
        if not entry:
            return False
        updated = parse_ts(entry.get("updatedAt"))
        now = now or utc_now()
        if updated is None or now - updated > timedelta(days=self.max_age_days):
            return False
        if candidate_created is None:
            return False
        cached = entry.get("newestReviewCreated")
        if cached is None:
            return False
        return not is_newer(candidate_created, cached)

    def update(self, seller_id: str, created: Any, review_id: Any = None, now: Optional[datetime] = None) -> dict:
        """Advance the watermark if `created` is newer; always refresh `updatedAt`."""
        seller_id = str(seller_id)
        stamp = to_iso(now or utc_now())
        entry = dict(self.entries.get(seller_id) or {})
        entry["sellerId"] = seller_id

        if created is not None and (
            entry.get("newestReviewCreated") is None or is_newer(created, entry["newestReviewCreated"])
        ):
            entry["newestReviewCreated"] = created
            entry["newestReviewId"] = review_id
        entry["updatedAt"] = stamp
        self.entries[seller_id] = entry
        return entry

    @classmethod
    async def load(cls, store: BlobStore, max_age_days: int = DEFAULT_MAX_AGE_DAYS) -> "SellerReviewCache":
        try:
            data = await store.get_json(keys.SELLER_REVIEW_CACHE)
        except StoreError as e:
            logger.warning(f"Failed to load seller review cache, starting empty: {e}")
            data = None
        return cls(data if isinstance(data, dict) else {}, max_age_days=max_age_days)

    async def save(self, store: BlobStore) -> bool:
        try:
            await store.put_json(keys.SELLER_REVIEW_CACHE, self.entries)
            return True
        except StoreError as e:
            logger.warning(f"Failed to persist seller review cache: {e}")
            return False
