"""Per-item, per-market shipping freshness tracking."""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Optional

from mirror_crawler.persistence import keys
from mirror_crawler.persistence.blob_store import BlobStore, StoreError
from mirror_crawler.utils.timeutil import parse_ts, to_iso, utc_now

logger = logging.getLogger(__name__)

SHIPPING_STALE_DAYS = 7


@dataclass
class StalenessResult:
    needs_refresh: bool
    stale_markets: list[str] = field(default_factory=list)


def is_shipping_stale(
    meta: dict[str, Any],
    item_id: str,
    target_markets: list[str],
    now: Optional[datetime] = None,
    stale_days: int = SHIPPING_STALE_DAYS,
) -> StalenessResult:
    """
    Which of `target_markets` need a shipping refetch for this item.

    A market is stale when its own timestamp (falling back to the entry's
    `lastRefresh`) is missing or older than `stale_days`. No entry at all
    means every target market is stale.
    """
    entry = meta.get(item_id)
    if not isinstance(entry, dict):
        return StalenessResult(bool(target_markets), list(target_markets))

    cutoff = (now or utc_now()) - timedelta(days=stale_days)
    markets = entry.get("markets") if isinstance(entry.get("markets"), dict) else {}
    stale = []
    for market in target_markets:
        ts = parse_ts(markets.get(market) or entry.get("lastRefresh"))
        if ts is None or ts < cutoff:
            stale.append(market)
    return StalenessResult(bool(stale), stale)


def update_shipping_meta(
    meta: dict[str, Any],
    item_id: str,
    refreshed_markets: list[str],
    index_lua: Optional[str] = None,
    full_crawl: bool = False,
    now: Optional[datetime] = None,
) -> dict[str, Any]:
    """
    Record a refresh in the in-memory aggregate and return the updated entry.

    Refreshed markets and `lastRefresh` get the current time; `lastRefresh`
    moves even when no market was refreshed. `lastIndexedLua` is set when a
    token is given. `lastFullCrawl` only ever moves forward.
    """
    stamp = to_iso(now or utc_now())
    entry = dict(meta.get(item_id) or {})
    markets = dict(entry.get("markets") or {})

    for market in refreshed_markets:
        markets[market] = stamp
    entry["markets"] = markets
    entry["lastRefresh"] = stamp
    if index_lua:
        entry["lastIndexedLua"] = index_lua
    if full_crawl:
        previous = parse_ts(entry.get("lastFullCrawl"))
        if previous is None or previous < parse_ts(stamp):
            entry["lastFullCrawl"] = stamp

    meta[item_id] = entry
    return entry


async def load_shipping_meta(store: BlobStore) -> dict[str, Any]:
    """Load the whole aggregate in one read; failures yield an empty map."""
    try:
        data = await store.get_json(keys.SHIPPING_META)
    except StoreError as e:
        logger.warning(f"Failed to load shipping meta, starting empty: {e}")
        return {}
    return data if isinstance(data, dict) else {}


async def save_shipping_meta(store: BlobStore, meta: dict[str, Any]) -> bool:
    try:
        await store.put_json(keys.SHIPPING_META, meta)
        return True
    except StoreError as e:
        logger.warning(f"Failed to persist shipping meta ({len(meta)} entries): {e}")
        return False
