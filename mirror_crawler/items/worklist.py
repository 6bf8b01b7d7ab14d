"""Cross-market item worklist: dedup, presence tracking and partition by existing ids."""

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from mirror_crawler.persistence import keys
from mirror_crawler.persistence.blob_store import BlobStore, StoreError
from mirror_crawler.utils.timeutil import is_newer

logger = logging.getLogger(__name__)


@dataclass
class MarketIndex:
    """One market's index snapshot."""

    market: str
    items: list[dict[str, Any]] = field(default_factory=list)


@dataclass
class WorkItem:
    id: str
    markets: list[str]


@dataclass
class Worklist:
    unique_ids: list[str] = field(default_factory=list)
    to_crawl: list[WorkItem] = field(default_factory=list)
    already_have: list[WorkItem] = field(default_factory=list)
    presence: dict[str, list[str]] = field(default_factory=dict)
    id_lua: dict[str, str] = field(default_factory=dict)


def index_entry_id(entry: Any) -> Optional[str]:
    """Item id of an index entry: first of refNum, ref, id; stringified and trimmed."""
    if not isinstance(entry, dict):
        return None
    for name in ("refNum", "ref", "id"):
        value = entry.get(name)
        if value is not None:
            ident = str(value).strip()
            return ident or None
    return None


def build_worklist(indexes: list[MarketIndex], existing_ids: set[str]) -> Worklist:
    """
    Merge market indexes into one deduplicated worklist.

    Every entry is visited once. Ids keep first-seen order; each id's markets
    keep index order. Ids already in `existing_ids` go to `already_have`, the
    rest to `to_crawl`. The newest `lua`/`lastUpdatedAt` token per id is kept.

    Args:
        indexes: Market index snapshots
        existing_ids: Ids already present in the shared core store

    Returns:
        Worklist
    """
    presence: dict[str, list[str]] = {}
    id_lua: dict[str, str] = {}

    for index in indexes:
        for entry in index.items:
            ident = index_entry_id(entry)
            if not ident:
                continue
            markets = presence.setdefault(ident, [])
            if index.market not in markets:
                markets.append(index.market)

            lua = entry.get("lua") or entry.get("lastUpdatedAt")
            if lua and (ident not in id_lua or is_newer(lua, id_lua[ident])):
                id_lua[ident] = str(lua)

    worklist = Worklist(unique_ids=list(presence), presence=presence, id_lua=id_lua)
    for ident, markets in presence.items():
        item = WorkItem(id=ident, markets=list(markets))
        if ident in existing_ids:
            worklist.already_have.append(item)
        else:
            worklist.to_crawl.append(item)
    return worklist


async def load_market_indexes(
    markets: list[str],
    store_for: Callable[[str], BlobStore],
) -> list[MarketIndex]:
    """Read each market's `indexed_items.json`. Unreadable indexes count as empty."""
    indexes = []
    for market in markets:
        try:
            data = await store_for(market).get_json(keys.MARKET_INDEX)
        except StoreError as e:
            logger.warning(f"[{market}] failed to read market index: {e}")
            data = None
        if isinstance(data, dict):
            data = data.get("items")
        items = [e for e in data if isinstance(e, dict)] if isinstance(data, list) else []
        logger.info(f"[{market}] index entries: {len(items)}")
        indexes.append(MarketIndex(market=market, items=items))
    return indexes


async def load_existing_item_ids(store: BlobStore) -> set[str]:
    """Ids that already have a core record in the shared store."""
    try:
        found = await store.list(keys.ITEMS_CORE_PREFIX)
    except StoreError as e:
        logger.warning(f"Failed to list existing items, treating all as new: {e}")
        return set()
    ids = set()
    for key in found:
        ident = keys.id_from_key(key, keys.ITEMS_CORE_PREFIX)
        if ident:
            ids.add(ident)
    return ids
