"""Full vs reviews-only crawl planning."""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Optional

from mirror_crawler.utils.timeutil import is_newer, parse_ts, utc_now

MODE_FULL = "full"
MODE_REVIEWS_ONLY = "reviews-only"


@dataclass
class PlannedItem:
    id: str
    markets: list[str]
    mode: str
    lua: Optional[str] = None


@dataclass
class ModePlan:
    items: list[PlannedItem] = field(default_factory=list)
    index_changed_count: int = 0
    no_full_crawl_count: int = 0

    @property
    def full_count(self) -> int:
        return sum(1 for p in self.items if p.mode == MODE_FULL)

    @property
    def reviews_only_count(self) -> int:
        return sum(1 for p in self.items if p.mode == MODE_REVIEWS_ONLY)


def plan_item_modes(
    ids: list[str],
    presence: dict[str, list[str]],
    id_lua: dict[str, str],
    meta: dict[str, Any],
    force_all: bool = False,
    refresh_window_days: int = 80,
    now: Optional[datetime] = None,
) -> ModePlan:
    """
    Decide the crawl depth of every id.

    Rules, first match wins:
        1. force_all -> full
        2. no entry or no lastRefresh -> full
        3. lastRefresh but no lastFullCrawl -> full (counted in no_full_crawl_count)
        4. lastFullCrawl older than the refresh window -> full
        5. index token newer than lastIndexedLua (or none stored) -> full
           (counted in index_changed_count)
        6. otherwise -> reviews-only

    Args:
        ids: Unique item ids
        presence: id -> markets the item appears in
        id_lua: id -> index last-updated token
        meta: Shipping meta aggregate (id -> entry)
        force_all: Make everything full
        refresh_window_days: Full-crawl refresh window
        now: Current time (fixed in tests)
    """
    plan = ModePlan()

    if force_all:
        plan.items = [
            PlannedItem(id=i, markets=list(presence.get(i, [])), mode=MODE_FULL, lua=id_lua.get(i))
            for i in ids
        ]
        return plan

    cutoff = (now or utc_now()) - timedelta(days=refresh_window_days)

    for ident in ids:
        entry = meta.get(ident)
        lua = id_lua.get(ident)
        mode = MODE_REVIEWS_ONLY

        if not isinstance(entry, dict) or not entry.get("lastRefresh"):
            mode = MODE_FULL
        elif not entry.get("lastFullCrawl"):
            mode = MODE_FULL
            plan.no_full_crawl_count += 1
        else:
            last_full = parse_ts(entry.get("lastFullCrawl"))
            if last_full is None or last_full < cutoff:
                mode = MODE_FULL
            elif lua and (not entry.get("lastIndexedLua") or is_newer(lua, entry["lastIndexedLua"])):
                mode = MODE_FULL
                plan.index_changed_count += 1

        plan.items.append(PlannedItem(id=ident, markets=list(presence.get(ident, [])), mode=mode, lua=lua))

    return plan
