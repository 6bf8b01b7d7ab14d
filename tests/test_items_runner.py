"""End-to-end tests for the items stage over in-memory stores."""

import httpx
import pytest

from conftest import HOSTS, json_response, mock_client
from mirror_crawler.items.runner import ItemsRunOptions, process_item_step, run_items_stage
from mirror_crawler.items.shipping import MarketShippingResult
from mirror_crawler.persistence import keys

ITEM_PAGE = '<html><body><h1>Widget</h1><div class="item-description"><p>Nice widget.</p></div></body></html>'
LUA = "2025-05-01T00:00:00.000Z"


def _site(request: httpx.Request) -> httpx.Response:
    if request.url.path.startswith("/core/api/reviews/item/"):
        return json_response({"message": {"reviews": [{"id": 1, "created": 1_700_000_000, "content": []}]}})
    if request.url.path.startswith("/item/"):
        return httpx.Response(200, text=ITEM_PAGE)
    return httpx.Response(404)


class StaticShipping:

    def __init__(self):
        self.calls = []

    async def fetch_markets(self, item_id, markets):
        self.calls.append((item_id, list(markets)))
        return {m: MarketShippingResult(market=m, ok=True, options=[{"label": "Post", "cost": 2.0}]) for m in markets}


async def _seed_indexes(market_stores):
    await market_stores("GB").put_json(keys.MARKET_INDEX, [{"refNum": "1", "lua": LUA}, {"refNum": "2"}])
    await market_stores("DE").put_json(keys.MARKET_INDEX, {"items": [{"refNum": "2"}]})


class TestRunItemsStage:

    def setup_method(self):
        self.shipping = StaticShipping()

    async def _run(self, client, shared_store, market_stores, **kwargs):
        options = ItemsRunOptions(markets=["GB", "DE"], concurrency=2, force=False, refresh_shipping=False, **kwargs)
        return await run_items_stage(options, client, shared_store, market_stores, self.shipping)

    @pytest.mark.asyncio
    async def test_first_run_crawls_everything_fully(self, shared_store, market_stores):
        await _seed_indexes(market_stores)

        async with mock_client(_site) as client:
            summary = await self._run(client, shared_store, market_stores)

        assert (summary.unique_ids, summary.to_crawl, summary.already_have) == (2, 2, 0)
        assert summary.planned_full == 2
        assert summary.written == 2 and summary.failed == 0
        assert summary.shipping_writes == 3
        assert summary.meta_saved is True

        meta = await shared_store.get_json(keys.SHIPPING_META)
        assert set(meta) == {"1", "2"}
        assert set(meta["2"]["markets"]) == {"GB", "DE"}
        assert meta["1"]["lastIndexedLua"] == LUA
        assert await market_stores("DE").get_json(keys.market_shipping("2")) is not None

    @pytest.mark.asyncio
    async def test_second_run_is_incremental(self, shared_store, market_stores):
        await _seed_indexes(market_stores)

        async with mock_client(_site) as client:
            await self._run(client, shared_store, market_stores)
            self.shipping.calls.clear()
            summary = await self._run(client, shared_store, market_stores)

        assert summary.already_have == 2
        assert summary.planned_reviews_only == 2
        assert self.shipping.calls == []

    @pytest.mark.asyncio
    async def test_limit_caps_planned_items(self, shared_store, market_stores):
        await _seed_indexes(market_stores)

        async with mock_client(_site) as client:
            summary = await self._run(client, shared_store, market_stores, limit=1)

        assert summary.processed == 1

    @pytest.mark.asyncio
    async def test_explicit_ids_use_all_markets_when_unindexed(self, shared_store, market_stores):
        async with mock_client(_site) as client:
            summary = await self._run(client, shared_store, market_stores, ids=[" 77 "])

        assert summary.processed == 1
        assert self.shipping.calls == [("77", ["GB", "DE"])]

    @pytest.mark.asyncio
    async def test_share_aggregate_fills_missing_links(self, shared_store, market_stores):
        await _seed_indexes(market_stores)
        await shared_store.put_json(keys.ITEM_SHARES, {"1": "https://littlebiggy.net/link/One1"})

        async with mock_client(_site) as client:
            summary = await self._run(client, shared_store, market_stores)

        assert summary.shares_new == 0
        assert (await shared_store.get_json(keys.item_core("1")))["sl"] == "https://littlebiggy.net/link/One1"
        assert "sl" not in await shared_store.get_json(keys.item_core("2"))


class TestProcessItemStep:

    @pytest.mark.asyncio
    async def test_rerun_merges_instead_of_duplicating(self, shared_store, market_stores):
        shipping = StaticShipping()
        await shared_store.put_json(keys.SHIPPING_META, {"other": {"lastRefresh": "2025-01-01T00:00:00Z"}})

        async with mock_client(_site) as client:
            for _ in range(2):
                result = await process_item_step(
                    "5", ["GB"], client, shared_store, market_stores, shipping, index_lua=LUA, force=True,
                )

        assert result.ok
        core = await shared_store.get_json(keys.item_core("5"))
        assert len(core["reviews"]) == 1
        meta = await shared_store.get_json(keys.SHIPPING_META)
        assert set(meta) == {"other", "5"}
        assert meta["5"]["lastIndexedLua"] == LUA
