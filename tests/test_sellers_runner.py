"""Tests for the sellers stage orchestration."""

import httpx
import pytest

from conftest import mock_client
from mirror_crawler.items.worklist import MarketIndex
from mirror_crawler.persistence import keys
from mirror_crawler.sellers.pipeline import MODE_FULL, MODE_REVIEWS, SellerResult
from mirror_crawler.sellers.planner import build_seller_state_entry, save_seller_state
from mirror_crawler.sellers.runner import SellersRunOptions, run_sellers_stage
from mirror_crawler.sellers.worklist import build_seller_worklist
from mirror_crawler.utils.timeutil import now_iso


class FakePipeline:
    """Records tasks; seller `gap` lacks a share link until forced."""

    def __init__(self, client, store, review_cache, images):
        self.store = store
        self.review_cache = review_cache
        self.images = images
        self.tasks = []

    async def enrich(self, task):
        self.tasks.append(task)
        if task.seller_id == "boom":
            raise RuntimeError("exploded")
        profile = {"lastEnrichedAt": now_iso(), "imageUrl": f"https://img/{task.seller_id}", "reviews": [{"id": 1}]}
        if task.seller_id != "gap" or task.force_share:
            profile["share"] = f"https://share.link/{task.seller_id}"
        self.images[task.seller_id] = profile["imageUrl"]
        self.review_cache.update(task.seller_id, 100, 1)
        missing = [] if profile.get("share") else ["share"]
        return SellerResult(
            task.seller_id,
            task.mode,
            written=True,
            essential_missing=missing,
            state_entry=build_seller_state_entry(profile),
        )


def _not_found(request):
    return httpx.Response(404)


class TestRunSellersStage:

    def setup_method(self):
        self.pipelines = []

    def _factory(self, **kwargs):
        pipeline = FakePipeline(**kwargs)
        self.pipelines.append(pipeline)
        return pipeline

    async def _run(self, store, ids, **kwargs):
        async with mock_client(_not_found) as client:
            return await run_sellers_stage(
                SellersRunOptions(ids=ids, concurrency=2, force=False, **kwargs),
                client=client,
                store=store,
                pipeline_factory=self._factory,
            )

    @pytest.mark.asyncio
    async def test_new_sellers_enriched_and_aggregates_flushed(self, shared_store):
        summary = await self._run(shared_store, ["s1", "s2"])

        assert summary.to_enrich == 2
        assert summary.written == 2
        assert [t.mode for t in self.pipelines[0].tasks] == [MODE_FULL, MODE_FULL]
        assert await shared_store.get_json(keys.SELLER_IMAGES) == {"s1": "https://img/s1", "s2": "https://img/s2"}
        assert set(await shared_store.get_json(keys.SELLER_REVIEW_CACHE)) == {"s1", "s2"}
        state = await shared_store.get_json(keys.SELLER_STATE)
        assert set(state["sellers"]) == {"s1", "s2"}
        assert shared_store.writes.count(keys.SELLER_STATE) == 1

    @pytest.mark.asyncio
    async def test_fresh_sellers_only_refresh_reviews(self, shared_store):
        await self._run(shared_store, ["s1"])
        self.pipelines.clear()

        summary = await self._run(shared_store, ["s1", "s3"])

        assert summary.fresh == 1 and summary.to_enrich == 1
        modes = {t.seller_id: t.mode for t in self.pipelines[0].tasks}
        assert modes == {"s1": MODE_REVIEWS, "s3": MODE_FULL}

    @pytest.mark.asyncio
    async def test_essential_gap_retried_with_forced_share(self, shared_store):
        summary = await self._run(shared_store, ["gap", "ok"])

        tasks = self.pipelines[0].tasks
        retries = [t for t in tasks if t.force_share]
        assert [t.seller_id for t in retries] == ["gap"]
        assert summary.retried == 1
        assert summary.essential_missing == 0

    @pytest.mark.asyncio
    async def test_failing_seller_counted_and_others_saved(self, shared_store):
        summary = await self._run(shared_store, ["boom", "s1"])

        assert summary.failed == 1
        assert summary.written == 1
        state = await shared_store.get_json(keys.SELLER_STATE)
        assert set(state["sellers"]) == {"s1"}

    @pytest.mark.asyncio
    async def test_existing_aggregate_entries_preserved(self, shared_store):
        await save_seller_state(shared_store, {"old": {"lastEnrichedAt": None}})
        await self._run(shared_store, ["s1"])

        state = await shared_store.get_json(keys.SELLER_STATE)
        assert set(state["sellers"]) == {"old", "s1"}


def test_seller_worklist_dedupes_and_keeps_first_name():
    indexes = [
        MarketIndex("GB", [{"sid": 7}, {"sellerId": "8", "sellerName": "Eight"}, {"sn": "none"}]),
        MarketIndex("DE", [{"sid": "7", "sn": "Seven"}, {"sid": "8", "sn": "Other"}]),
    ]
    refs = build_seller_worklist(indexes, domain="example.net")

    assert [(r.id, r.name) for r in refs] == [("7", "Seven"), ("8", "Eight")]
    assert refs[0].url == "https://example.net/seller/7"
