"""Tests for the cross-market worklist builder."""

import pytest

from mirror_crawler.items.worklist import (
    MarketIndex,
    build_worklist,
    index_entry_id,
    load_existing_item_ids,
    load_market_indexes,
)
from mirror_crawler.persistence import keys
from mirror_crawler.persistence.blob_store import MemoryBlobStore


def _indexes():
    return [
        MarketIndex("GB", [{"refNum": "a1"}, {"refNum": " b2 ", "lua": "2025-01-01T00:00:00Z"}, {"refNum": ""}]),
        MarketIndex("DE", [{"refNum": "b2", "lua": "2025-03-01T00:00:00Z"}, {"id": 99}, {"name": "no id"}]),
        MarketIndex("FR", [{"ref": "c3"}, {"refNum": "a1"}, {"refNum": "a1"}]),
    ]


class TestBuildWorklist:
    """Dedup, presence and partition."""

    def test_partition_is_disjoint_and_complete(self):
        worklist = build_worklist(_indexes(), existing_ids={"a1", "99", "zz"})

        crawl = {w.id for w in worklist.to_crawl}
        have = {w.id for w in worklist.already_have}
        assert crawl & have == set()
        assert crawl | have == set(worklist.unique_ids)
        assert have == {"a1", "99"}
        assert crawl == {"b2", "c3"}

    def test_ids_trimmed_and_empty_dropped(self):
        worklist = build_worklist(_indexes(), existing_ids=set())
        assert worklist.unique_ids == ["a1", "b2", "99", "c3"]

    def test_presence_tracks_markets_once(self):
        worklist = build_worklist(_indexes(), existing_ids=set())
        assert worklist.presence["a1"] == ["GB", "FR"]
        assert worklist.presence["b2"] == ["GB", "DE"]
        by_id = {w.id: w.markets for w in worklist.to_crawl}
        assert by_id["c3"] == ["FR"]

    def test_keeps_newest_index_token(self):
        worklist = build_worklist(_indexes(), existing_ids=set())
        assert worklist.id_lua == {"b2": "2025-03-01T00:00:00Z"}

    def test_empty_inputs(self):
        worklist = build_worklist([], existing_ids={"x"})
        assert worklist.unique_ids == []
        assert worklist.to_crawl == [] and worklist.already_have == []


def test_index_entry_id_preference():
    assert index_entry_id({"refNum": 5, "ref": "r", "id": "i"}) == "5"
    assert index_entry_id({"ref": "r", "id": "i"}) == "r"
    assert index_entry_id({"id": " 7 "}) == "7"
    assert index_entry_id({"refNum": "  "}) is None
    assert index_entry_id("nope") is None


@pytest.mark.asyncio
async def test_load_market_indexes_accepts_list_or_items_wrapper():
    stores = {
        "GB": MemoryBlobStore("market-gb", {keys.MARKET_INDEX: [{"refNum": "1"}]}),
        "DE": MemoryBlobStore("market-de", {keys.MARKET_INDEX: {"items": [{"refNum": "2"}, "junk"]}}),
        "FR": MemoryBlobStore("market-fr"),
    }
    indexes = await load_market_indexes(["GB", "DE", "FR"], stores.__getitem__)

    assert [i.market for i in indexes] == ["GB", "DE", "FR"]
    assert indexes[0].items == [{"refNum": "1"}]
    assert indexes[1].items == [{"refNum": "2"}]
    assert indexes[2].items == []


@pytest.mark.asyncio
async def test_load_existing_item_ids_from_core_keys():
    store = MemoryBlobStore(data={
        keys.item_core("a1"): {"id": "a1"},
        keys.item_core("b2"): {"id": "b2"},
        keys.SHIPPING_META: {},
    })
    assert await load_existing_item_ids(store) == {"a1", "b2"}
