"""Tests for the blob store backends."""

import pytest

from mirror_crawler.persistence import keys
from mirror_crawler.persistence.blob_store import FileBlobStore, MemoryBlobStore, StoreError


class TestFileBlobStore:

    @pytest.mark.asyncio
    async def test_put_get_and_list(self, tmp_path):
        store = FileBlobStore("shared", base_dir=tmp_path)
        await store.put_json(keys.item_core("1"), {"id": "1", "name": "Ünïcode"})
        await store.put_json(keys.item_core("2"), {"id": "2"})
        await store.put_json(keys.SHIPPING_META, {})

        assert await store.get_json(keys.item_core("1")) == {"id": "1", "name": "Ünïcode"}
        assert await store.list(keys.ITEMS_CORE_PREFIX) == [keys.item_core("1"), keys.item_core("2")]
        assert await store.list("aggregates/ship") == [keys.SHIPPING_META]
        assert not list(tmp_path.rglob("*.tmp"))

    @pytest.mark.asyncio
    async def test_missing_key_and_empty_prefix(self, tmp_path):
        store = FileBlobStore("market-gb", base_dir=tmp_path)
        assert await store.get_json("nope.json") is None
        assert await store.list("nothing/") == []

    @pytest.mark.asyncio
    async def test_namespaces_are_isolated(self, tmp_path):
        gb = FileBlobStore("market-gb", base_dir=tmp_path)
        de = FileBlobStore("market-de", base_dir=tmp_path)
        await gb.put_json(keys.MARKET_INDEX, [1])
        assert await de.get_json(keys.MARKET_INDEX) is None

    @pytest.mark.asyncio
    async def test_key_cannot_escape_root(self, tmp_path):
        store = FileBlobStore("shared", base_dir=tmp_path)
        with pytest.raises(StoreError):
            await store.put_json("../outside.json", {})

    @pytest.mark.asyncio
    async def test_corrupt_file_raises_store_error(self, tmp_path):
        store = FileBlobStore("shared", base_dir=tmp_path)
        (tmp_path / "shared" / "bad.json").write_text("{not json")
        with pytest.raises(StoreError):
            await store.get_json("bad.json")


@pytest.mark.asyncio
async def test_memory_store_copies_values():
    store = MemoryBlobStore()
    value = {"reviews": [1]}
    await store.put_json("k.json", value)
    value["reviews"].append(2)

    assert await store.get_json("k.json") == {"reviews": [1]}
    assert store.writes == ["k.json"]
