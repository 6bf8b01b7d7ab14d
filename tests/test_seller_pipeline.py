"""Tests for single-seller enrichment."""

from unittest.mock import AsyncMock

import httpx
import pytest

from conftest import HOSTS, json_response, mock_client
from mirror_crawler.ingest.escalation import AttemptSpec
from mirror_crawler.ingest.seller_pages import SellerPageClient
from mirror_crawler.persistence import keys
from mirror_crawler.sellers.pipeline import MODE_FULL, MODE_REVIEWS, SellerEnrichmentPipeline, SellerTask
from mirror_crawler.sellers.review_cache import SellerReviewCache
from mirror_crawler.worker.task_pool import TaskPool

FILLER = "<p>" + "Lorem ipsum dolor sit amet. " * 30 + "</p>"

SELLER_PAGE = f"""
<html><body>
<img class="softened" src="/img/spinner-bert.gif" data-src="https://cdn.littlebiggy.net/images/u/abc.jpg">
<div class="reginald Bp1">online today joined Mar 2021</div>
<div class="reginald Bp3"><div class="Bp0 gone">Manifesto</div><p>We ship fast.</p><p>Stealth packaging.</p></div>
<a href="https://share.link/AbC123">share</a>
{FILLER}
</body></html>
"""

BARE_PAGE = f"<html><body><div class=\"reginald Bp1\">online now</div>{FILLER}</body></html>"


class SellerSite:

    def __init__(self, page=SELLER_PAGE, broken=(), dropped=()):
        self.page = page
        self.broken = set(broken)
        # (host, path fragment) pairs whose connection drops mid-request
        self.dropped = list(dropped)
        self.paths: list[str] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        self.paths.append(path)
        seller_id = path.rstrip("/").split("/")[3] if path.startswith("/viewSubject/p/") else None
        if any(request.url.host == host and fragment in path for host, fragment in self.dropped):
            raise httpx.WriteError("connection dropped", request=request)
        if seller_id in self.broken:
            raise RuntimeError(f"parser exploded for {seller_id}")
        if seller_id is not None:
            return httpx.Response(200, text=self.page)
        if path.endswith("/summary"):
            return json_response({"message": {"seller": {"statistics": {"orders": 12}}, "summary": {"avg": 9.5}}})
        if path.endswith("/received"):
            return json_response({"message": {"reviews": [
                {"id": 1, "created": 1_700_000_000, "rating": 10, "author": {"id": 3}, "content": []},
            ]}})
        if path.startswith("/core/api/createShareLink/"):
            return json_response({"message": {"link": "https://share.link/Api999"}})
        return httpx.Response(404)


def _pipeline(client, store, cache=None, **kwargs):
    return SellerEnrichmentPipeline(
        SellerPageClient(client, HOSTS),
        store,
        cache or SellerReviewCache(),
        specs=[AttemptSpec("t1", 5, 2_000_000, tuple(HOSTS), fallback_timeout=5)],
        refresh_share=False,
        reviews_page_size=100,
        reviews_max_store=150,
        reviews_enable_skip=False,
        manifesto_retry_timeout=5,
        **kwargs,
    )


class TestSellerEnrichmentPipeline:

    @pytest.mark.asyncio
    async def test_full_enrichment_writes_profile(self, shared_store):
        async with mock_client(SellerSite()) as client:
            pipeline = _pipeline(client, shared_store)
            result = await pipeline.enrich(SellerTask("42", name="Bob's Shop", url="https://littlebiggy.net/seller/42"))

        assert result.written and result.tier == "t1"
        assert result.essential_missing == []
        profile = await shared_store.get_json(keys.seller_profile("42"))
        assert profile["imageUrl"] == "https://cdn.littlebiggy.net/images/u/abc.jpg"
        assert profile["online"] == "today"
        assert profile["joined"] == "Mar 2021"
        assert profile["manifesto"] == "We ship fast.\nStealth packaging."
        assert profile["share"] == "https://share.link/AbC123"
        assert profile["statistics"] == {"orders": 12}
        assert profile["sellerName"] == "Bob's Shop"
        assert [r["id"] for r in profile["reviews"]] == [1]
        assert pipeline.images == {"42": profile["imageUrl"]}
        assert result.state_entry["hasManifesto"] is True

    @pytest.mark.asyncio
    async def test_missing_fields_keep_stored_values(self, shared_store):
        await shared_store.put_json(keys.seller_profile("42"), {
            "sellerId": "42",
            "manifesto": "Old manifesto",
            "share": "https://share.link/Old1",
            "imageUrl": "https://cdn/images/u/old.jpg",
            "custom": "keep me",
        })
        site = SellerSite(page=BARE_PAGE)

        async with mock_client(site) as client:
            result = await _pipeline(client, shared_store).enrich(SellerTask("42"))

        profile = await shared_store.get_json(keys.seller_profile("42"))
        assert profile["manifesto"] == "Old manifesto"
        assert profile["share"] == "https://share.link/Old1"
        assert profile["imageUrl"] == "https://cdn/images/u/old.jpg"
        assert profile["custom"] == "keep me"
        assert profile["online"] == "now"
        assert result.essential_missing == []
        # manifesto retried once with the larger budget
        assert site.paths.count("/viewSubject/p/42") == 2

    @pytest.mark.asyncio
    async def test_share_link_falls_back_to_api(self, shared_store):
        async with mock_client(SellerSite(page=BARE_PAGE)) as client:
            await _pipeline(client, shared_store).enrich(SellerTask("42"))

        profile = await shared_store.get_json(keys.seller_profile("42"))
        assert profile["share"] == "https://share.link/Api999"
        assert "manifesto" not in profile

    @pytest.mark.asyncio
    async def test_reviews_mode_skips_page_fetch(self, shared_store):
        site = SellerSite()
        async with mock_client(site) as client:
            result = await _pipeline(client, shared_store).enrich(SellerTask("42", mode=MODE_REVIEWS))

        assert result.reviews_mode == "paged"
        assert not any(p.startswith("/viewSubject/") for p in site.paths)
        profile = await shared_store.get_json(keys.seller_profile("42"))
        assert "lastEnrichedAt" not in profile

    @pytest.mark.asyncio
    async def test_one_failing_seller_does_not_block_others(self, shared_store):
        async with mock_client(SellerSite(broken={"bad"})) as client:
            pipeline = _pipeline(client, shared_store)
            outcomes = await TaskPool(concurrency=2, name="sellers-test").run(
                [SellerTask(i, mode=MODE_FULL) for i in ("a", "bad", "b")],
                pipeline.enrich,
            )

        assert [o.ok for o in outcomes] == [True, False, True]
        assert await shared_store.get_json(keys.seller_profile("a")) is not None
        assert await shared_store.get_json(keys.seller_profile("b")) is not None
        assert await shared_store.get_json(keys.seller_profile("bad")) is None

    @pytest.mark.asyncio
    async def test_dropped_connection_moves_to_next_host(self):
        site = SellerSite(dropped=[("littlebiggy.net", "/viewSubject/")])
        async with mock_client(site) as client:
            result = await SellerPageClient(client, HOSTS).fetch_page(
                "42", [AttemptSpec("t1", 5, 2_000_000, tuple(HOSTS), fallback_timeout=5)],
            )

        assert result.ok
        assert (result.tier, result.source) == ("t1", "primary")

    @pytest.mark.asyncio
    async def test_dropped_reviews_connection_only_skips_reviews(self, shared_store):
        site = SellerSite(dropped=[(host.split("//")[1], "/received") for host in HOSTS])
        sleep = AsyncMock()
        async with mock_client(site) as client:
            result = await _pipeline(client, shared_store, sleep=sleep).enrich(SellerTask("42", mode=MODE_REVIEWS))

        assert result.written
        assert result.errors == ["reviews"]
        profile = await shared_store.get_json(keys.seller_profile("42"))
        assert profile["sellerId"] == "42"
        assert "reviews" not in profile

    @pytest.mark.asyncio
    async def test_dropped_page_connections_keep_seller_alive(self, shared_store):
        site = SellerSite(dropped=[(host.split("//")[1], "/viewSubject/") for host in HOSTS])
        async with mock_client(site) as client:
            result = await _pipeline(client, shared_store).enrich(SellerTask("42"))

        assert result.written
        assert "page" in result.errors
        profile = await shared_store.get_json(keys.seller_profile("42"))
        assert profile["share"] == "https://share.link/Api999"
        assert [r["id"] for r in profile["reviews"]] == [1]
