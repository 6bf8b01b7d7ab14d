"""Tests for the HTTP helpers and location-filter cookies."""

import httpx
import pytest

from conftest import HOSTS, json_response, mock_client
from mirror_crawler.ingest.http_client import (
    PermanentFetchError,
    TransientFetchError,
    fetch_text_capped,
    get_json,
    get_json_with_fallback,
    get_text,
)
from mirror_crawler.ingest.item_pages import item_page_ready, item_page_urls
from mirror_crawler.ingest.location_filter import LF_COOKIE, lf_token, seed_location_cookie


class TestFetchTextCapped:

    @pytest.mark.asyncio
    async def test_truncates_at_byte_cap(self):
        async with mock_client(lambda r: httpx.Response(200, text="a" * 10_000)) as client:
            page = await fetch_text_capped(client, "https://littlebiggy.net/x", timeout=5, max_bytes=4000)

        assert page.truncated is True
        assert page.bytes_read == 4000
        assert len(page.text) == 4000

    @pytest.mark.asyncio
    async def test_early_abort_once_predicate_holds(self):
        body = "x" * 9000 + "marker" + "y" * 9000
        async with mock_client(lambda r: httpx.Response(200, text=body)) as client:
            page = await fetch_text_capped(
                client, "https://littlebiggy.net/x", timeout=5, max_bytes=100_000,
                early_abort=lambda text: "marker" in text,
            )

        assert page.aborted is True
        assert page.truncated is False

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status,exc", [(500, TransientFetchError), (429, TransientFetchError), (404, PermanentFetchError)])
    async def test_status_taxonomy(self, status, exc):
        async with mock_client(lambda r: httpx.Response(status)) as client:
            with pytest.raises(exc) as excinfo:
                await fetch_text_capped(client, "https://littlebiggy.net/x", timeout=5, max_bytes=100)
        assert excinfo.value.status == status

    @pytest.mark.asyncio
    @pytest.mark.parametrize("error", [httpx.ConnectError, httpx.WriteError, httpx.CloseError, httpx.ProxyError])
    async def test_transport_error_is_transient(self, error):
        def handler(request):
            raise error("dropped", request=request)

        async with mock_client(handler) as client:
            with pytest.raises(TransientFetchError):
                await fetch_text_capped(client, "https://littlebiggy.net/x", timeout=5, max_bytes=100)
            with pytest.raises(TransientFetchError):
                await get_text(client, "https://littlebiggy.net/x", timeout=5)
            with pytest.raises(TransientFetchError):
                await get_json(client, "https://littlebiggy.net/x", timeout=5)

    @pytest.mark.asyncio
    async def test_redirect_loop_is_transient(self):
        def handler(request):
            return httpx.Response(302, headers={"Location": str(request.url)})

        async with mock_client(handler) as client:
            with pytest.raises(TransientFetchError):
                await get_text(client, "https://littlebiggy.net/x", timeout=5)


class TestJsonFallback:

    @pytest.mark.asyncio
    async def test_client_error_does_not_try_next_host(self):
        hosts_seen = []

        def handler(request):
            hosts_seen.append(request.url.host)
            return httpx.Response(403)

        async with mock_client(handler) as client:
            with pytest.raises(PermanentFetchError):
                await get_json_with_fallback(client, "/core/api/x", HOSTS, timeout=5)
        assert hosts_seen == ["littlebiggy.net"]

    @pytest.mark.asyncio
    async def test_invalid_json_is_permanent(self):
        async with mock_client(lambda r: httpx.Response(200, text="<html>")) as client:
            with pytest.raises(PermanentFetchError):
                await get_json_with_fallback(client, "/core/api/x", HOSTS, timeout=5)

    @pytest.mark.asyncio
    async def test_returns_answering_url(self):
        async with mock_client(lambda r: json_response({"ok": 1})) as client:
            data, url = await get_json_with_fallback(client, "/core/api/x", HOSTS, timeout=5)
        assert data == {"ok": 1}
        assert url == "https://littlebiggy.net/core/api/x"


def test_item_page_candidates():
    urls = item_page_urls("123", HOSTS, "gb")
    assert urls == [
        "https://littlebiggy.net/item/123/view/p?shipsTo=GB",
        "https://littlebiggy.net/item/123?shipsTo=GB",
        "https://www.littlebiggy.net/item/123/view/p?shipsTo=GB",
        "https://www.littlebiggy.net/item/123?shipsTo=GB",
    ]


def test_item_page_ready_needs_blocks_and_context():
    ready = item_page_ready("123")
    block = '<div class="foldable Bp3">x</div>'
    assert ready(block * 2 + 'contextRefNum="123"') is True
    assert ready(block + 'contextRefNum="123"') is False
    assert ready(block * 2 + 'contextRefNum="999"') is False


def test_seed_location_cookie_for_both_hosts():
    cookies = httpx.Cookies()
    assert seed_location_cookie(cookies, "de", "littlebiggy.net") is True

    seeded = {(c.domain, c.value) for c in cookies.jar if c.name == LF_COOKIE}
    assert seeded == {("littlebiggy.net", lf_token("DE")), ("www.littlebiggy.net", lf_token("DE"))}


def test_unknown_market_has_no_token():
    cookies = httpx.Cookies()
    assert seed_location_cookie(cookies, "US", "littlebiggy.net") is False
    assert list(cookies.jar) == []
