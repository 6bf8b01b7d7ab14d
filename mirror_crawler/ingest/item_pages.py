"""Item page, item review and item share link fetches."""

import logging
import re
from typing import Any, Optional

import httpx

from mirror_crawler.ingest.http_client import (
    RETRYABLE_EXC,
    CappedPage,
    FetchError,
    PermanentFetchError,
    TransientFetchError,
    fetch_text_capped,
    get_json_with_fallback,
)
from mirror_crawler.parse.forms import extract_share_form

logger = logging.getLogger(__name__)

_SHIPPING_BLOCK_RE = re.compile(r'class="[^"]*foldable[^"]*Bp3', re.IGNORECASE)
DESCRIPTION_MARKER = "item-description"
_ITEM_SHARE_LINK_RE = re.compile(r"https?://[^\s\"'<>]+/link/[A-Za-z0-9]+")


def item_page_urls(item_id: str, hosts: list[str], market: Optional[str] = None) -> list[str]:
    """Candidate URLs in the order they are tried."""
    query = f"?shipsTo={market.upper()}" if market else ""
    urls = []
    for host in hosts:
        urls.append(f"{host}/item/{item_id}/view/p{query}")
        urls.append(f"{host}/item/{item_id}{query}")
    return urls


def item_page_ready(item_id: str):
    """Early-abort predicate: shipping blocks and the item's context token have streamed in."""

    def _ready(text: str) -> bool:
        return (
            len(_SHIPPING_BLOCK_RE.findall(text)) >= 2
            and "contextRefNum" in text
            and item_id in text
        )

    return _ready


async def fetch_item_page(
    client: httpx.AsyncClient,
    item_id: str,
    hosts: list[str],
    timeout: float,
    max_bytes: int,
    market: Optional[str] = None,
    early_abort: bool = True,
    require_description: bool = False,
) -> CappedPage:
    """
    Fetch an item page, trying each candidate URL until one answers 2xx.

    A 403/404 ends the search (the item is gone or hidden). When an early
    abort cut the page before the description block and the caller needs the
    description, the page is fetched again without early abort.

    Raises:
        FetchError: when no candidate produced a page
    """
    last_exc: Optional[FetchError] = None
    for url in item_page_urls(item_id, hosts, market):
        try:
            page = await fetch_text_capped(
                client,
                url,
                timeout=timeout,
                max_bytes=max_bytes,
                early_abort=item_page_ready(item_id) if early_abort else None,
            )
        except PermanentFetchError as e:
            if e.status in (403, 404):
                raise
            last_exc = e
            continue
        except TransientFetchError as e:
            logger.debug(f"[item {item_id}] {e}")
            last_exc = e
            continue

        if require_description and page.aborted and DESCRIPTION_MARKER not in page.text:
            logger.debug(f"[item {item_id}] early abort missed description, refetching full page")
            page = await fetch_text_capped(client, url, timeout=timeout, max_bytes=max_bytes)
        return page

    raise last_exc or TransientFetchError(f"No candidate URL for item {item_id}")


async def fetch_item_reviews(
    client: httpx.AsyncClient,
    item_id: str,
    hosts: list[str],
    page_size: int = 100,
    timeout: float = 30.0,
) -> list[dict[str, Any]]:
    """First page of an item's reviews (raw API objects)."""
    path = f"/core/api/reviews/item/{item_id}?first=0&n={page_size}&requireMedia=false"
    data, _ = await get_json_with_fallback(client, path, hosts, timeout)
    message = data.get("message") if isinstance(data, dict) else None
    reviews = message.get("reviews") if isinstance(message, dict) else None
    if not isinstance(reviews, list):
        raise PermanentFetchError(f"Unexpected review payload for item {item_id}")
    return reviews


def _share_link_from_response(resp: httpx.Response, host: str) -> Optional[str]:
    if "json" in resp.headers.get("content-type", ""):
        try:
            data = resp.json()
        except ValueError:
            data = None
        link = data.get("link") if isinstance(data, dict) else None
        if isinstance(link, str) and link:
            return link

    location = resp.headers.get("location", "")
    if "/link/" in location:
        return location if location.startswith("http") else f"{host}{location}"

    m = _ITEM_SHARE_LINK_RE.search(resp.text)
    return m.group(0) if m else None


async def fetch_item_share_link(
    client: httpx.AsyncClient,
    item_id: str,
    hosts: list[str],
    html: Optional[str] = None,
    timeout: float = 20.0,
    max_bytes: int = 2_000_000,
) -> Optional[str]:
    """
    Create a share link by submitting the item page's share form.

    The form is read from `html` when given, else from a fresh page fetch.
    Each host is tried in turn; the link comes from a JSON `link` field, a
    redirect to `/link/...`, or a link in the response body.

    Returns:
        The share link, or None when no form or no link could be obtained
    """
    if not html:
        try:
            html = (await fetch_item_page(client, item_id, hosts, min(timeout, 15.0), max_bytes)).text
        except FetchError as e:
            logger.debug(f"[item {item_id}] share form page fetch failed: {e}")
            return None

    form = extract_share_form(html)
    if not form:
        logger.debug(f"[item {item_id}] share form not found")
        return None

    # multipart/form-data without file parts
    parts = {name: (None, value) for name, value in form.items()}
    for host in hosts:
        try:
            resp = await client.post(f"{host}/item/share", files=parts, timeout=timeout, follow_redirects=False)
        except RETRYABLE_EXC as e:
            logger.debug(f"[item {item_id}] share POST via {host} failed: {type(e).__name__}: {e}")
            continue
        link = _share_link_from_response(resp, host)
        if link:
            return link
        logger.debug(f"[item {item_id}] share POST via {host} returned no link (HTTP {resp.status_code})")
    return None
