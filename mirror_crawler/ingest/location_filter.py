"""Market location filter: precomputed `lf` cookie tokens plus the form-post fallback."""

import logging
from typing import Optional

import httpx

from mirror_crawler.config import settings
from mirror_crawler.ingest.http_client import RETRYABLE_EXC, FetchError, check_status, get_text
from mirror_crawler.parse.forms import extract_location_form_tokens

logger = logging.getLogger(__name__)

LF_COOKIE = "lf"

# base64 of {"shipsFrom":null,"shipsTo":"<CODE>"}
LF_TOKENS = {
    "GB": "eyJzaGlwc0Zyb20iOm51bGwsInNoaXBzVG8iOiJHQiJ9",
    "DE": "eyJzaGlwc0Zyb20iOm51bGwsInNoaXBzVG8iOiJERSJ9",
    "FR": "eyJzaGlwc0Zyb20iOm51bGwsInNoaXBzVG8iOiJGUiJ9",
    "IT": "eyJzaGlwc0Zyb20iOm51bGwsInNoaXBzVG8iOiJJVCJ9",
    "PT": "eyJzaGlwc0Zyb20iOm51bGwsInNoaXBzVG8iOiJQVCJ9",
}


def lf_token(market: str) -> Optional[str]:
    return LF_TOKENS.get(market.upper())


def seed_location_cookie(
    cookies: httpx.Cookies,
    market: str,
    domain: Optional[str] = None,
) -> bool:
    """
    Seed the location-filter cookie for both the bare and www host.

    Returns:
        False when no precomputed token exists for the market
    """
    token = lf_token(market)
    if not token:
        return False
    domain = domain or settings.site_domain
    for host in (domain, f"www.{domain}"):
        cookies.set(LF_COOKIE, token, domain=host, path="/")
    return True


async def set_location_filter(
    client: httpx.AsyncClient,
    market: str,
    page_url: str,
    host: str,
    timeout: float = 20.0,
) -> bool:
    """
    Slow path: scrape the page's filter form tokens and POST the selection.

    Returns:
        True when the filter POST succeeded
    """
    try:
        html = await get_text(client, page_url, timeout)
    except FetchError as e:
        logger.warning(f"[{market}] location form page fetch failed: {e}")
        return False

    tokens = extract_location_form_tokens(html)
    if not tokens:
        logger.warning(f"[{market}] location form tokens not found on {page_url}")
        return False

    files = {
        "shipsTo": (None, market.upper()),
        **{name: (None, value) for name, value in tokens.items()},
    }
    try:
        resp = await client.post(
            f"{host}/setLocationFilter",
            files=files,
            headers={"Referer": page_url, "Origin": host},
            timeout=timeout,
        )
        check_status(resp, f"{host}/setLocationFilter")
    except RETRYABLE_EXC as e:
        logger.warning(f"[{market}] location filter POST failed: {type(e).__name__}")
        return False
    except FetchError as e:
        logger.warning(f"[{market}] location filter POST rejected: {e}")
        return False
    return True
