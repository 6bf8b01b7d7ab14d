"""Per-market shipping fetches, each in its own isolated cookie session."""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Optional

from mirror_crawler.config import settings
from mirror_crawler.ingest.http_client import ClientFactory, FetchError, create_client
from mirror_crawler.ingest.item_pages import fetch_item_page
from mirror_crawler.ingest.location_filter import seed_location_cookie, set_location_filter
from mirror_crawler.parse.shipping import extract_shipping_options

logger = logging.getLogger(__name__)


@dataclass
class MarketShippingResult:
    market: str
    ok: bool
    options: list[dict] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    error: Optional[str] = None


class MultiMarketShippingFetcher:
    """
    Fetches an item's shipping options for several markets.

    Each market gets a fresh client (own cookie jar) seeded with that market's
    location-filter cookie, so concurrently fetched markets never see each
    other's location state.
    """

    def __init__(
        self,
        hosts: Optional[list[str]] = None,
        domain: Optional[str] = None,
        client_factory: Optional[ClientFactory] = None,
        max_bytes: Optional[int] = None,
        retry_max_bytes: Optional[int] = None,
        timeout: Optional[float] = None,
        settle_seconds: Optional[float] = None,
        max_parallel: Optional[int] = None,
        parallel: Optional[bool] = None,
        sleep=asyncio.sleep,
    ):
        self.hosts = hosts or settings.site_hosts
        self.domain = domain or settings.site_domain
        self.client_factory = client_factory or create_client
        self.max_bytes = max_bytes or settings.item_page_max_bytes
        self.retry_max_bytes = retry_max_bytes or self.max_bytes * 4
        self.timeout = timeout or settings.item_page_timeout_seconds
        self.settle_seconds = settings.shipping_settle_seconds if settle_seconds is None else settle_seconds
        self.max_parallel = max_parallel or settings.crawler_shipping_max_parallel
        self.parallel = settings.crawler_shipping_parallel if parallel is None else parallel
        self._sleep = sleep

    async def fetch_market(self, item_id: str, market: str) -> MarketShippingResult:
        """Shipping options for one market, retrying once with a bigger budget if none parsed."""
        warnings: list[str] = []
        try:
            async with self.client_factory() as client:
                if not seed_location_cookie(client.cookies, market, self.domain):
                    host = self.hosts[0]
                    if not await set_location_filter(client, market, f"{host}/item/{item_id}", host):
                        warnings.append("location_filter_unset")

                if self.settle_seconds:
                    await self._sleep(self.settle_seconds)

                page = await fetch_item_page(
                    client, item_id, self.hosts, self.timeout, self.max_bytes, market=market,
                )
                extract = extract_shipping_options(page.text)

                if not extract.options:
                    logger.debug(f"[item {item_id}] [{market}] no options, retrying with full page")
                    page = await fetch_item_page(
                        client, item_id, self.hosts, self.timeout, self.retry_max_bytes,
                        market=market, early_abort=False,
                    )
                    extract = extract_shipping_options(page.text)
        except FetchError as e:
            logger.warning(f"[item {item_id}] [{market}] shipping fetch failed: {e}")
            return MarketShippingResult(market=market, ok=False, warnings=warnings, error=str(e))

        warnings.extend(extract.warnings)
        if not extract.options:
            return MarketShippingResult(market=market, ok=False, warnings=warnings, error="no_shipping_blocks")
        return MarketShippingResult(market=market, ok=True, options=extract.options, warnings=warnings)

    async def fetch_markets(self, item_id: str, markets: list[str]) -> dict[str, MarketShippingResult]:
        """All markets, settled independently. Parallel or sequential per configuration."""
        if not self.parallel:
            return {m: await self._safe_fetch(item_id, m) for m in markets}

        semaphore = asyncio.Semaphore(max(1, self.max_parallel))

        async def _bounded(market: str) -> MarketShippingResult:
            async with semaphore:
                return await self._safe_fetch(item_id, market)

        results = await asyncio.gather(*(_bounded(m) for m in markets))
        return {r.market: r for r in results}

    async def _safe_fetch(self, item_id: str, market: str) -> MarketShippingResult:
        try:
            return await self.fetch_market(item_id, market)
        except Exception as e:
            logger.error(f"[item {item_id}] [{market}] unexpected shipping error: {e}", exc_info=True)
            return MarketShippingResult(market=market, ok=False, error=f"{type(e).__name__}: {e}")
