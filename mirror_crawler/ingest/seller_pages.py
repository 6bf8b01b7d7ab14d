"""Seller page, share link and user summary fetches."""

import logging
import re
from typing import Any, Optional

import httpx

from mirror_crawler.config import Settings, settings
from mirror_crawler.ingest.escalation import AttemptSpec, EscalationResult, fetch_with_escalation
from mirror_crawler.ingest.http_client import (
    FetchError,
    TransientFetchError,
    fetch_text_capped,
    get_json,
)

logger = logging.getLogger(__name__)

_SHARE_LINK_RE = re.compile(r"https?://share\.link/[A-Za-z0-9]+")
_PROFILE_MARKERS = ("reginald", "seller-profile")

MANIFESTO_RETRY_MAX_BYTES = 7_000_000


def seller_page_path(seller_id: str) -> str:
    return f"/viewSubject/p/{seller_id}"


def seller_attempt_specs(cfg: Settings = settings, hosts: Optional[list[str]] = None) -> list[AttemptSpec]:
    """The three escalation tiers: fast and small first, slow and large last."""
    hosts = tuple(hosts or cfg.site_hosts)
    return [
        AttemptSpec("t1", cfg.seller_fetch_t1_seconds, 2_000_000, hosts,
                    fallback_timeout=cfg.seller_fallback_t1_seconds, early_abort=True),
        AttemptSpec("t2", cfg.seller_fetch_t2_seconds, 3_500_000, hosts,
                    fallback_timeout=cfg.seller_fallback_t2_seconds),
        AttemptSpec("t3", cfg.seller_fetch_t3_seconds, 6_000_000, hosts,
                    fallback_timeout=cfg.seller_fallback_t3_seconds),
    ]


def _profile_seen(text: str) -> bool:
    return any(marker in text for marker in _PROFILE_MARKERS)


class SellerPageClient:
    """Fetches seller-facing resources over one shared session."""

    def __init__(self, client: httpx.AsyncClient, hosts: Optional[list[str]] = None):
        self.client = client
        self.hosts = hosts or settings.site_hosts

    async def _primary(self, seller_id: str, spec: AttemptSpec) -> str:
        last_exc: Optional[FetchError] = None
        for host in self.hosts:
            try:
                page = await fetch_text_capped(
                    self.client,
                    f"{host}{seller_page_path(seller_id)}",
                    timeout=spec.timeout,
                    max_bytes=spec.max_bytes,
                    early_abort=_profile_seen if spec.early_abort else None,
                )
                return page.text
            except TransientFetchError as e:
                last_exc = e
        raise last_exc or TransientFetchError(f"No hosts for seller {seller_id}")

    async def _alternate(self, seller_id: str, spec: AttemptSpec, host: str) -> str:
        page = await fetch_text_capped(
            self.client,
            f"{host}{seller_page_path(seller_id)}",
            timeout=spec.fallback_timeout or spec.timeout,
            max_bytes=spec.max_bytes,
        )
        return page.text

    async def fetch_page(self, seller_id: str, specs: Optional[list[AttemptSpec]] = None) -> EscalationResult:
        """Seller page HTML via the escalation tiers."""
        return await fetch_with_escalation(
            specs or seller_attempt_specs(hosts=self.hosts),
            primary=lambda spec: self._primary(seller_id, spec),
            alternate=lambda spec, host: self._alternate(seller_id, spec, host),
            entity=f"seller {seller_id}",
        )

    async def fetch_page_large(self, seller_id: str, timeout: float) -> Optional[str]:
        """One high-budget fetch, used when the manifesto came back empty."""
        spec = AttemptSpec("manifesto", timeout, MANIFESTO_RETRY_MAX_BYTES)
        try:
            return await self._primary(seller_id, spec)
        except FetchError as e:
            logger.warning(f"[seller {seller_id}] manifesto retry fetch failed: {e}")
            return None

    async def fetch_share_link(self, seller_id: str, html: Optional[str] = None) -> Optional[str]:
        """Share link from the page HTML, else from the share-link endpoint on each host."""
        if html and "share.link" in html:
            m = _SHARE_LINK_RE.search(html)
            if m:
                return m.group(0)

        for host in self.hosts:
            try:
                data = await get_json(self.client, f"{host}/core/api/createShareLink/p/{seller_id}", timeout=30.0)
            except FetchError as e:
                logger.debug(f"[seller {seller_id}] share link via {host} failed: {e}")
                continue
            message = data.get("message", data) if isinstance(data, dict) else None
            link = message.get("link") if isinstance(message, dict) else None
            if isinstance(link, str) and link:
                return link
        return None

    async def fetch_user_summary(self, seller_id: str) -> dict[str, Any]:
        """
        Seller statistics and review summary from the lightweight summary endpoint.

        Returns:
            {"statistics": ..., "summary": ...}; empty dict when unavailable
        """
        path = f"/core/api/reviews/user/{seller_id}/summary?requireMedia=false"
        for host in self.hosts:
            try:
                data = await get_json(self.client, f"{host}{path}", timeout=30.0)
            except FetchError as e:
                logger.debug(f"[seller {seller_id}] summary via {host} failed: {e}")
                continue
            message = data.get("message") if isinstance(data, dict) else None
            if not isinstance(message, dict):
                continue
            seller = message.get("seller") if isinstance(message.get("seller"), dict) else {}
            return {"statistics": seller.get("statistics"), "summary": message.get("summary")}
        return {}
