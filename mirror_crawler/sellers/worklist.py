"""Seller ids gathered from the market item indexes."""

from dataclasses import dataclass
from typing import Optional

from mirror_crawler.config import settings
from mirror_crawler.items.worklist import MarketIndex


@dataclass
class SellerRef:
    id: str
    name: Optional[str] = None
    url: Optional[str] = None


def build_seller_worklist(indexes: list[MarketIndex], domain: Optional[str] = None) -> list[SellerRef]:
    """Unique sellers in first-seen order. The first non-empty name wins."""
    domain = domain or settings.site_domain
    sellers: dict[str, SellerRef] = {}
    for index in indexes:
        for entry in index.items:
            raw = entry.get("sid", entry.get("sellerId"))
            if raw is None:
                continue
            seller_id = str(raw).strip()
            if not seller_id:
                continue
            name = entry.get("sn") or entry.get("sellerName")
            ref = sellers.get(seller_id)
            if ref is None:
                sellers[seller_id] = SellerRef(
                    id=seller_id,
                    name=name or None,
                    url=f"https://{domain}/seller/{seller_id}",
                )
            elif not ref.name and name:
                ref.name = name
    return list(sellers.values())
