"""Decides which sellers need (re-)enrichment."""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Optional, Protocol

from mirror_crawler.persistence import keys
from mirror_crawler.persistence.blob_store import BlobStore, StoreError
from mirror_crawler.utils.timeutil import now_iso, parse_ts, utc_now

logger = logging.getLogger(__name__)

SELLER_STATE_VERSION = 1


@dataclass
class SellerState:
    """Planning-relevant summary of a stored seller profile."""
    last_enriched_at: Optional[str] = None
    has_image: bool = False
    has_share: bool = False
    has_manifesto: bool = False
    has_reviews: bool = False
    review_count: int = 0

    @classmethod
    def from_entry(cls, entry: dict[str, Any]) -> "SellerState":
        return cls(
            last_enriched_at=entry.get("lastEnrichedAt"),
            has_image=bool(entry.get("hasImage")),
            has_share=bool(entry.get("hasShare")),
            has_manifesto=bool(entry.get("hasManifesto")),
            has_reviews=bool(entry.get("hasReviews")),
            review_count=int(entry.get("reviewCount") or 0),
        )


def build_seller_state_entry(profile: dict[str, Any]) -> dict[str, Any]:
    """Aggregate entry for one seller profile record."""
    reviews = profile.get("reviews") if isinstance(profile.get("reviews"), list) else []
    manifesto = profile.get("manifesto")
    return {
        "lastEnrichedAt": profile.get("lastEnrichedAt"),
        "hasImage": bool(profile.get("imageUrl")),
        "hasShare": bool(profile.get("share")),
        "hasManifesto": isinstance(manifesto, str) and bool(manifesto.strip()),
        "hasReviews": bool(reviews),
        "reviewCount": len(reviews),
    }


class SellerStateSource(Protocol):
    """Where planning reads seller state from."""

    async def get_state(self, seller_id: str) -> Optional[SellerState]: ...


class StoreSellerStateSource:
    """Reads each seller's profile record from the durable store."""

    def __init__(self, store: BlobStore):
        self.store = store

    async def get_state(self, seller_id: str) -> Optional[SellerState]:
        profile = await self.store.get_json(keys.seller_profile(seller_id))
        if not isinstance(profile, dict):
            return None
        return SellerState.from_entry(build_seller_state_entry(profile))


class AggregateSellerStateSource:
    """Answers from the precomputed seller-state aggregate; no per-seller reads."""

    def __init__(self, sellers: dict[str, Any]):
        self.sellers = sellers

    async def get_state(self, seller_id: str) -> Optional[SellerState]:
        entry = self.sellers.get(seller_id)
        return SellerState.from_entry(entry) if isinstance(entry, dict) else None

    @classmethod
    async def load(cls, store: BlobStore) -> Optional["AggregateSellerStateSource"]:
        """The aggregate source, or None when no aggregate has been written yet."""
        try:
            data = await store.get_json(keys.SELLER_STATE)
        except StoreError as e:
            logger.warning(f"Failed to load seller state aggregate: {e}")
            return None
        if not isinstance(data, dict) or not isinstance(data.get("sellers"), dict):
            return None
        return cls(data["sellers"])


@dataclass
class SellerPlan:
    to_enrich: list[str] = field(default_factory=list)
    fresh: list[str] = field(default_factory=list)
    blacklisted: list[str] = field(default_factory=list)
    deferred: list[str] = field(default_factory=list)
    reasons: dict[str, str] = field(default_factory=dict)


def enrichment_reason(
    state: Optional[SellerState],
    refresh_days: float,
    require_manifesto: bool,
    now: datetime,
) -> Optional[str]:
    """Why a seller needs enrichment, or None when it is fresh and complete."""
    if state is None:
        return "new"
    last = parse_ts(state.last_enriched_at)
    if last is None or now - last > timedelta(days=refresh_days):
        return "stale"
    if not state.has_image or not state.has_share or (require_manifesto and not state.has_manifesto):
        return "essential_missing"
    return None


async def plan_seller_enrichment(
    seller_ids: list[str],
    source: SellerStateSource,
    refresh_days: float = 3,
    require_manifesto: bool = False,
    blacklist: Optional[set[str]] = None,
    force_full: bool = False,
    enrich_limit: int = 0,
    now: Optional[datetime] = None,
) -> SellerPlan:
    """
    Split sellers into enrich / fresh / blacklisted.

    The cap (`enrich_limit`, 0 = unlimited) is applied greedily in input
    order; sellers that would have been enriched past the cap are `deferred`.

    Args:
        seller_ids: Candidate seller ids
        source: Store-backed or aggregate-backed state source
        refresh_days: Staleness window for lastEnrichedAt
        require_manifesto: Treat a missing manifesto as an essential gap
        blacklist: Ids never enriched
        force_full: Enrich every non-blacklisted seller
        enrich_limit: Maximum sellers to enrich
        now: Current time (fixed in tests)
    """
    plan = SellerPlan()
    blacklist = blacklist or set()
    now = now or utc_now()

    for seller_id in seller_ids:
        if seller_id in blacklist:
            plan.blacklisted.append(seller_id)
            continue

        if force_full:
            reason = "forced"
        else:
            try:
                state = await source.get_state(seller_id)
            except StoreError as e:
                logger.warning(f"[seller {seller_id}] state unreadable, enriching: {e}")
                state = None
            reason = enrichment_reason(state, refresh_days, require_manifesto, now)

        if reason is None:
            plan.fresh.append(seller_id)
        elif enrich_limit and len(plan.to_enrich) >= enrich_limit:
            plan.deferred.append(seller_id)
        else:
            plan.to_enrich.append(seller_id)
            plan.reasons[seller_id] = reason

    return plan


async def save_seller_state(store: BlobStore, sellers: dict[str, Any]) -> bool:
    """Write the seller-state aggregate."""
    payload = {"version": SELLER_STATE_VERSION, "updatedAt": now_iso(), "sellers": sellers}
    try:
        await store.put_json(keys.SELLER_STATE, payload)
        return True
    except StoreError as e:
        logger.warning(f"Failed to persist seller state aggregate: {e}")
        return False
