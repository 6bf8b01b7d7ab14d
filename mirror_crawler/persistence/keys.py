"""Key families used in the shared and per-market stores."""

SHARED_NAMESPACE = "shared"

ITEMS_CORE_PREFIX = "items/core/"
SELLERS_PREFIX = "sellers/"
SHIPPING_PREFIX = "shipping/"

SHIPPING_META = "aggregates/shipping-meta.json"
SELLER_REVIEW_CACHE = "aggregates/seller-review-cache.json"
SELLER_IMAGES = "aggregates/seller-images.json"
SELLER_STATE = "aggregates/seller-state.json"
ITEM_SHARES = "aggregates/shares.json"

# Per-market store
MARKET_INDEX = "indexed_items.json"


def market_namespace(market: str) -> str:
    return f"market-{market.lower()}"


def item_core(item_id: str) -> str:
    return f"{ITEMS_CORE_PREFIX}{item_id}.json"


def market_shipping(item_id: str) -> str:
    return f"{SHIPPING_PREFIX}{item_id}.json"


def seller_profile(seller_id: str) -> str:
    return f"{SELLERS_PREFIX}{seller_id}.json"


def id_from_key(key: str, prefix: str) -> str | None:
    """Extract the entity id from a `{prefix}{id}.json` key."""
    if not key.startswith(prefix) or not key.endswith(".json"):
        return None
    ident = key[len(prefix):-len(".json")]
    if not ident or "/" in ident:
        return None
    return ident
