"""Shipping option extraction from item pages."""

import re
from dataclasses import dataclass, field
from typing import Optional

from selectolax.parser import HTMLParser, Node

from mirror_crawler.parse.text import has_classes

_PRICE_RE = re.compile(r"([0-9]+(?:\.[0-9]{1,2})?)")
_SKIP_LABEL_RE = re.compile(r"^(country|to|\d+)$")
_DOLLAR_RE = re.compile(r"\$\d")


@dataclass
class ShippingExtract:
    options: list[dict] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


def _is_price_span(node: Node) -> bool:
    return "price" in (node.attributes.get("class") or "").lower()


def _inside_price(node: Node) -> bool:
    parent = node.parent
    while parent is not None and parent.tag != "html":
        if parent.tag == "div" and has_classes(parent, "foldable", "Bp3"):
            return False
        if parent.tag == "span" and _is_price_span(parent):
            return True
        parent = parent.parent
    return False


def _parse_cost(text: str) -> Optional[float]:
    low = text.strip().lower()
    if low == "free":
        return 0.0
    m = _PRICE_RE.search(low)
    return float(m.group(1)) if m else None


def extract_shipping_options(html: str) -> ShippingExtract:
    """
    Parse shipping options (label + cost) from the foldable option blocks.

    Warnings: `label_missing` (price without label), `duplicate_option`
    (same label and cost seen twice), `no_shipping_blocks` (nothing parsed).
    """
    result = ShippingExtract()
    if not html:
        result.warnings.append("no_shipping_blocks")
        return result

    tree = HTMLParser(html)
    seen: set[str] = set()

    for block in tree.css("div.foldable.Bp3"):
        spans = block.css("span")
        price_idx = next((i for i, s in enumerate(spans) if _is_price_span(s)), None)
        if price_idx is None:
            continue

        cost = _parse_cost(spans[price_idx].text(deep=True, separator=" "))
        if cost is None:
            continue

        label = None
        for span in spans[price_idx + 1:]:
            if _is_price_span(span) or _inside_price(span):
                continue
            text = " ".join(span.text(deep=True, separator=" ").split())
            if not text or _SKIP_LABEL_RE.match(text.lower()) or _DOLLAR_RE.search(text):
                continue
            label = text
            break

        if not label:
            result.warnings.append("label_missing")
            continue

        key = f"{label.lower()}|{cost}"
        if key in seen:
            result.warnings.append("duplicate_option")
            continue
        seen.add(key)
        result.options.append({"label": label, "cost": cost})

    if not result.options:
        result.warnings.append("no_shipping_blocks")
    return result


def summarize_shipping(options: list[dict]) -> Optional[dict]:
    """Min/max cost and whether any option ships free."""
    costs = [o["cost"] for o in options if isinstance(o.get("cost"), (int, float))]
    if not costs:
        return None
    return {"min": min(costs), "max": max(costs), "free": 1 if 0 in costs else 0}
