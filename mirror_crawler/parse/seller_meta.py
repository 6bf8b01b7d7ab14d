"""Seller profile metadata: avatar image, online status and join date."""

import re
from typing import Optional

from selectolax.parser import HTMLParser, Node

from mirror_crawler.parse.text import tidy_lines

_SPINNER = "spinner-bert.gif"
_USER_IMAGE = "/images/u/"

_ONLINE_RE = re.compile(r"\bonline\s+([a-z]+)", re.IGNORECASE)
_JOINED_RE = re.compile(r"\bjoined\s+([^\n]+)$", re.IGNORECASE)

# Text-scan fallback used when the profile header block is missing
_FALLBACK_ONLINE_RE = re.compile(
    r"\bonline\s+(now|today|yesterday|\d+\s+(?:mins?|minutes?|hours?|days?)\s+ago)\b",
    re.IGNORECASE,
)
_FALLBACK_JOINED_RE = re.compile(r"\bjoined\s+([A-Z][a-z]{2,8}\.?\s+\d{4})\b")


def _pick_src(img: Node) -> Optional[str]:
    attrs = img.attributes
    src = attrs.get("data-src")
    if not src and attrs.get("srcset"):
        src = attrs["srcset"].split(",")[0].strip().split(" ")[0] or None
    if not src:
        src = attrs.get("src")
    if src and _SPINNER in src:
        return None
    return src or None


def extract_seller_image_url(html: str) -> Optional[str]:
    """Avatar URL, preferring user uploads (`/images/u/`) and skipping the lazy-load spinner."""
    if not html:
        return None
    tree = HTMLParser(html)

    primary = None
    img = tree.css_first("img.softened")
    if img is not None:
        primary = _pick_src(img)
        if primary and _USER_IMAGE in primary:
            return primary

    for img in tree.css("img"):
        candidate = _pick_src(img)
        if candidate and _USER_IMAGE in candidate:
            return candidate
    return primary


def extract_online_and_joined(html: str) -> dict:
    """Online status and join date from the profile header block."""
    out = {"online": None, "joined": None}
    if not html:
        return out
    tree = HTMLParser(html)
    node = tree.css_first("div.reginald.Bp1")
    if node is None:
        return out
    text = " ".join(node.text(deep=True, separator=" ").split())

    m = _ONLINE_RE.search(text)
    if m:
        out["online"] = m.group(1).lower()
    m = _JOINED_RE.search(text)
    if m:
        out["joined"] = m.group(1).strip()
    return out


def scan_online_and_joined(html: str) -> dict:
    """Looser whole-page text scan for online/joined."""
    out = {"online": None, "joined": None}
    if not html:
        return out
    body = HTMLParser(html).body
    if body is None:
        return out
    text = tidy_lines(body.text(deep=True, separator=" "))
    m = _FALLBACK_ONLINE_RE.search(text)
    if m:
        out["online"] = m.group(1).lower()
    m = _FALLBACK_JOINED_RE.search(text)
    if m:
        out["joined"] = m.group(1)
    return out
