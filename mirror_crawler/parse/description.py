"""Item description extraction."""

import re
from typing import Optional

from selectolax.parser import HTMLParser

from mirror_crawler.parse.text import NOISE_TAGS, node_text

MAX_DESCRIPTION_CHARS = 100_000

_SHIPS_FROM_RE = re.compile(r"(?:\n|^)ships from [^\n]*$", re.IGNORECASE)
_NOT_AVAILABLE_RE = re.compile(r"this item is not available in\s*", re.IGNORECASE)


def extract_description(html: str) -> Optional[dict]:
    """
    Extract the description block of an item page.

    Args:
        html: Item page HTML (possibly truncated by a byte cap)

    Returns:
        {"description": str, "meta": {"length": int, "warnings"?: [...]}} or None
        when the page has no description region
    """
    if not html:
        return None

    tree = HTMLParser(html)
    node = tree.css_first("div.item-description")
    if node is None:
        heading = tree.css_first("h1")
        node = heading.parent if heading is not None else None
    if node is None:
        return None

    for sel in NOISE_TAGS + ["div.foldable.Bp3", "form.shareForm"]:
        for child in node.css(sel):
            child.decompose()

    text = node_text(node)
    text = _SHIPS_FROM_RE.sub("", text).strip()
    text = _NOT_AVAILABLE_RE.sub("", text).strip()
    if not text:
        return None

    meta: dict = {"length": len(text)}
    if len(text) > MAX_DESCRIPTION_CHARS:
        text = text[:MAX_DESCRIPTION_CHARS]
        meta = {"length": len(text), "warnings": ["truncated"]}
    return {"description": text, "meta": meta}
