"""Seller manifesto extraction."""

from selectolax.parser import HTMLParser

from mirror_crawler.parse.text import NOISE_TAGS, node_text

MAX_MANIFESTO_CHARS = 50 * 1024


def extract_manifesto(html: str) -> dict:
    """
    Extract the manifesto text block.

    Returns:
        {"manifesto": str | None, "meta": {"length": int, "lines": int}}
    """
    empty = {"manifesto": None, "meta": {"length": 0, "lines": 0}}
    if not html:
        return empty

    tree = HTMLParser(html)
    node = tree.css_first("div.reginald.Bp3")
    if node is None:
        return empty

    for label in node.css("div.Bp0.gone"):
        if label.text(strip=True).lower().startswith("manifesto"):
            label.decompose()
            break
    for sel in NOISE_TAGS:
        for child in node.css(sel):
            child.decompose()

    text = node_text(node)
    if len(text) > MAX_MANIFESTO_CHARS:
        text = text[:MAX_MANIFESTO_CHARS]
        cut = text.rfind("\n")
        if cut > 0:
            text = text[:cut]
    if not text:
        return empty
    return {"manifesto": text, "meta": {"length": len(text), "lines": len(text.split("\n"))}}
