"""Text helpers shared by the HTML extractors."""

import re

from selectolax.parser import Node

NOISE_TAGS = ["script", "style", "form", "button", "input", "textarea", "select", "noscript"]


def tidy_lines(text: str) -> str:
    """Collapse runs of spaces per line and keep at most one blank line between blocks."""
    lines = [" ".join(line.split()) for line in text.replace("\r\n", "\n").replace("\r", "\n").split("\n")]
    text = "\n".join(lines)
    return re.sub(r"\n{3,}", "\n\n", text).strip()


def node_text(node: Node) -> str:
    """Block-ish text of a node: one line per text fragment, whitespace tidied."""
    return tidy_lines(node.text(deep=True, separator="\n", strip=True))


def has_classes(node: Node, *names: str) -> bool:
    classes = (node.attributes.get("class") or "").split()
    return all(name in classes for name in names)
