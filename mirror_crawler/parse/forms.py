"""Hidden form tokens needed by the location filter and item share forms."""

from selectolax.parser import HTMLParser

LOCATION_FORM_FIELDS = ("_sourcePage", "__fp")


def extract_location_form_tokens(html: str) -> dict[str, str]:
    """Return the hidden `_sourcePage`/`__fp` values, or {} when either is missing."""
    if not html:
        return {}
    tree = HTMLParser(html)
    tokens = {}
    for name in LOCATION_FORM_FIELDS:
        node = tree.css_first(f'input[name="{name}"]')
        value = node.attributes.get("value") if node is not None else None
        if not value:
            return {}
        tokens[name] = value
    return tokens


SHARE_FORM_FIELDS = ("contextRefNum", "contextId", "contextType", "_sourcePage", "__fp")


def extract_share_form(html: str) -> dict[str, str]:
    """
    Fields of the item share form.

    Returns:
        The present field values with `contextType` defaulted, or {} when the
        page carries neither `contextRefNum` nor `contextId`
    """
    if not html:
        return {}
    tree = HTMLParser(html)
    fields = {}
    for name in SHARE_FORM_FIELDS:
        node = tree.css_first(f'input[name="{name}"]')
        value = node.attributes.get("value") if node is not None else None
        if value:
            fields[name] = value
    if "contextRefNum" not in fields and "contextId" not in fields:
        return {}
    fields.setdefault("contextType", "SUBJECT" if "contextId" in fields else "ITEM")
    return fields
