"""Normalization of raw review API payloads."""

from typing import Any

from mirror_crawler.utils.timeutil import parse_ts


def _segments(content: Any, capture_media: bool) -> list[dict]:
    segments: list[dict] = []
    if not isinstance(content, list):
        return segments
    for part in content:
        if not isinstance(part, dict):
            continue
        kind = part.get("contentType")
        value = part.get("value")
        if kind == "plain":
            if not isinstance(value, str):
                continue
            if value.strip():
                segments.append({"type": "text", "value": value})
            elif "\n" in value or "\r" in value:
                prev = segments[-1] if segments else None
                if not (prev and prev["type"] == "text" and prev["value"].endswith("\n\n")):
                    segments.append({"type": "text", "value": "\n\n"})
        elif kind == "blot" and part.get("blotName") in ("image", "video"):
            if capture_media and isinstance(value, str):
                segments.append({"type": part["blotName"], "url": value})
        elif kind and value:
            segments.append({"type": str(kind), "value": value})
    return segments


def normalize_reviews(raw_reviews: Any, capture_media: bool = True, include_item: bool = False) -> list[dict]:
    """Convert raw review objects into `{id, created, rating, daysToArrive, authorId, segments}`."""
    if not isinstance(raw_reviews, list):
        return []
    out = []
    for r in raw_reviews:
        if not isinstance(r, dict):
            continue
        author = r.get("author") if isinstance(r.get("author"), dict) else {}
        review = {
            "id": r.get("id"),
            "created": r.get("created"),
            "rating": r.get("rating"),
            "daysToArrive": r.get("daysToArrive"),
            "authorId": author.get("id"),
            "segments": _segments(r.get("content"), capture_media),
        }
        item = r.get("item")
        if include_item and isinstance(item, dict):
            ref = item.get("refNum")
            review["item"] = {
                "refNum": str(ref) if ref is not None else None,
                "name": item.get("name"),
                "id": item.get("id"),
            }
            review["itemId"] = review["item"]["refNum"] or (
                str(item["id"]) if item.get("id") is not None else None
            )
        out.append(review)
    return out


def newest_review(reviews: list[dict]) -> tuple[Any, Any]:
    """(created, id) of the most recent review by `created`, or (None, None)."""
    best = None
    for r in reviews:
        created = r.get("created")
        if created is None:
            continue
        if best is None or _created_key(created) > _created_key(best.get("created")):
            best = r
    return (best.get("created"), best.get("id")) if best else (None, None)


def _created_key(value: Any) -> float:
    ts = parse_ts(value)
    return ts.timestamp() if ts else float("-inf")
