"""Tiered fetch escalation: growing time/byte budgets with alternate-host fallback."""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional

from mirror_crawler import metrics
from mirror_crawler.ingest.http_client import FetchError

logger = logging.getLogger(__name__)

MIN_USEFUL_CHARS = 500


@dataclass(frozen=True)
class AttemptSpec:
    """One escalation tier."""

    label: str
    timeout: float
    max_bytes: int
    hosts: tuple[str, ...] = ()
    fallback_timeout: Optional[float] = None
    early_abort: bool = False


@dataclass
class EscalationResult:
    html: Optional[str] = None
    tier: Optional[str] = None
    source: Optional[str] = None
    errors: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.html is not None


PrimaryFetch = Callable[[AttemptSpec], Awaitable[str]]
AlternateFetch = Callable[[AttemptSpec, str], Awaitable[str]]


def _useful(html: Optional[str], min_chars: int) -> bool:
    return bool(html) and len(html) > min_chars


async def _first_useful(
    spec: AttemptSpec,
    alternate: AlternateFetch,
    min_chars: int,
    errors: list[str],
) -> tuple[Optional[str], Optional[str]]:
    """Race the alternate hosts; the first useful body wins and the rest are cancelled."""
    timeout = spec.fallback_timeout or spec.timeout
    tasks = {
        asyncio.create_task(asyncio.wait_for(alternate(spec, host), timeout=timeout)): host
        for host in spec.hosts
    }
    pending = set(tasks)
    try:
        while pending:
            done, pending = await asyncio.wait(pending, return_when=asyncio.FIRST_COMPLETED)
            for task in done:
                exc = task.exception()
                if exc is not None:
                    if not isinstance(exc, (FetchError, asyncio.TimeoutError)):
                        raise exc
                    errors.append(f"{spec.label}:{tasks[task]}:{type(exc).__name__}")
                    continue
                html = task.result()
                if _useful(html, min_chars):
                    return html, tasks[task]
                errors.append(f"{spec.label}:{tasks[task]}:short")
    finally:
        for task in pending:
            task.cancel()
    return None, None


async def fetch_with_escalation(
    specs: list[AttemptSpec],
    primary: PrimaryFetch,
    alternate: Optional[AlternateFetch] = None,
    min_chars: int = MIN_USEFUL_CHARS,
    entity: str = "",
) -> EscalationResult:
    """
    Walk the attempt specs in order until one yields a useful page.

    Each tier runs the primary fetch under its timeout; if that fails or the
    body is too short, the tier's alternate hosts are raced. The next tier is
    only tried once the current one has fully failed. Every tier runs at most once.

    Args:
        specs: Ordered tiers (cheapest first)
        primary: Primary fetch for a tier
        alternate: Per-host fallback fetch for a tier
        min_chars: Minimum body length considered a real page
        entity: Label used in logs (e.g. seller id)
    """
    result = EscalationResult()

    for spec in specs:
        try:
            html = await asyncio.wait_for(primary(spec), timeout=spec.timeout)
            if _useful(html, min_chars):
                metrics.record_seller_fetch(spec.label, "primary")
                result.html, result.tier, result.source = html, spec.label, "primary"
                return result
            result.errors.append(f"{spec.label}:primary:short")
        except (FetchError, asyncio.TimeoutError) as e:
            result.errors.append(f"{spec.label}:primary:{type(e).__name__}")
            logger.warning(f"[{entity}] tier {spec.label} primary fetch failed: {e or type(e).__name__}")

        if alternate is not None and spec.hosts:
            html, host = await _first_useful(spec, alternate, min_chars, result.errors)
            if html is not None:
                metrics.record_seller_fetch(spec.label, "alternate")
                result.html, result.tier, result.source = html, spec.label, host
                return result

        metrics.record_seller_fetch(spec.label, "failed")
        logger.info(f"[{entity}] tier {spec.label} exhausted, escalating")

    logger.warning(f"[{entity}] all fetch tiers failed: {', '.join(result.errors)}")
    return result
