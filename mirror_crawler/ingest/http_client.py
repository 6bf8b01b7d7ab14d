"""HTTP client helpers: error taxonomy, cookie-jar clients, byte-capped reads."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable, Optional

import httpx

logger = logging.getLogger(__name__)

# Network-level failures: every transport error plus redirect loops
RETRYABLE_EXC = (
    httpx.TransportError,
    httpx.TooManyRedirects,
)

ClientFactory = Callable[[], httpx.AsyncClient]


class FetchError(RuntimeError):
    """Base class for fetch failures."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class TransientFetchError(FetchError):
    """5xx, 429, timeouts and connection failures. Worth retrying or switching host."""
    pass


class PermanentFetchError(FetchError):
    """4xx and malformed bodies. Retrying the same request will not help."""
    pass


class AuthError(RuntimeError):
    """Raised when login fails. `fatal` marks 401/403 responses that must not be retried."""

    def __init__(self, message: str, fatal: bool = False):
        super().__init__(message)
        self.fatal = fatal


@dataclass
class CappedPage:
    """Result of a byte-capped streaming read."""

    url: str
    status: int
    text: str
    bytes_read: int
    truncated: bool = False
    aborted: bool = False


def default_headers() -> dict[str, str]:
    """Get default browser-like headers."""
    return {
        "User-Agent": "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
        "Accept": "text/html, application/xhtml+xml, application/xml; q=0.9, */*; q=0.8",
        "Accept-Language": "en-GB, en; q=0.9",
        "Cache-Control": "no-cache",
        "Pragma": "no-cache",
    }


def create_client(
    cookies: Optional[list[dict]] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    timeout: float = 30.0,
) -> httpx.AsyncClient:
    """Create a cookie-enabled client with its own jar.

    Args:
        cookies: Optional persisted cookies ({name, value, domain, path}) to seed
        transport: Optional transport override (tests use httpx.MockTransport)
        timeout: Default per-request timeout in seconds
    """
    client = httpx.AsyncClient(
        headers=default_headers(),
        timeout=httpx.Timeout(timeout, connect=10.0),
        follow_redirects=True,
        transport=transport,
    )
    if cookies:
        load_cookie_list(client.cookies, cookies)
    return client


def cookies_to_list(cookies: httpx.Cookies) -> list[dict]:
    """Serialize a cookie jar to the persisted list format."""
    return [
        {
            "name": cookie.name,
            "value": cookie.value,
            "domain": cookie.domain,
            "path": cookie.path or "/",
        }
        for cookie in cookies.jar
    ]


def load_cookie_list(cookies: httpx.Cookies, items: list[dict]) -> None:
    for item in items:
        name = item.get("name")
        if not name:
            continue
        cookies.set(
            name,
            item.get("value", ""),
            domain=item.get("domain", ""),
            path=item.get("path") or "/",
        )


def has_cookie(cookies: httpx.Cookies, name: str) -> bool:
    return any(cookie.name == name and cookie.value for cookie in cookies.jar)


def check_status(resp: httpx.Response, url: str) -> None:
    """Raise the matching FetchError for any non-2xx response."""
    sc = resp.status_code
    if 200 <= sc < 300:
        return
    if sc >= 500 or sc == 429:
        raise TransientFetchError(f"HTTP {sc} for {url}", status=sc)
    raise PermanentFetchError(f"HTTP {sc} for {url}", status=sc)


async def fetch_text_capped(
    client: httpx.AsyncClient,
    url: str,
    timeout: float,
    max_bytes: int,
    early_abort: Optional[Callable[[str], bool]] = None,
    early_abort_min_bytes: int = 8192,
) -> CappedPage:
    """
    Stream a page, stopping at `max_bytes` or as soon as `early_abort` is satisfied.

    Args:
        client: httpx AsyncClient (its cookie jar is used and updated)
        url: URL to fetch
        timeout: Total deadline for the whole read in seconds
        max_bytes: Hard cap on bytes read
        early_abort: Predicate over the decoded text read so far
        early_abort_min_bytes: Do not evaluate early_abort before this many bytes

    Returns:
        CappedPage with the decoded text

    Raises:
        TransientFetchError: 5xx/429, timeout or transport failure
        PermanentFetchError: other non-2xx status
    """

    async def _read() -> CappedPage:
        async with client.stream("GET", url) as resp:
            check_status(resp, url)
            buf = bytearray()
            truncated = aborted = False
            async for chunk in resp.aiter_bytes():
                buf.extend(chunk)
                if len(buf) >= max_bytes:
                    del buf[max_bytes:]
                    truncated = True
                    break
                if early_abort and len(buf) >= early_abort_min_bytes:
                    if early_abort(buf.decode("utf-8", errors="replace")):
                        aborted = True
                        break
            return CappedPage(
                url=str(resp.url),
                status=resp.status_code,
                text=buf.decode("utf-8", errors="replace"),
                bytes_read=len(buf),
                truncated=truncated,
                aborted=aborted,
            )

    try:
        return await asyncio.wait_for(_read(), timeout=timeout)
    except asyncio.TimeoutError as e:
        raise TransientFetchError(f"Timeout after {timeout:.0f}s for {url}") from e
    except RETRYABLE_EXC as e:
        raise TransientFetchError(f"{type(e).__name__} for {url}: {e}") from e


async def get_text(client: httpx.AsyncClient, url: str, timeout: float) -> str:
    """Plain GET returning the body text; 2xx only."""
    try:
        resp = await client.get(url, timeout=timeout)
    except RETRYABLE_EXC as e:
        raise TransientFetchError(f"{type(e).__name__} for {url}: {e}") from e
    check_status(resp, url)
    return resp.text


async def get_json(client: httpx.AsyncClient, url: str, timeout: float) -> Any:
    try:
        resp = await client.get(url, timeout=timeout, headers={"Accept": "application/json"})
    except RETRYABLE_EXC as e:
        raise TransientFetchError(f"{type(e).__name__} for {url}: {e}") from e
    check_status(resp, url)
    try:
        return resp.json()
    except ValueError as e:
        raise PermanentFetchError(f"Invalid JSON from {url}", status=resp.status_code) from e


async def get_json_with_fallback(
    client: httpx.AsyncClient,
    path: str,
    hosts: list[str],
    timeout: float,
) -> tuple[Any, str]:
    """
    GET a JSON path on each host in order.

    Only transient failures (5xx, network) move on to the next host; a 4xx is
    raised immediately.

    Returns:
        (parsed JSON, URL that answered)
    """
    last_exc: Optional[Exception] = None
    for host in hosts:
        url = f"{host}{path}"
        try:
            return await get_json(client, url, timeout), url
        except TransientFetchError as e:
            logger.debug(f"Host fallback after transient failure: {e}")
            last_exc = e
    raise last_exc or TransientFetchError(f"No hosts configured for {path}")
