"""Session management: login, persisted cookie jars and anonymous fallback."""

import asyncio
import json
import logging
import random
from pathlib import Path
from typing import Optional

import httpx

from mirror_crawler import metrics
from mirror_crawler.config import settings
from mirror_crawler.ingest.http_client import (
    RETRYABLE_EXC,
    AuthError,
    cookies_to_list,
    create_client,
    has_cookie,
)

logger = logging.getLogger(__name__)

AUTH_COOKIE = "JWT_USER"
LOGIN_PATH = "/core/api/auth/login"


class SessionManager:
    """Logs in against the site hosts and persists the resulting cookie jar."""

    def __init__(
        self,
        username: Optional[str] = None,
        password: Optional[str] = None,
        hosts: Optional[list[str]] = None,
        session_dir: Optional[str | Path] = None,
        max_attempts: Optional[int] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep=asyncio.sleep,
    ):
        self.username = settings.lb_login_username if username is None else username
        self.password = settings.lb_login_password if password is None else password
        self.hosts = hosts or settings.site_hosts
        self.session_dir = Path(session_dir or settings.session_storage_path)
        self.session_dir.mkdir(parents=True, exist_ok=True)
        self.max_attempts = max_attempts or settings.login_max_attempts
        self.timeout = timeout or settings.login_timeout_seconds
        self.transport = transport
        self._sleep = sleep
        self.authenticated = False

    @property
    def has_credentials(self) -> bool:
        return bool(self.username and self.password)

    def _get_cookie_path(self) -> Path:
        """Get path to the cookie file for the configured account."""
        account = self.username or "anonymous"
        safe = "".join(c if c.isalnum() else "_" for c in account)
        return self.session_dir / f"{safe}_cookies.json"

    def load_cookies(self) -> list[dict]:
        """Load persisted cookies from disk."""
        cookie_path = self._get_cookie_path()
        if not cookie_path.exists():
            return []
        try:
            with open(cookie_path, "r") as f:
                cookies = json.load(f)
            return cookies if isinstance(cookies, list) else []
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Failed to load cookies from {cookie_path}: {e}")
            return []

    def save_cookies(self, cookies: httpx.Cookies) -> None:
        """Persist a cookie jar to disk."""
        cookie_path = self._get_cookie_path()
        try:
            with open(cookie_path, "w") as f:
                json.dump(cookies_to_list(cookies), f, indent=2)
        except OSError as e:
            logger.error(f"Failed to save cookies to {cookie_path}: {e}")

    def new_client(self, cookies: Optional[list[dict]] = None) -> httpx.AsyncClient:
        return create_client(cookies=cookies, transport=self.transport, timeout=self.timeout)

    async def _login_once(self, client: httpx.AsyncClient, host: str) -> bool:
        """Single login attempt against one host.

        Returns:
            True when the response carried the auth cookie

        Raises:
            AuthError: fatal on 401/403
        """
        try:
            # Warm-up so the host issues its session cookies first
            await client.get(f"{host}/", timeout=self.timeout)
        except RETRYABLE_EXC as e:
            logger.debug(f"Warm-up failed for {host}: {e}")

        resp = await client.post(
            f"{host}{LOGIN_PATH}",
            json={"username": self.username, "password": self.password},
            headers={"Accept": "application/json", "Origin": host, "Referer": f"{host}/"},
            timeout=self.timeout,
        )

        if resp.status_code in (401, 403):
            raise AuthError(f"Login rejected with HTTP {resp.status_code} at {host}", fatal=True)

        if not 200 <= resp.status_code < 300:
            logger.warning(f"Login HTTP {resp.status_code} at {host}")
            return False

        set_cookies = resp.headers.get_list("set-cookie")
        if any(h.strip().startswith(f"{AUTH_COOKIE}=") for h in set_cookies) or has_cookie(
            resp.cookies, AUTH_COOKIE
        ):
            return True

        logger.warning(f"Login at {host} returned {resp.status_code} without {AUTH_COOKIE} cookie")
        return False

    async def login(self, client: httpx.AsyncClient) -> None:
        """
        Log in, trying every host per round with jittered backoff between rounds.

        Args:
            client: Client whose cookie jar receives the session

        Raises:
            AuthError: on 401/403 (immediately) or once all rounds are exhausted
        """
        if not self.has_credentials:
            raise AuthError("No credentials configured")

        for attempt in range(1, self.max_attempts + 1):
            for host in self.hosts:
                try:
                    ok = await self._login_once(client, host)
                except AuthError:
                    metrics.record_login("rejected")
                    raise
                except RETRYABLE_EXC as e:
                    logger.warning(f"Login attempt {attempt} at {host} failed: {type(e).__name__}")
                    ok = False

                if ok:
                    metrics.record_login("success")
                    self.save_cookies(client.cookies)
                    self.authenticated = True
                    logger.info(f"Logged in via {host} (attempt {attempt})")
                    return

            metrics.record_login("failed")
            if attempt < self.max_attempts:
                delay = 1.2 * attempt + random.uniform(0, 0.4)
                logger.info(f"Login round {attempt} failed, retrying in {delay:.1f}s")
                await self._sleep(delay)

        raise AuthError(f"Login failed after {self.max_attempts} attempts")

    async def create_client(self) -> httpx.AsyncClient:
        """
        Return a ready client: reused session, fresh login, or anonymous.

        Auth failures never propagate; the caller gets an anonymous client
        instead (some endpoints may then fail).
        """
        if not self.has_credentials:
            logger.warning("No login credentials configured, using anonymous session")
            return self.new_client()

        persisted = self.load_cookies()
        client = self.new_client(persisted)
        if has_cookie(client.cookies, AUTH_COOKIE):
            logger.info("Reusing persisted session cookies")
            self.authenticated = True
            return client

        try:
            await self.login(client)
            return client
        except AuthError as e:
            logger.warning(f"Login failed ({e}); falling back to anonymous session")
        await client.aclose()
        self.authenticated = False
        return self.new_client()
