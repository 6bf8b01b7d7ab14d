"""Namespaced JSON blob storage backends (filesystem, Redis, in-memory)."""

import json
import logging
import os
from pathlib import Path
from typing import Any, Optional, Protocol

import redis.asyncio as redis

from mirror_crawler.config import settings
from mirror_crawler.persistence import keys

logger = logging.getLogger(__name__)


class StoreError(RuntimeError):
    """Raised when a read or write against the blob store fails."""
    pass


class BlobStore(Protocol):
    """Minimal key-value contract consumed by the crawler."""

    namespace: str

    async def get_json(self, key: str) -> Optional[Any]: ...

    async def put_json(self, key: str, value: Any) -> None: ...

    async def list(self, prefix: str) -> list[str]: ...


class MemoryBlobStore:
    """In-process store. Values are JSON round-tripped so callers never share references."""

    def __init__(self, namespace: str = keys.SHARED_NAMESPACE, data: Optional[dict[str, Any]] = None):
        self.namespace = namespace
        self.data: dict[str, str] = {}
        self.writes: list[str] = []
        for key, value in (data or {}).items():
            self.data[key] = json.dumps(value)

    async def get_json(self, key: str) -> Optional[Any]:
        raw = self.data.get(key)
        return json.loads(raw) if raw is not None else None

    async def put_json(self, key: str, value: Any) -> None:
        self.data[key] = json.dumps(value)
        self.writes.append(key)

    async def list(self, prefix: str) -> list[str]:
        return sorted(k for k in self.data if k.startswith(prefix))


class FileBlobStore:
    """Stores each key as a JSON file under `<base_dir>/<namespace>/<key>`."""

    def __init__(self, namespace: str, base_dir: Optional[str | Path] = None):
        self.namespace = namespace
        self.root = Path(base_dir or settings.store_dir) / namespace
        self.root.mkdir(parents=True, exist_ok=True)

    def _path(self, key: str) -> Path:
        path = (self.root / key).resolve()
        if self.root.resolve() not in path.parents:
            raise StoreError(f"Key escapes store root: {key}")
        return path

    async def get_json(self, key: str) -> Optional[Any]:
        path = self._path(key)
        if not path.exists():
            return None
        try:
            with open(path, "r", encoding="utf-8") as f:
                return json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise StoreError(f"Failed to read {self.namespace}/{key}: {e}") from e

    async def put_json(self, key: str, value: Any) -> None:
        path = self._path(key)
        tmp_path = path.with_suffix(path.suffix + ".tmp")
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(tmp_path, "w", encoding="utf-8") as f:
                json.dump(value, f, ensure_ascii=False)
            os.replace(tmp_path, path)
        except (OSError, TypeError, ValueError) as e:
            raise StoreError(f"Failed to write {self.namespace}/{key}: {e}") from e

    async def list(self, prefix: str) -> list[str]:
        base = self.root / prefix
        search_dir = base if (not prefix or prefix.endswith("/")) else base.parent
        if not search_dir.exists():
            return []
        out = []
        for path in search_dir.rglob("*"):
            if not path.is_file() or path.name.endswith(".tmp"):
                continue
            key = path.relative_to(self.root).as_posix()
            if key.startswith(prefix):
                out.append(key)
        return sorted(out)


class RedisBlobStore:
    """Stores JSON values under `blob:<namespace>:<key>` in Redis."""

    def __init__(self, namespace: str, redis_url: Optional[str] = None):
        self.namespace = namespace
        self.redis_url = redis_url or settings.redis_url
        self._redis: Optional[redis.Redis] = None

    async def _get_redis(self) -> redis.Redis:
        """Get or create Redis connection."""
        if self._redis is None:
            self._redis = redis.from_url(
                self.redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
        return self._redis

    async def close(self):
        """Close Redis connection."""
        if self._redis:
            await self._redis.aclose()
            self._redis = None

    def _key(self, key: str) -> str:
        return f"blob:{self.namespace}:{key}"

    async def get_json(self, key: str) -> Optional[Any]:
        try:
            client = await self._get_redis()
            raw = await client.get(self._key(key))
            return json.loads(raw) if raw is not None else None
        except (redis.RedisError, json.JSONDecodeError) as e:
            raise StoreError(f"Failed to read {self.namespace}/{key}: {e}") from e

    async def put_json(self, key: str, value: Any) -> None:
        try:
            client = await self._get_redis()
            await client.set(self._key(key), json.dumps(value, ensure_ascii=False))
        except (redis.RedisError, TypeError, ValueError) as e:
            raise StoreError(f"Failed to write {self.namespace}/{key}: {e}") from e

    async def list(self, prefix: str) -> list[str]:
        strip = len(self._key(""))
        try:
            client = await self._get_redis()
            found = [k[strip:] async for k in client.scan_iter(match=f"{self._key(prefix)}*", count=500)]
        except redis.RedisError as e:
            raise StoreError(f"Failed to list {self.namespace}/{prefix}: {e}") from e
        return sorted(found)


_stores: dict[str, BlobStore] = {}


def get_store(namespace: str) -> BlobStore:
    """Return the process-wide store for a namespace, honoring `store_backend`."""
    store = _stores.get(namespace)
    if store is not None:
        return store

    backend = settings.store_backend.lower()
    if backend == "redis":
        store = RedisBlobStore(namespace)
    elif backend == "memory":
        store = MemoryBlobStore(namespace)
    elif backend == "fs":
        store = FileBlobStore(namespace)
    else:
        raise ValueError(f"Unknown store backend: {settings.store_backend}")

    logger.debug(f"Opened {backend} store for namespace {namespace}")
    _stores[namespace] = store
    return store


def shared_store() -> BlobStore:
    return get_store(keys.SHARED_NAMESPACE)


def market_store(market: str) -> BlobStore:
    return get_store(keys.market_namespace(market))


async def close_stores():
    """Close any backend connections and forget cached stores."""
    for store in _stores.values():
        close = getattr(store, "close", None)
        if close is not None:
            await close()
    _stores.clear()
