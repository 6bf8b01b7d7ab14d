"""Tests for the crawl run lock."""

import asyncio

import pytest
import redis.asyncio as redis

from mirror_crawler.config import settings
from mirror_crawler.worker.run_lock import RunLockManager, guarded_run


async def _redis_available() -> bool:
    try:
        client = redis.from_url(settings.redis_url, decode_responses=True)
        await client.ping()
        await client.aclose()
        return True
    except (redis.RedisError, OSError):
        return False


@pytest.mark.asyncio
async def test_lock_acquire_refresh_release():
    if not await _redis_available():
        pytest.skip("Redis not available")

    manager = RunLockManager(redis_url=settings.redis_url)
    await manager.force_unlock()

    run_id = "test_run_lock"
    token = await manager.acquire_lock(run_id, stage="items", ttl_seconds=30)
    assert token is not None

    info = await manager.get_lock_info()
    assert info.get("run_id") == run_id
    assert info.get("stage") == "items"

    assert await manager.acquire_lock("other_run", ttl_seconds=30) is None
    assert await manager.refresh_lock(run_id, token, ttl_seconds=30) is True
    assert await manager.safe_unlock(run_id, token=token) is True
    assert await manager.get_lock_info() is None
    await manager.close()


@pytest.mark.asyncio
async def test_lock_token_mismatch():
    if not await _redis_available():
        pytest.skip("Redis not available")

    manager = RunLockManager(redis_url=settings.redis_url)
    await manager.force_unlock()

    run_id = "test_run_token"
    token = await manager.acquire_lock(run_id, ttl_seconds=30)
    assert token is not None
    assert await manager.safe_unlock(run_id, token="bad_token") is False

    await manager.force_unlock()
    await manager.close()


class FakeLockManager:

    def __init__(self, token):
        self.token = token
        self.released = []
        self.refreshes = []
        self.closed = False

    async def acquire_lock(self, run_id, stage="all", ttl_seconds=7200):
        return self.token

    async def refresh_lock(self, run_id, token, ttl_seconds=7200):
        self.refreshes.append((token, ttl_seconds))
        return True

    async def safe_unlock(self, run_id, token):
        self.released.append(token)
        return True

    async def close(self):
        self.closed = True


class TestGuardedRun:

    @pytest.mark.asyncio
    async def test_disabled_lock_always_allows(self, monkeypatch):
        monkeypatch.setattr(settings, "run_lock_enabled", False)
        async with guarded_run("items") as allowed:
            assert allowed is True

    @pytest.mark.asyncio
    async def test_held_lock_blocks_run(self, monkeypatch):
        monkeypatch.setattr(settings, "run_lock_enabled", True)
        manager = FakeLockManager(token=None)

        async with guarded_run("items", manager) as allowed:
            assert allowed is False
        assert manager.released == []
        assert manager.closed

    @pytest.mark.asyncio
    async def test_acquired_lock_released_after_run(self, monkeypatch):
        monkeypatch.setattr(settings, "run_lock_enabled", True)
        manager = FakeLockManager(token="tok")

        with pytest.raises(RuntimeError):
            async with guarded_run("sellers", manager) as allowed:
                assert allowed is True
                raise RuntimeError("stage crashed")
        assert manager.released == ["tok"]

    @pytest.mark.asyncio
    async def test_heartbeat_extends_lock_during_long_run(self, monkeypatch):
        monkeypatch.setattr(settings, "run_lock_enabled", True)
        monkeypatch.setattr(settings, "run_lock_ttl_seconds", 1)
        manager = FakeLockManager(token="tok")

        async with guarded_run("items", manager) as allowed:
            assert allowed is True
            await asyncio.sleep(1.2)

        assert len(manager.refreshes) >= 2
        assert all(r == ("tok", 1) for r in manager.refreshes)
        refreshes_at_release = len(manager.refreshes)
        await asyncio.sleep(0.5)
        assert len(manager.refreshes) == refreshes_at_release
        assert manager.released == ["tok"]

    @pytest.mark.asyncio
    async def test_no_heartbeat_when_lock_held_elsewhere(self, monkeypatch):
        monkeypatch.setattr(settings, "run_lock_enabled", True)
        monkeypatch.setattr(settings, "run_lock_ttl_seconds", 1)
        manager = FakeLockManager(token=None)

        async with guarded_run("items", manager):
            await asyncio.sleep(0.5)

        assert manager.refreshes == []
