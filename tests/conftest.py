"""Shared fixtures: in-memory stores and mock-transport HTTP clients."""

import json

import httpx
import pytest

from mirror_crawler.ingest.http_client import create_client
from mirror_crawler.persistence.blob_store import MemoryBlobStore

HOSTS = ["https://littlebiggy.net", "https://www.littlebiggy.net"]


def json_response(payload, status: int = 200) -> httpx.Response:
    return httpx.Response(status, content=json.dumps(payload), headers={"content-type": "application/json"})


def mock_client(handler) -> httpx.AsyncClient:
    return create_client(transport=httpx.MockTransport(handler))


class MarketStores:
    """Per-market MemoryBlobStores created on first use."""

    def __init__(self):
        self.stores: dict[str, MemoryBlobStore] = {}

    def __call__(self, market: str) -> MemoryBlobStore:
        if market not in self.stores:
            self.stores[market] = MemoryBlobStore(namespace=f"market-{market.lower()}")
        return self.stores[market]


@pytest.fixture
def shared_store() -> MemoryBlobStore:
    return MemoryBlobStore()


@pytest.fixture
def market_stores() -> MarketStores:
    return MarketStores()
