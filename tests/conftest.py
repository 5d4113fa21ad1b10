from __future__ import annotations

import os

import pytest

from Memory_KG.config.settings import get_settings
from Memory_KG.resilience.policy import RetryPolicy
from Memory_KG.storage.fanout import StorageFanoutCoordinator
from Memory_KG.storage.memory import InMemoryGraphStore, InMemoryMetadataStore, InMemoryVectorStore

from .stubs import CountingProvider, RecordingSleep


@pytest.fixture(autouse=True)
def _isolate_settings(monkeypatch):
    for key in list(os.environ):
        if key.startswith("MEMKG_"):
            monkeypatch.delenv(key, raising=False)
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def policy() -> RetryPolicy:
    return RetryPolicy(max_attempts=3, base_delay=0.5, backoff_multiplier=2.0, max_delay=10.0)


@pytest.fixture
def provider() -> CountingProvider:
    return CountingProvider()


@pytest.fixture
def stores() -> tuple[InMemoryGraphStore, InMemoryVectorStore, InMemoryMetadataStore]:
    return InMemoryGraphStore(), InMemoryVectorStore(), InMemoryMetadataStore()


@pytest.fixture
def coordinator(stores, policy, sleep) -> StorageFanoutCoordinator:
    graph, vector, relational = stores
    return StorageFanoutCoordinator(
        graph=graph,
        vector=vector,
        relational=relational,
        retry_policy=policy,
        write_timeout=1.0,
        sleep=sleep,
    )
