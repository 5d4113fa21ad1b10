from __future__ import annotations

import math

import pytest

from Memory_KG.resilience.errors import ConfigurationError, MalformedInput
from Memory_KG.services.embedding.providers import (
    CallableEmbeddingProvider,
    EmbeddingProvider,
    HashingEmbeddingProvider,
    ProviderKind,
    create_provider,
    registered_kinds,
)


def test_builtin_providers_are_registered() -> None:
    assert set(registered_kinds()) == {ProviderKind.CALLABLE, ProviderKind.HASHING}


def test_create_provider_resolves_kind_once() -> None:
    provider = create_provider("hashing", dimension=16)
    assert isinstance(provider, HashingEmbeddingProvider)
    assert isinstance(provider, EmbeddingProvider)
    assert provider.dimension == 16


def test_create_provider_rejects_unknown_kind() -> None:
    with pytest.raises(ConfigurationError):
        create_provider("quantum")


@pytest.mark.asyncio
async def test_hashing_provider_is_deterministic_and_normalised() -> None:
    provider = HashingEmbeddingProvider(dimension=32)
    first = await provider.embed(["memory graph", "memory graph", "other text"])
    second = await provider.embed(["memory graph"])

    assert first[0] == first[1] == second[0]
    assert first[0] != first[2]
    assert math.isclose(math.sqrt(sum(value * value for value in first[0])), 1.0)


@pytest.mark.asyncio
async def test_hashing_provider_reports_blank_text_per_item() -> None:
    provider = HashingEmbeddingProvider()
    response = await provider.embed(["", "text"])
    assert isinstance(response[0], MalformedInput)
    assert len(response[1]) == provider.dimension


@pytest.mark.asyncio
async def test_callable_provider_accepts_sync_and_async_callables() -> None:
    def _sync(texts):
        return [[1.0] for _ in texts]

    async def _async(texts):
        return [[2.0] for _ in texts]

    assert await CallableEmbeddingProvider(_sync).embed(["a", "b"]) == [[1.0], [1.0]]
    provider = create_provider(ProviderKind.CALLABLE, func=_async, name="remote")
    assert provider.name == "remote"
    assert await provider.embed(["a"]) == [[2.0]]
