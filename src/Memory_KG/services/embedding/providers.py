"""Embedding provider collaborators and the provider registry.

Key Responsibilities:
    - Define the provider protocol consumed by the dispatcher
    - Resolve providers from a closed :class:`ProviderKind` enum once, at
      construction time
    - Ship a callable adapter and a deterministic local hashing provider

Collaborators:
    - Upstream: :class:`~Memory_KG.services.embedding.dispatcher.EmbeddingDispatcher`
    - Downstream: Remote embedding services wrapped by callers

Thread Safety:
    - The registry is populated at import time and read afterwards
"""

from __future__ import annotations

import hashlib
import inspect
import math
import re
from collections.abc import Awaitable, Callable, Sequence
from enum import Enum
from typing import Any, Protocol, runtime_checkable

import structlog

from Memory_KG.resilience.errors import ConfigurationError, MalformedInput

logger = structlog.get_logger(__name__)

ProviderResponse = Sequence[Sequence[float] | BaseException]
EmbedCallable = Callable[[Sequence[str]], Awaitable[ProviderResponse] | ProviderResponse]


@runtime_checkable
class EmbeddingProvider(Protocol):
    """External embedding/LLM service.

    ``embed`` returns one entry per input text, in order. An entry is either a
    vector or an exception describing why that text could not be embedded.
    Whole-batch failures are raised.
    """

    name: str

    async def embed(self, texts: Sequence[str]) -> ProviderResponse: ...


class ProviderKind(str, Enum):
    CALLABLE = "callable"
    HASHING = "hashing"


class CallableEmbeddingProvider:
    """Adapter turning a plain (sync or async) callable into a provider."""

    def __init__(self, func: EmbedCallable, *, name: str = "callable") -> None:
        if not callable(func):
            raise ConfigurationError("Callable provider requires a callable", detail=repr(func))
        self._func = func
        self.name = name

    async def embed(self, texts: Sequence[str]) -> ProviderResponse:
        result = self._func(texts)
        if inspect.isawaitable(result):
            result = await result
        return list(result)


_TOKEN_PATTERN = re.compile(r"\w+", re.UNICODE)


class HashingEmbeddingProvider:
    """Deterministic feature-hashing embedder for dry runs and tests.

    Tokens are hashed into ``dimension`` buckets with a signed count and the
    resulting vector is L2 normalised. Blank texts are reported per item as
    :class:`MalformedInput`.
    """

    def __init__(self, *, dimension: int = 64, name: str = "hashing") -> None:
        if dimension < 2:
            raise ConfigurationError("Hashing provider dimension must be at least 2")
        self.dimension = dimension
        self.name = name
        self.calls = 0

    def _vector(self, text: str) -> list[float]:
        values = [0.0] * self.dimension
        for token in _TOKEN_PATTERN.findall(text.lower()):
            digest = hashlib.blake2b(token.encode("utf-8"), digest_size=8).digest()
            bucket = int.from_bytes(digest[:4], "big") % self.dimension
            sign = 1.0 if digest[4] & 1 else -1.0
            values[bucket] += sign
        norm = math.sqrt(sum(value * value for value in values))
        if not norm:
            return values
        return [value / norm for value in values]

    async def embed(self, texts: Sequence[str]) -> ProviderResponse:
        self.calls += 1
        response: list[Sequence[float] | BaseException] = []
        for text in texts:
            if not text or not text.strip():
                response.append(MalformedInput("Cannot embed blank text"))
                continue
            response.append(self._vector(text))
        return response


# ==============================================================================
# REGISTRY
# ==============================================================================

ProviderFactory = Callable[..., EmbeddingProvider]

_REGISTRY: dict[ProviderKind, ProviderFactory] = {}


def register_provider(kind: ProviderKind, factory: ProviderFactory) -> None:
    """Register ``factory`` as the implementation for ``kind``."""
    _REGISTRY[kind] = factory
    logger.debug("embedding.provider.registered", kind=kind.value)


def create_provider(kind: ProviderKind | str, **options: Any) -> EmbeddingProvider:
    """Instantiate the provider registered for ``kind``.

    Raises:
        ConfigurationError: If ``kind`` is unknown or has no registered factory.
    """
    try:
        resolved = ProviderKind(kind)
    except ValueError as exc:
        raise ConfigurationError("Unknown embedding provider kind", detail=str(kind)) from exc
    factory = _REGISTRY.get(resolved)
    if factory is None:
        raise ConfigurationError("No embedding provider registered", detail=resolved.value)
    provider = factory(**options)
    if not isinstance(provider, EmbeddingProvider):
        raise ConfigurationError(
            "Registered factory did not return an embedding provider",
            detail=resolved.value,
        )
    return provider


def registered_kinds() -> tuple[ProviderKind, ...]:
    return tuple(_REGISTRY)


register_provider(ProviderKind.CALLABLE, CallableEmbeddingProvider)
register_provider(ProviderKind.HASHING, HashingEmbeddingProvider)


__all__ = [
    "CallableEmbeddingProvider",
    "EmbeddingProvider",
    "HashingEmbeddingProvider",
    "ProviderKind",
    "ProviderResponse",
    "create_provider",
    "register_provider",
    "registered_kinds",
]
