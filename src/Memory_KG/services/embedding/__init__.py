"""Embedding dispatch: request/result models, providers and the dispatcher."""

from .dispatcher import EmbeddingDispatcher
from .models import EmbeddingRequest, EmbeddingResult, EmbeddingStatus
from .providers import (
    CallableEmbeddingProvider,
    EmbeddingProvider,
    HashingEmbeddingProvider,
    ProviderKind,
    create_provider,
    register_provider,
)


__all__ = [
    "CallableEmbeddingProvider",
    "EmbeddingDispatcher",
    "EmbeddingProvider",
    "EmbeddingRequest",
    "EmbeddingResult",
    "EmbeddingStatus",
    "HashingEmbeddingProvider",
    "ProviderKind",
    "create_provider",
    "register_provider",
]
