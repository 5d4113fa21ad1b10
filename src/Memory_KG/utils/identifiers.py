"""Identifier utilities for runs, batches and work items."""

from __future__ import annotations

import hashlib
import secrets


def hash_content(content: str) -> str:
    """Return a stable 12 character hash for the provided content."""
    digest = hashlib.sha256(content.encode("utf-8")).hexdigest()
    return digest[:12]


def new_run_id() -> str:
    """Return an opaque identifier for a pipeline run."""
    return f"run-{secrets.token_hex(6)}"


def new_batch_id(prefix: str = "batch") -> str:
    return f"{prefix}-{secrets.token_hex(6)}"


def build_item_id(source: str, index: int, content: str | None = None) -> str:
    """Construct a deterministic work item identifier."""
    if content:
        return f"{source}:{index}:{hash_content(content)}"
    return f"{source}:{index}"
