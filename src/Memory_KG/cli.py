"""Command line entry point for the pipeline core.

Sub-commands:
    settings   Print the effective settings as JSON.
    simulate   Run a chunk -> embed -> write pipeline against the local hashing
               provider and in-memory stores, optionally failing graph writes.
"""

from __future__ import annotations

# ==============================================================================
# IMPORTS
# ==============================================================================

import argparse
import asyncio
import json
import sys
from collections.abc import Sequence
from pathlib import Path
from typing import Any

import structlog
from prometheus_client import start_http_server

from Memory_KG.config.settings import AppSettings, load_settings
from Memory_KG.orchestration.ledger import RunStatus
from Memory_KG.orchestration.orchestrator import PipelineOrchestrator
from Memory_KG.orchestration.tasks import RunContext, WorkItem, task
from Memory_KG.resilience.errors import BackendUnavailable, ConfigurationError
from Memory_KG.services.embedding.dispatcher import EmbeddingDispatcher
from Memory_KG.services.embedding.providers import ProviderKind, create_provider
from Memory_KG.storage.fanout import StorageFanoutCoordinator
from Memory_KG.storage.memory import InMemoryGraphStore, InMemoryMetadataStore, InMemoryVectorStore
from Memory_KG.storage.models import GraphNode, MetadataRow, StorageWriteBatch, VectorEntry
from Memory_KG.utils.identifiers import build_item_id, new_batch_id
from Memory_KG.utils.logging import configure_logging

logger = structlog.get_logger(__name__)

_WORDS = (
    "memory graph vector entity relation document chunk embedding provider "
    "storage pipeline retrieval context signal episode summary"
).split()


# ==============================================================================
# SIMULATION PIPELINE
# ==============================================================================


def _documents(count: int) -> list[tuple[str, str]]:
    documents: list[tuple[str, str]] = []
    for index in range(count):
        text = " ".join(_WORDS[(index + offset) % len(_WORDS)] for offset in range(8))
        documents.append((build_item_id("doc", index, text), text))
    return documents


@task("chunk", parallel_safe=True)
def _chunk(documents: Sequence[tuple[str, str]], ctx: RunContext) -> list[WorkItem]:
    return [
        WorkItem(
            item_id=doc_id,
            payload=text,
            correlation_id=ctx.correlation_id,
            run_id=ctx.run_id,
        )
        for doc_id, text in documents
    ]


@task("embed", batch_compatible=True)
async def _embed(items: Sequence[WorkItem], ctx: RunContext) -> list[WorkItem]:
    results = await ctx.embed([(item.item_id, item.payload) for item in items])
    embedded: list[WorkItem] = []
    for item, result in zip(items, results):
        if result.ok:
            item.metadata["vector"] = result.vector
            embedded.append(item)
        else:
            ctx.logger.warning("simulate.embed.item_failed", item_id=item.item_id, reason=result.reason)
    return embedded


def _write_task(batch_size: int) -> Any:
    @task("write", batch_compatible=True)
    async def _write(items: Sequence[WorkItem], ctx: RunContext) -> list[str]:
        batch_ids: list[str] = []
        for start in range(0, len(items), batch_size):
            chunk = items[start : start + batch_size]
            batch = StorageWriteBatch(
                batch_id=new_batch_id("write"),
                nodes=tuple(GraphNode(node_id=item.item_id, label="Chunk") for item in chunk),
                vectors=tuple(
                    VectorEntry(item_id=item.item_id, vector=item.metadata["vector"]) for item in chunk
                ),
                rows=tuple(
                    MetadataRow(row_id=item.item_id, values={"length": len(item.payload)})
                    for item in chunk
                ),
            )
            await ctx.write(batch)
            batch_ids.append(batch.batch_id)
        return batch_ids

    return _write


def _graph_failure_injector(every: int) -> Any:
    seen: dict[str, int] = {}

    def _fail(batch: StorageWriteBatch) -> BaseException | None:
        index = seen.setdefault(batch.batch_id, len(seen))
        if (index + 1) % every == 0:
            return BackendUnavailable("Simulated graph outage", detail=batch.batch_id)
        return None

    return _fail


async def simulate(settings: AppSettings, *, items: int, fail_graph_every: int | None) -> dict[str, Any]:
    """Run the demo pipeline and return its status view as a dictionary."""
    pipeline = settings.pipeline
    provider = create_provider(ProviderKind.HASHING, dimension=32)
    graph = InMemoryGraphStore(
        fail_when=_graph_failure_injector(fail_graph_every) if fail_graph_every else None
    )
    coordinator = StorageFanoutCoordinator.from_settings(
        pipeline,
        graph=graph,
        vector=InMemoryVectorStore(),
        relational=InMemoryMetadataStore(),
    )
    orchestrator = PipelineOrchestrator.from_settings(
        pipeline,
        dispatcher=EmbeddingDispatcher.from_settings(provider, pipeline),
        coordinator=coordinator,
    )
    run = await orchestrator.execute(
        [_chunk, _embed, _write_task(pipeline.embedding_batch_size)],
        _documents(items),
        metadata={"source": "simulate"},
    )
    return orchestrator.get_status(run.run_id).model_dump()


# ==============================================================================
# CLI INTERFACE
# ==============================================================================


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="memory-kg", description="Memory KG pipeline utilities")
    parser.add_argument("--config", type=Path, default=None, help="Optional YAML settings file")
    parser.add_argument("--log-level", default=None, help="Override the configured log level")
    commands = parser.add_subparsers(dest="command", required=True)

    commands.add_parser("settings", help="Print the effective settings")

    simulate_parser = commands.add_parser("simulate", help="Run a demo pipeline in memory")
    simulate_parser.add_argument("--items", type=int, default=20, help="Number of documents")
    simulate_parser.add_argument(
        "--fail-graph-every",
        type=int,
        default=None,
        help="Fail every K-th graph write batch",
    )
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        settings = load_settings(args.config)
    except ConfigurationError as exc:
        print(json.dumps({"error": exc.problem.model_dump()}, indent=2), file=sys.stderr)
        return 2
    if args.log_level:
        settings.logging.level = args.log_level
    configure_logging(settings=settings.logging)

    if args.command == "settings":
        print(json.dumps(settings.model_dump(mode="json"), indent=2, sort_keys=True))
        return 0

    if args.items < 1:
        parser.error("--items must be at least 1")
    if args.fail_graph_every is not None and args.fail_graph_every < 1:
        parser.error("--fail-graph-every must be at least 1")
    if settings.metrics.enabled:
        start_http_server(settings.metrics.port)
        logger.info("cli.metrics.started", port=settings.metrics.port)

    status = asyncio.run(
        simulate(settings, items=args.items, fail_graph_every=args.fail_graph_every)
    )
    print(json.dumps(status, indent=2, sort_keys=True, default=str))
    return 0 if status["status"] == RunStatus.COMPLETED.value else 1


if __name__ == "__main__":  # pragma: no cover - CLI entrypoint
    sys.exit(main())
