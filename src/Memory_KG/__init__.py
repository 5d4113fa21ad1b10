"""Memory knowledge-graph pipeline core.

Key Responsibilities:
    - Sequence composable processing tasks into pipeline runs
    - Dispatch embedding work to an external provider under a concurrency bound
    - Fan processed batches out to graph, vector and relational stores
    - Track run state, progress and partial failures

Collaborators:
    - Upstream: Ingestion front-ends submit raw input as pipeline runs
    - Downstream: Embedding providers and storage backends supplied by callers
"""

__version__ = "0.1.0"

__all__ = ["__version__"]
