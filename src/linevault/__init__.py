"""
Linevault — Credential Line Search over Elasticsearch Nodes
===========================================================

Indexes large credential dump files (one ``url:username:password`` style line
per document) into account indices spread over several independent
Elasticsearch nodes, and serves masked public search plus unmasked admin
search across all of them.

Key Features:
- Node-aware index cache that survives nodes going down
- Fan-out search across (node, index) targets with deterministic merging
- Masked public results, raw lines for admins
- Background ingestion, bulk delete and reset with progress and ETA

Architecture:
    NodeRegistry  →  AccountIndex (one AsyncElasticsearch client per node)
    IndexCache    →  which indices live where, running/stopped
    SearchAggregator, IndexBuilder, TaskRegistry  →  Service  →  CLI

Usage:
    from linevault import Service

    service = Service.from_config("config.json")
    await service.refresh_cache()
    page = await service.search("example.com")
"""

__version__ = "0.1.0"

from .core import AccountIndex
from .builder import IndexBuilder
from .cluster import ClusterManager
from .service import Service

__all__ = ["AccountIndex", "IndexBuilder", "ClusterManager", "Service"]
