"""
Linevault Cache — Node-Aware Index Cache
========================================

Keeps the best known picture of which indices live on which node:

    {node: {status, last_updated, indices: {name: {doc_count, store_size, health}}}}

Rules applied on every refresh:

    - Node storage (declared data/log paths) missing  →  node evicted
    - Node reachable                                  →  fresh entry, "running"
    - Node unreachable or any fetch failing           →  previous entry carried
                                                         forward as "stopped"

Reading never triggers a refresh; ``refresh()`` costs a round-trip per node
and must be called explicitly. The snapshot object is swapped whole and the
JSON file on disk is rewritten in full each time.
"""

import asyncio
import json
import logging
import re
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from .cluster import NodeRegistry, ensure_reachable
from .config import Settings
from .core import AccountIndex
from .exceptions import LinevaultError, RemoteCallError
from .models import (
    IndexStats,
    NodeCacheEntry,
    NodeConfig,
    SearchTarget,
    STATUS_RUNNING,
    STATUS_STOPPED,
    normalize_health,
)
from .utils import write_json_atomic

logger = logging.getLogger("linevault.cache")

_SIZE_RE = re.compile(r"^([\d.]+)\s*(b|kb|mb|gb|tb|pb)?$")
_SIZE_MULTIPLIERS = {
    "b": 1,
    "kb": 1024,
    "mb": 1024 ** 2,
    "gb": 1024 ** 3,
    "tb": 1024 ** 4,
    "pb": 1024 ** 5,
}


def parse_store_size(value: Union[str, int, float, None]) -> int:
    """Convert a ``_cat`` store size ("1234", "1.5kb") to bytes."""
    if value is None:
        return 0
    if isinstance(value, (int, float)):
        return int(value)

    match = _SIZE_RE.match(str(value).strip().lower())
    if not match:
        return 0
    number, unit = match.groups()
    try:
        return round(float(number) * _SIZE_MULTIPLIERS[unit or "b"])
    except ValueError:
        return 0


@dataclass(frozen=True)
class CacheSnapshot:
    """Every node's cached state at one point in time."""

    timestamp: float = 0.0
    nodes: Dict[str, NodeCacheEntry] = field(default_factory=dict)

    def resolves(self, target: SearchTarget) -> bool:
        if target.node is None:
            return any(target.index in entry.indices for entry in self.nodes.values())
        entry = self.nodes.get(target.node)
        return entry is not None and target.index in entry.indices

    def node_for_index(self, index: str) -> Optional[str]:
        """First node holding ``index``, running nodes first."""
        candidates = [name for name, entry in self.nodes.items() if index in entry.indices]
        for name in candidates:
            if self.nodes[name].is_running:
                return name
        return candidates[0] if candidates else None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "nodes": {name: entry.to_dict() for name, entry in self.nodes.items()},
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CacheSnapshot":
        return cls(
            timestamp=float(data.get("timestamp", 0) or 0),
            nodes={
                name: NodeCacheEntry.from_dict(entry or {})
                for name, entry in (data.get("nodes") or {}).items()
            },
        )


class IndexCache:
    """
    Persisted snapshot of indices per node.

    Example:
        cache = IndexCache("cache/indices-cache.json", settings=settings)
        snapshot = await cache.refresh(registry)
        print(snapshot.nodes["node-1"].status)
    """

    def __init__(
        self,
        path: Union[str, Path],
        settings: Optional[Settings] = None,
        probe_timeout: float = 0.5
    ):
        """
        Args:
            path: JSON file holding the snapshot
            settings: Settings whose search indices are reconciled after refresh
            probe_timeout: TCP probe timeout per node, in seconds
        """
        self.path = Path(path)
        self.settings = settings
        self.probe_timeout = probe_timeout
        self.last_pruned: List[SearchTarget] = []
        self._snapshot: Optional[CacheSnapshot] = None

    def _load(self) -> CacheSnapshot:
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return CacheSnapshot()
        except (OSError, ValueError) as e:
            logger.warning("Ignoring unreadable cache file %s: %s", self.path, e)
            return CacheSnapshot()
        return CacheSnapshot.from_dict(data)

    def get(self, node: Optional[str] = None) -> CacheSnapshot:
        """
        Current snapshot, loaded from disk on first access. Never refreshes.

        Args:
            node: Restrict the result to one node

        Returns:
            CacheSnapshot (with at most one node when ``node`` is given)
        """
        if self._snapshot is None:
            self._snapshot = self._load()
        if node is None:
            return self._snapshot

        entry = self._snapshot.nodes.get(node)
        return CacheSnapshot(
            timestamp=self._snapshot.timestamp,
            nodes={node: entry} if entry is not None else {},
        )

    async def refresh(self, registry: NodeRegistry) -> CacheSnapshot:
        """
        Rebuild the snapshot from every registered node.

        Never fails as a whole: node failures degrade that node to "stopped".

        Args:
            registry: Nodes to probe

        Returns:
            The new snapshot
        """
        previous = self.get()
        nodes = list(registry)

        entries = await asyncio.gather(*(
            self._refresh_node(node, registry, previous.nodes.get(node.name))
            for node in nodes
        ))

        snapshot = CacheSnapshot(
            timestamp=time.time(),
            nodes={
                node.name: entry
                for node, entry in zip(nodes, entries)
                if entry is not None
            },
        )
        self._publish(snapshot)

        running = sum(1 for e in snapshot.nodes.values() if e.is_running)
        logger.info(
            "Index cache refreshed: %d node(s), %d running",
            len(snapshot.nodes), running,
        )
        self.reconcile()
        return snapshot

    async def _refresh_node(
        self,
        node: NodeConfig,
        registry: NodeRegistry,
        previous: Optional[NodeCacheEntry]
    ) -> Optional[NodeCacheEntry]:
        if not node.paths_exist():
            logger.warning(
                "Evicting node %s from cache: storage missing (%s)",
                node.name, ", ".join(node.declared_paths()),
            )
            return None

        try:
            client = registry.client_for(node.name)
            await ensure_reachable(node, client, self.probe_timeout)
            indices = await self._fetch_indices(node, client)
        except LinevaultError as e:
            logger.warning("Node %s marked stopped: %s", node.name, e)
        except Exception:
            logger.exception("Unexpected failure refreshing node %s", node.name)
        else:
            return NodeCacheEntry(
                status=STATUS_RUNNING,
                last_updated=time.time(),
                indices=indices,
            )

        if previous is not None:
            return previous.as_stopped()
        return NodeCacheEntry(status=STATUS_STOPPED)

    async def _fetch_indices(
        self,
        node: NodeConfig,
        client: AccountIndex
    ) -> Dict[str, IndexStats]:
        rows, shards = await asyncio.gather(client.cat_indices(), client.cat_shards())

        # cluster-wide listings; keep what is physically allocated here
        on_node = {s["index"] for s in shards if s.get("node") == node.name and s.get("index")}
        rows = [row for row in rows if row.get("index") in on_node]

        counts = await asyncio.gather(*(self._doc_count(client, row) for row in rows))
        return {
            row["index"]: IndexStats(
                doc_count=count,
                store_size=parse_store_size(row.get("store.size")),
                health=normalize_health(row.get("health")),
            )
            for row, count in zip(rows, counts)
        }

    async def _doc_count(self, client: AccountIndex, row: Dict[str, Any]) -> int:
        try:
            return await client.count(row["index"])
        except RemoteCallError as e:
            logger.debug("Count failed for %s, using _cat value: %s", row["index"], e)
            try:
                return int(row.get("docs.count") or 0)
            except ValueError:
                return 0

    def _publish(self, snapshot: CacheSnapshot) -> None:
        self._snapshot = snapshot
        try:
            write_json_atomic(self.path, snapshot.to_dict())
        except OSError:
            logger.exception("Failed to persist index cache to %s", self.path)

    def remove(self, node_name: str) -> bool:
        """Drop a node's entry. Returns False when it was not cached."""
        snapshot = self.get()
        if node_name not in snapshot.nodes:
            return False

        nodes = {k: v for k, v in snapshot.nodes.items() if k != node_name}
        self._publish(CacheSnapshot(timestamp=snapshot.timestamp, nodes=nodes))
        logger.info("Removed node %s from index cache", node_name)
        return True

    def reconcile(self) -> List[SearchTarget]:
        """
        Prune configured search targets that no longer resolve.

        Returns:
            The removed targets (also kept in ``last_pruned``)
        """
        if self.settings is None:
            self.last_pruned = []
            return []

        snapshot = self.get()
        kept: List[SearchTarget] = []
        removed: List[SearchTarget] = []
        for target in self.settings.search_indices:
            (kept if snapshot.resolves(target) else removed).append(target)

        if removed:
            self.settings.search_indices = kept
            try:
                self.settings.save()
            except OSError:
                logger.exception("Failed to save pruned search indices to %s", self.settings.path)
            logger.info(
                "Removed %d stale search index(es): %s",
                len(removed), ", ".join(str(t) for t in removed),
            )

        self.last_pruned = removed
        return removed

    def status(self) -> Dict[str, Any]:
        snapshot = self.get()
        return {
            "path": str(self.path),
            "timestamp": snapshot.timestamp,
            "nodes": len(snapshot.nodes),
        }

    def clear(self) -> None:
        self._publish(CacheSnapshot())
