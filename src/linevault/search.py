"""
Linevault Search — Cross-Node Search Aggregation
================================================

Answers searches and counts over several (node, index) targets as if they
were one index.

Target resolution:

    node + index   →  that pair, which must be in the index cache
    node only      →  every cached index of that node
    neither        →  the configured search indices

Public callers only ever reach configured search indices; explicit node/index
arguments can narrow that set but never widen it. Admin callers may reach any
cached target.

Pagination across several targets is an approximation. Each target is asked
for the same (from, size) window, the hits are merged, sorted by document id
and cut back to ``size``. Relevance ranking across indices is not attempted;
what is guaranteed is that the same request always returns the same order.
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional, Tuple

from .cache import IndexCache
from .cluster import NodeRegistry
from .config import Settings
from .exceptions import LinevaultError, TargetNotFoundError, ValidationError
from .masking import mask_record
from .models import SearchTarget
from .parsing import parse_line

logger = logging.getLogger("linevault.search")

MAX_PAGE_SIZE = 100
# Elasticsearch default index.max_result_window
MAX_RESULT_WINDOW = 10000

MESSAGE_NO_TARGETS = "No search indices are configured."
MESSAGE_UNREACHABLE = "No search indices are currently reachable."


def page_offset(page: int, size: int) -> int:
    """
    Validate page/size and return the offset of the first hit.

    Raises:
        ValidationError: for non-positive values, oversize pages or a window
            beyond MAX_RESULT_WINDOW
    """
    if not isinstance(page, int) or page < 1:
        raise ValidationError("page must be a positive integer")
    if not isinstance(size, int) or not 1 <= size <= MAX_PAGE_SIZE:
        raise ValidationError(f"size must be between 1 and {MAX_PAGE_SIZE}")
    if page * size > MAX_RESULT_WINDOW:
        raise ValidationError(f"Cannot page past {MAX_RESULT_WINDOW} results")
    return (page - 1) * size


class SearchAggregator:
    """
    Fan-out search over the targets known to the index cache.

    Example:
        aggregator = SearchAggregator(cache, registry, settings)
        page = await aggregator.search("example.com", page=1, size=20)
        for account in page["results"]:
            print(account["url"], account["username"])
    """

    def __init__(self, cache: IndexCache, registry: NodeRegistry, settings: Settings):
        self.cache = cache
        self.registry = registry
        self.settings = settings

    def configured_targets(self) -> List[SearchTarget]:
        """Configured search indices resolved against the current snapshot."""
        snapshot = self.cache.get()
        targets: List[SearchTarget] = []
        for target in self.settings.search_indices:
            if target.node is None:
                node = snapshot.node_for_index(target.index)
                if node is None:
                    logger.debug("Search index %s not found on any node", target.index)
                    continue
                target = SearchTarget(node, target.index)
            elif not snapshot.resolves(target):
                logger.debug("Search target %s not in cache", target)
                continue
            if target not in targets:
                targets.append(target)
        return targets

    def resolve_targets(
        self,
        node: Optional[str] = None,
        index: Optional[str] = None,
        admin: bool = False
    ) -> List[SearchTarget]:
        """
        Turn optional node/index arguments into concrete targets.

        Args:
            node: Restrict to this node
            index: Restrict to this index
            admin: Caller may reach targets outside the configured list

        Returns:
            Ordered list of (node, index) targets; empty when nothing is
            configured

        Raises:
            TargetNotFoundError: when an explicit node/index does not resolve
        """
        if not admin:
            targets = [
                t for t in self.configured_targets()
                if (node is None or t.node == node) and (index is None or t.index == index)
            ]
            if (node or index) and not targets:
                raise TargetNotFoundError(
                    f"{node or '*'}/{index or '*'} is not an enabled search index"
                )
            return targets

        snapshot = self.cache.get()
        if node and index:
            target = SearchTarget(node, index)
            if not snapshot.resolves(target):
                raise TargetNotFoundError(f"Index {index} not found on node {node}")
            return [target]
        if node:
            entry = snapshot.nodes.get(node)
            if entry is None:
                raise TargetNotFoundError(f"Node {node} not found in index cache")
            return [SearchTarget(node, name) for name in sorted(entry.indices)]
        if index:
            holder = snapshot.node_for_index(index)
            if holder is None:
                raise TargetNotFoundError(f"Index {index} not found on any node")
            return [SearchTarget(holder, index)]
        return self.configured_targets()

    def _live(self, targets: List[SearchTarget]) -> List[SearchTarget]:
        snapshot = self.cache.get()
        live = []
        for target in targets:
            entry = snapshot.nodes.get(target.node)
            if entry is not None and entry.is_running:
                live.append(target)
            else:
                logger.info("Skipping %s: node not running", target)
        return live

    async def _search_target(
        self,
        target: SearchTarget,
        query: Optional[str],
        offset: int,
        size: int
    ) -> Optional[Dict[str, Any]]:
        try:
            client = self.registry.client_for(target.node)
            return await client.search(target.index, query, from_=offset, size=size)
        except LinevaultError as e:
            logger.warning("Search on %s failed: %s", target, e)
            return None

    async def _fan_out(
        self,
        targets: List[SearchTarget],
        query: Optional[str],
        offset: int,
        size: int
    ) -> Tuple[int, List[Dict[str, Any]], int]:
        live = self._live(targets)
        results = await asyncio.gather(*(
            self._search_target(t, query, offset, size) for t in live
        ))

        total = 0
        reached = 0
        hits: List[Dict[str, Any]] = []
        for target, result in zip(live, results):
            if result is None:
                continue
            reached += 1
            total += result["total"]
            hits.extend(dict(hit, node=target.node) for hit in result["hits"])

        if len(live) > 1:
            hits.sort(key=lambda h: (h["id"], h["index"], h["node"]))
            hits = hits[:size]

        return total, hits, reached

    def _present(self, hit: Dict[str, Any], admin: bool) -> Dict[str, Any]:
        record = parse_line(hit["raw_line"])
        if admin:
            return {
                "id": hit["id"],
                "node": hit["node"],
                "index": hit["index"],
                "url": record.url,
                "username": record.username,
                "password": record.password,
                "raw_line": hit["raw_line"],
            }

        return {
            "id": hit["id"],
            **mask_record(
                record,
                self.settings.masking_ratio,
                self.settings.username_masking_ratio,
                self.settings.min_visible_chars,
            ),
        }

    async def search(
        self,
        query: Optional[str],
        page: int = 1,
        size: int = 20,
        node: Optional[str] = None,
        index: Optional[str] = None,
        admin: bool = False
    ) -> Dict[str, Any]:
        """
        Search across resolved targets.

        Args:
            query: Search text; empty returns no results (public) or lists
                everything (admin)
            page: 1-based page number
            size: Page size
            node: Optional node restriction
            index: Optional index restriction
            admin: Unmasked results with raw lines

        Returns:
            Dict with ``results``, ``total``, ``page``, ``size`` and, when
            nothing could be searched, a ``message``
        """
        offset = page_offset(page, size)
        response: Dict[str, Any] = {"results": [], "total": 0, "page": page, "size": size}

        if not query and not admin:
            return response

        targets = self.resolve_targets(node, index, admin)
        if not targets:
            response["message"] = MESSAGE_NO_TARGETS
            return response

        total, hits, reached = await self._fan_out(targets, query or None, offset, size)
        if reached == 0:
            response["message"] = MESSAGE_UNREACHABLE
            return response

        response["total"] = total
        response["results"] = [self._present(hit, admin) for hit in hits]
        return response

    async def accounts(
        self,
        page: int = 1,
        size: int = 20,
        node: Optional[str] = None,
        index: Optional[str] = None
    ) -> Dict[str, Any]:
        """Admin listing of stored accounts, unmasked."""
        return await self.search(None, page=page, size=size, node=node, index=index, admin=True)

    async def count(
        self,
        query: Optional[str] = None,
        node: Optional[str] = None,
        index: Optional[str] = None,
        admin: bool = False
    ) -> int:
        """Sum of matching documents across reachable targets."""
        targets = self._live(self.resolve_targets(node, index, admin))

        async def count_one(target: SearchTarget) -> int:
            try:
                return await self.registry.client_for(target.node).count(target.index, query)
            except LinevaultError as e:
                logger.warning("Count on %s failed: %s", target, e)
                return 0

        return sum(await asyncio.gather(*(count_one(t) for t in targets)))
