"""
Linevault Service
=================

One object owning every component of a running instance: settings, node
registry, index cache, search aggregator, task registry and builder. Each
public method maps to one operation a front end (CLI, HTTP layer) exposes.

Methods that start a long operation return the task id immediately; the
caller polls ``task(task_id)``.
"""

import logging
from typing import Any, Dict, Iterable, List, Optional, Union

from .builder import PENDING, STAGES, UNPARSED, FileStore, IndexBuilder
from .cache import IndexCache
from .cluster import ClusterManager, NodeRegistry
from .config import Settings
from .exceptions import (
    RemoteCallError,
    RemoteErrorKind,
    TargetNotFoundError,
    ValidationError,
)
from .models import SearchTarget
from .search import SearchAggregator
from .tasks import TaskRegistry

logger = logging.getLogger("linevault.service")

TASK_PARSE_FILE = "Parse File"
TASK_PARSE_ALL = "Parse All Unparsed Files"
TASK_BULK_DELETE = "Bulk Delete Accounts"
TASK_CLEAN = "Clean Database"
TASK_MOVE_TO_UNPARSED = "Move to Unparsed"
TASK_MOVE_TO_PENDING = "Move to Pending"
TASK_DELETE_FILE = "Delete File"


class Service:
    """
    Facade over a linevault instance.

    Example:
        service = Service.from_config("config.json")
        await service.refresh_cache()
        task_id = service.parse_all_unparsed()
        ...
        await service.close()
    """

    def __init__(
        self,
        settings: Settings,
        registry: Optional[NodeRegistry] = None,
        cache: Optional[IndexCache] = None
    ):
        self.settings = settings
        self.registry = registry or NodeRegistry(settings)
        self.cache = cache or IndexCache(
            settings.cache_path,
            settings=settings,
            probe_timeout=settings.probe_timeout
        )
        self.files = FileStore(settings.data_path)
        self.files.ensure()

        self.search_aggregator = SearchAggregator(self.cache, self.registry, settings)
        self.builder = IndexBuilder(self.registry, self.cache, settings, self.files)
        self.cluster = ClusterManager(self.registry, self.cache)
        self.task_registry = TaskRegistry()

    @classmethod
    def from_config(cls, path: Optional[str] = None) -> "Service":
        return cls(Settings.load(path))

    async def _refresh_after_task(self) -> None:
        await self.cache.refresh(self.registry)

    # -- cache --------------------------------------------------------------

    def indices_cache(self, node: Optional[str] = None) -> Dict[str, Any]:
        """Current cache snapshot (optionally one node) without refreshing."""
        data = self.cache.get(node).to_dict()
        data["pruned"] = [str(t) for t in self.cache.last_pruned]
        return data

    async def refresh_cache(self) -> Dict[str, Any]:
        """
        Re-probe every node and rebuild the cache.

        Returns:
            The new snapshot plus the search targets pruned by reconciliation
        """
        snapshot = await self.cache.refresh(self.registry)
        data = snapshot.to_dict()
        data["pruned"] = [str(t) for t in self.cache.last_pruned]
        return data

    # -- search -------------------------------------------------------------

    async def search(
        self,
        query: Optional[str],
        page: int = 1,
        size: int = 20,
        node: Optional[str] = None,
        index: Optional[str] = None
    ) -> Dict[str, Any]:
        """Public, masked search over the enabled search indices."""
        return await self.search_aggregator.search(query, page=page, size=size, node=node, index=index)

    async def accounts(
        self,
        query: Optional[str] = None,
        page: int = 1,
        size: int = 20,
        node: Optional[str] = None,
        index: Optional[str] = None
    ) -> Dict[str, Any]:
        """Admin view: unmasked, any cached target."""
        return await self.search_aggregator.search(
            query, page=page, size=size, node=node, index=index, admin=True
        )

    async def total_accounts(self) -> Dict[str, int]:
        return {"total": await self.search_aggregator.count()}

    # -- tasks --------------------------------------------------------------

    def _require_file(self, stage: str, filename: str) -> None:
        if not self.files.exists(stage, filename):
            raise ValidationError(f"File {filename} not found in {stage} directory")

    def parse_file(
        self,
        filename: str,
        node: Optional[str] = None,
        index: Optional[str] = None
    ) -> str:
        self._require_file(UNPARSED, filename)
        node, index = self.builder.resolve_target(node, index)
        task = self.task_registry.start(
            TASK_PARSE_FILE,
            self.builder.parse_file(filename, node, index),
            filename=filename,
            on_complete=self._refresh_after_task
        )
        return task.task_id

    def parse_all_unparsed(self, node: Optional[str] = None, index: Optional[str] = None) -> str:
        node, index = self.builder.resolve_target(node, index)
        task = self.task_registry.start(
            TASK_PARSE_ALL,
            self.builder.parse_all(node, index),
            on_complete=self._refresh_after_task
        )
        return task.task_id

    def bulk_delete(
        self,
        ids: Iterable[str],
        node: Optional[str] = None,
        index: Optional[str] = None
    ) -> str:
        ids = [str(i) for i in ids if i]
        if not ids:
            raise ValidationError("No account ids given")
        node, index = self.builder.resolve_target(node, index)
        task = self.task_registry.start(
            TASK_BULK_DELETE,
            self.builder.bulk_delete(ids, node, index),
            on_complete=self._refresh_after_task
        )
        return task.task_id

    def clean(self, node: Optional[str] = None, index: Optional[str] = None) -> str:
        node, index = self.builder.resolve_target(node, index)
        task = self.task_registry.start(
            TASK_CLEAN,
            self.builder.clean(node, index),
            on_complete=self._refresh_after_task
        )
        return task.task_id

    def move_to_unparsed(self, filename: str) -> str:
        self._require_file(PENDING, filename)
        task = self.task_registry.start(
            TASK_MOVE_TO_UNPARSED,
            self.builder.move_file(filename, PENDING, UNPARSED),
            filename=filename
        )
        return task.task_id

    def move_to_pending(self, filename: str) -> str:
        self._require_file(UNPARSED, filename)
        task = self.task_registry.start(
            TASK_MOVE_TO_PENDING,
            self.builder.move_file(filename, UNPARSED, PENDING),
            filename=filename
        )
        return task.task_id

    def delete_file(self, stage: str, filename: str) -> str:
        if stage not in (PENDING, UNPARSED):
            raise ValidationError("Only pending or unparsed files can be deleted")
        self._require_file(stage, filename)
        task = self.task_registry.start(
            TASK_DELETE_FILE,
            self.builder.delete_file(stage, filename),
            filename=filename
        )
        return task.task_id

    def list_files(self) -> Dict[str, List[str]]:
        return {stage: self.files.list(stage) for stage in STAGES}

    def tasks(self, active_only: bool = False) -> List[Dict[str, Any]]:
        tasks = self.task_registry.active() if active_only else self.task_registry.all()
        return [t.to_dict() for t in tasks]

    def task(self, task_id: str) -> Dict[str, Any]:
        return self.task_registry.get(task_id).to_dict()

    def task_action(self, action: str) -> int:
        """
        Housekeeping on the task list.

        Args:
            action: "clear" drops finished tasks, "clear-all" drops every task

        Returns:
            Number of tasks removed
        """
        if action == "clear":
            return self.task_registry.clear()
        if action == "clear-all":
            return self.task_registry.clear_all()
        raise ValidationError(f"Unknown task action {action!r}")

    # -- single accounts ----------------------------------------------------

    async def update_account(
        self,
        doc_id: str,
        raw_line: str,
        node: Optional[str] = None,
        index: Optional[str] = None
    ) -> Dict[str, Any]:
        raw_line = (raw_line or "").strip()
        if not raw_line:
            raise ValidationError("raw_line must not be empty")

        node, index = self.builder.resolve_target(node, index)
        try:
            await self.registry.client_for(node).update_account(index, doc_id, raw_line)
        except RemoteCallError as e:
            if e.kind is RemoteErrorKind.NOT_FOUND:
                raise TargetNotFoundError(f"Account {doc_id} not found in {node}/{index}") from e
            raise
        return {"id": doc_id, "node": node, "index": index, "raw_line": raw_line}

    async def delete_account(
        self,
        doc_id: str,
        node: Optional[str] = None,
        index: Optional[str] = None
    ) -> None:
        node, index = self.builder.resolve_target(node, index)
        try:
            await self.registry.client_for(node).delete_account(index, doc_id)
        except RemoteCallError as e:
            if e.kind is RemoteErrorKind.NOT_FOUND:
                raise TargetNotFoundError(f"Account {doc_id} not found in {node}/{index}") from e
            raise

    # -- configuration ------------------------------------------------------

    def set_search_indices(
        self,
        targets: Iterable[Union[SearchTarget, str, Dict[str, str]]]
    ) -> List[SearchTarget]:
        """
        Replace the indices offered to public search.

        Every target must resolve in the current cache. Duplicates are dropped,
        order is kept.
        """
        snapshot = self.cache.get()
        selected: List[SearchTarget] = []
        for raw in targets:
            target = raw if isinstance(raw, SearchTarget) else SearchTarget.from_json(raw)
            if not snapshot.resolves(target):
                raise TargetNotFoundError(f"Search index {target} is not in the index cache")
            if target not in selected:
                selected.append(target)

        self.settings.search_indices = selected
        self.settings.save()
        logger.info("Search indices set to: %s", ", ".join(str(t) for t in selected) or "(none)")
        return selected

    async def remove_node(self, name: str) -> Dict[str, Any]:
        node = await self.cluster.remove_node(name)
        return {"node": node.name, "pruned": [str(t) for t in self.cache.last_pruned]}

    async def close(self) -> None:
        await self.task_registry.join()
        await self.registry.close()
