"""
Linevault Builder — Ingestion and Bulk Operations
=================================================

Dump files move through three directories under ``data_dir``:

    pending/   →  unparsed/   →  parsed/
    (uploaded)    (queued)       (indexed)

Every long operation here is an async generator of ``ProgressEvent``; the
task registry turns the stream into a pollable task record.

Design principles:
    - Stream processing: a file is read in batches, never loaded whole
    - Pre-count: totals are known before the first document is indexed
    - Sequential files: one file at a time keeps cumulative progress ordered
    - Abort on first error: a failing file stops the remaining ones

Typical usage:
    builder = IndexBuilder(registry, cache, settings, FileStore("data"))
    task = tasks.start("Parse All Unparsed Files", builder.parse_all("node-1", "accounts"))
"""

import asyncio
import logging
from pathlib import Path
from typing import AsyncIterator, List, Optional, Tuple

from .cache import IndexCache
from .cluster import NodeRegistry
from .config import Settings
from .core import AccountIndex
from .exceptions import (
    FileProcessingError,
    LinevaultError,
    RemoteCallError,
    RemoteErrorKind,
    TargetNotFoundError,
    ValidationError,
)
from .parsing import count_lines, iter_line_batches
from .tasks import ProgressEvent

logger = logging.getLogger("linevault.builder")

PENDING = "pending"
UNPARSED = "unparsed"
PARSED = "parsed"
STAGES = (PENDING, UNPARSED, PARSED)


class FileStore:
    """The pending/unparsed/parsed directories holding dump files."""

    def __init__(self, root: Path):
        self.root = Path(root)

    def ensure(self) -> None:
        for stage in STAGES:
            (self.root / stage).mkdir(parents=True, exist_ok=True)

    def directory(self, stage: str) -> Path:
        if stage not in STAGES:
            raise ValidationError(f"Unknown file stage {stage!r}")
        return self.root / stage

    def path(self, stage: str, filename: str) -> Path:
        if not filename or "/" in filename or "\\" in filename or filename in (".", ".."):
            raise ValidationError(f"Invalid filename {filename!r}")
        return self.directory(stage) / filename

    def exists(self, stage: str, filename: str) -> bool:
        return self.path(stage, filename).is_file()

    def list(self, stage: str, suffix: Optional[str] = None) -> List[str]:
        directory = self.directory(stage)
        if not directory.is_dir():
            return []
        return sorted(
            p.name for p in directory.iterdir()
            if p.is_file() and (suffix is None or p.suffix.lower() == suffix)
        )

    def move(self, filename: str, source: str, dest: str) -> Path:
        target = self.path(dest, filename)
        target.parent.mkdir(parents=True, exist_ok=True)
        self.path(source, filename).rename(target)
        return target

    def delete(self, stage: str, filename: str) -> None:
        self.path(stage, filename).unlink()


class IndexBuilder:
    """
    Ingestion, bulk delete and reset operations against one (node, index).

    Features:
        - Bulk API batches of ``settings.batch_size`` lines
        - Cumulative line-based progress across files
        - Chunked bulk delete with idempotent semantics
        - Full reset: delete all documents, requeue parsed files
    """

    def __init__(
        self,
        registry: NodeRegistry,
        cache: IndexCache,
        settings: Settings,
        files: FileStore
    ):
        self.registry = registry
        self.cache = cache
        self.settings = settings
        self.files = files

    def resolve_target(
        self,
        node: Optional[str] = None,
        index: Optional[str] = None
    ) -> Tuple[str, str]:
        """
        Pick the (node, index) an operation writes to.

        Defaults to the configured write node and default index. The node must
        be present in the index cache; evicted nodes are not valid targets.

        Returns:
            Tuple of (node name, index name)
        """
        node_name = self.registry.get(node).name if node else self.registry.write_node().name
        if node_name not in self.cache.get().nodes:
            raise TargetNotFoundError(
                f"Node {node_name} is not in the index cache; refresh the cache "
                "or check the node's storage paths"
            )
        return node_name, index or self.settings.default_index

    async def _open(self, node: str, index: str) -> AccountIndex:
        client = self.registry.client_for(node)
        if await client.ensure_index(index):
            logger.info("Created index %s on %s", index, node)
        return client

    async def _index_file(
        self,
        client: AccountIndex,
        index: str,
        path: Path
    ) -> AsyncIterator[int]:
        for batch, lines_read in iter_line_batches(path, self.settings.batch_size):
            if batch:
                await client.bulk_index(index, batch)
            yield lines_read

    async def parse_file(
        self,
        filename: str,
        node: str,
        index: str
    ) -> AsyncIterator[ProgressEvent]:
        """
        Index one unparsed file, then move it to parsed/.

        Args:
            filename: File name inside unparsed/
            node: Target node
            index: Target index
        """
        path = self.files.path(UNPARSED, filename)

        yield ProgressEvent(status="counting lines", message=f"Counting lines in {filename}...")
        total = await asyncio.to_thread(count_lines, path)
        logger.info("%s: %d lines to index into %s/%s", filename, total, node, index)
        yield ProgressEvent(status="parsing", total=total, message=f"Parsing file: 0/{total} lines...")

        try:
            client = await self._open(node, index)
            async for processed in self._index_file(client, index, path):
                yield ProgressEvent(
                    status="parsing",
                    progress=processed,
                    message=f"Parsing file: {processed}/{total} lines..."
                )
            self.files.move(filename, UNPARSED, PARSED)
        except (LinevaultError, OSError) as e:
            raise FileProcessingError(filename, str(e)) from e

        yield ProgressEvent(
            progress=total,
            message=f"Parsed and indexed {total} lines from {filename}"
        )

    async def parse_all(self, node: str, index: str) -> AsyncIterator[ProgressEvent]:
        """
        Index every .txt file in unparsed/, one file at a time.

        The total is the line count of all files, computed before indexing
        starts. The first failing file aborts the rest.
        """
        filenames = self.files.list(UNPARSED, suffix=".txt")
        if not filenames:
            yield ProgressEvent(
                progress=0,
                total=0,
                message="No .txt files found in unparsed directory to parse."
            )
            return

        yield ProgressEvent(
            status="counting lines",
            message=f"Counting lines in {len(filenames)} files..."
        )
        counts = {}
        for filename in filenames:
            counts[filename] = await asyncio.to_thread(
                count_lines, self.files.path(UNPARSED, filename)
            )
        total = sum(counts.values())
        yield ProgressEvent(
            total=total,
            message=f"Found {len(filenames)} files with {total} lines to parse. Starting..."
        )

        done = 0
        for position, filename in enumerate(filenames, 1):
            in_file = counts[filename]
            try:
                client = await self._open(node, index)
                async for processed in self._index_file(
                    client, index, self.files.path(UNPARSED, filename)
                ):
                    overall = done + processed
                    yield ProgressEvent(
                        status="processing files",
                        progress=overall,
                        message=(
                            f"Processing file {filename}: {processed}/{in_file} lines processed. "
                            f"Overall: {overall}/{total} lines."
                        )
                    )
                self.files.move(filename, UNPARSED, PARSED)
            except (LinevaultError, OSError) as e:
                logger.error("Aborting after %s (%d/%d files): %s", filename, position, len(filenames), e)
                raise FileProcessingError(filename, str(e)) from e

            done += in_file
            yield ProgressEvent(
                progress=done,
                message=f"Indexed {filename} ({position}/{len(filenames)} files)."
            )

        yield ProgressEvent(
            progress=total,
            message=(
                f"Successfully parsed and moved {len(filenames)} files. "
                f"Total lines processed: {total}."
            )
        )

    async def bulk_delete(
        self,
        ids: List[str],
        node: str,
        index: str
    ) -> AsyncIterator[ProgressEvent]:
        """
        Delete documents by id in chunks.

        Ids that are already gone count as processed. A failing chunk
        request aborts the operation.
        """
        total = len(ids)
        chunk_size = self.settings.delete_chunk_size
        client = self.registry.client_for(node)

        yield ProgressEvent(status="deleting", total=total, message=f"Deleting {total} accounts...")

        processed = deleted = missing = 0
        for start in range(0, total, chunk_size):
            results = await client.delete_ids(index, ids[start:start + chunk_size])
            chunk_deleted = results.count("deleted")
            chunk_missing = results.count("not_found")
            failed = len(results) - chunk_deleted - chunk_missing
            if failed:
                logger.warning("%d delete(s) failed in chunk starting at %d", failed, start)

            deleted += chunk_deleted
            missing += chunk_missing
            processed += chunk_deleted + chunk_missing
            yield ProgressEvent(
                status="deleting",
                progress=processed,
                message=f"Deleted {deleted}/{total} accounts."
            )

        yield ProgressEvent(
            message=f"Bulk deleted {deleted} accounts ({missing} already gone)."
        )

    async def clean(self, node: str, index: str) -> AsyncIterator[ProgressEvent]:
        """
        Delete every document of the index and move parsed files back to
        unparsed/.

        Progress mixes two units: deleted documents first, then moved files.
        """
        yield ProgressEvent(status="initializing", message="Initializing clean task: counting items...")
        client = self.registry.client_for(node)

        try:
            accounts = await client.count(index)
        except RemoteCallError as e:
            if e.kind is not RemoteErrorKind.NOT_FOUND:
                raise
            logger.info("Index %s does not exist on %s, nothing to delete", index, node)
            accounts = None

        parsed = self.files.list(PARSED)
        total = (accounts or 0) + len(parsed)
        yield ProgressEvent(
            status="deleting accounts",
            total=total,
            message=f"Starting deletion of {accounts or 0} accounts..."
        )

        deleted = await client.delete_all(index) if accounts is not None else 0
        yield ProgressEvent(
            status="accounts deleted",
            progress=deleted,
            message=f"Deleted {deleted} accounts. Starting file movement..."
        )

        moved = 0
        for filename in parsed:
            self.files.move(filename, PARSED, UNPARSED)
            moved += 1
            yield ProgressEvent(
                status="moving files",
                progress=deleted + moved,
                file_moved_count=moved,
                message=f"Moving files: {moved}/{len(parsed)} files moved."
            )

        yield ProgressEvent(
            file_moved_count=moved,
            message=f"Cleaned database: deleted {deleted} accounts and moved {moved} files."
        )

    async def move_file(self, filename: str, source: str, dest: str) -> AsyncIterator[ProgressEvent]:
        yield ProgressEvent(status="moving", total=1)
        self.files.move(filename, source, dest)
        yield ProgressEvent(progress=1, message=f"File {filename} moved to {dest}.")

    async def delete_file(self, stage: str, filename: str) -> AsyncIterator[ProgressEvent]:
        yield ProgressEvent(status="deleting", total=1)
        self.files.delete(stage, filename)
        yield ProgressEvent(progress=1, message=f"{stage.capitalize()} file {filename} deleted.")
