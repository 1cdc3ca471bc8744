"""
Linevault Exceptions
====================

Closed error taxonomy shared by the cache, the search aggregator and the
task engine. Remote client errors are normalized into ``RemoteCallError`` so
callers branch on ``kind`` instead of on a transport's error shape.
"""

import enum
from typing import Optional

from elasticsearch import ApiError
from elasticsearch import ConflictError
from elasticsearch import ConnectionError as ESConnectionError
from elasticsearch import ConnectionTimeout
from elasticsearch import NotFoundError


class LinevaultError(Exception):
    """Base class for all operational errors."""

    pass


class NodeUnreachableError(LinevaultError):
    """Raised when a node fails its liveness probe."""

    def __init__(self, node: str, reason: str = "liveness probe failed"):
        self.node = node
        super().__init__(f"Node {node} is unreachable: {reason}")


class TargetNotFoundError(LinevaultError):
    """Raised when a requested node or index is absent from the index cache."""

    pass


class ValidationError(LinevaultError):
    """Malformed request parameters."""

    pass


class TaskNotFoundError(LinevaultError):
    def __init__(self, task_id: str):
        self.task_id = task_id
        super().__init__(f"Task {task_id} not found")


class FileProcessingError(LinevaultError):
    """A dump file could not be read, indexed or moved."""

    def __init__(self, filename: str, reason: str):
        self.filename = filename
        super().__init__(f"Error processing {filename}: {reason}")


class RemoteErrorKind(enum.Enum):
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    UNAVAILABLE = "unavailable"
    OTHER = "other"


class RemoteCallError(LinevaultError):
    """A search/index/delete call against a node failed."""

    def __init__(self, kind: RemoteErrorKind, detail: str, node: Optional[str] = None):
        self.kind = kind
        self.detail = detail
        self.node = node
        prefix = f"[{node}] " if node else ""
        super().__init__(f"{prefix}{kind.value}: {detail}")

    @classmethod
    def from_exception(
        cls, exc: Exception, node: Optional[str] = None
    ) -> "RemoteCallError":
        """
        Build a RemoteCallError from an Elasticsearch client exception.

        Args:
            exc: Exception raised by the Elasticsearch client
            node: Name of the node the call was issued against

        Returns:
            RemoteCallError tagged with the matching kind
        """
        if isinstance(exc, NotFoundError):
            kind = RemoteErrorKind.NOT_FOUND
        elif isinstance(exc, ConflictError):
            kind = RemoteErrorKind.CONFLICT
        elif isinstance(exc, (ESConnectionError, ConnectionTimeout)):
            kind = RemoteErrorKind.UNAVAILABLE
        elif isinstance(exc, ApiError):
            status = getattr(exc.meta, "status", None)
            if status == 404:
                kind = RemoteErrorKind.NOT_FOUND
            elif status == 409:
                kind = RemoteErrorKind.CONFLICT
            elif status in (502, 503, 504):
                kind = RemoteErrorKind.UNAVAILABLE
            else:
                kind = RemoteErrorKind.OTHER
        else:
            kind = RemoteErrorKind.OTHER
        return cls(kind, str(exc) or exc.__class__.__name__, node=node)
