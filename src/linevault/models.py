"""
Linevault Models
================

Plain data records shared across modules: cached node/index state, search
targets and parsed account views.
"""

import os
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, NamedTuple, Optional, Union


STATUS_RUNNING = "running"
STATUS_STOPPED = "stopped"

HEALTH_VALUES = ("green", "yellow", "red")
HEALTH_UNKNOWN = "unknown"


def normalize_health(value: Optional[str]) -> str:
    value = (value or "").lower()
    return value if value in HEALTH_VALUES else HEALTH_UNKNOWN


@dataclass
class NodeConfig:
    """
    Registry entry for one Elasticsearch node.

    ``data_path`` and ``logs_path`` are set for nodes managed on this host;
    remote nodes leave them empty and skip the on-disk check.
    """

    name: str
    host: str = "localhost"
    port: int = 9200
    transport_port: int = 9300
    data_path: Optional[str] = None
    logs_path: Optional[str] = None
    cluster: str = "linevault-cluster"
    scheme: str = "http"

    @property
    def url(self) -> str:
        return f"{self.scheme}://{self.host}:{self.port}"

    def declared_paths(self) -> List[str]:
        return [p for p in (self.data_path, self.logs_path) if p]

    def paths_exist(self) -> bool:
        return all(os.path.isdir(p) for p in self.declared_paths())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "host": self.host,
            "port": self.port,
            "transport_port": self.transport_port,
            "data_path": self.data_path,
            "logs_path": self.logs_path,
            "cluster": self.cluster,
            "scheme": self.scheme,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "NodeConfig":
        return cls(
            name=data["name"],
            host=data.get("host", "localhost"),
            port=int(data.get("port", 9200)),
            transport_port=int(data.get("transport_port", 9300)),
            data_path=data.get("data_path"),
            logs_path=data.get("logs_path"),
            cluster=data.get("cluster", "linevault-cluster"),
            scheme=data.get("scheme", "http"),
        )


@dataclass(frozen=True)
class IndexStats:
    """Size and health of one index as seen on one node."""

    doc_count: int = 0
    store_size: int = 0
    health: str = HEALTH_UNKNOWN

    def to_dict(self) -> Dict[str, Any]:
        return {
            "doc_count": self.doc_count,
            "store_size": self.store_size,
            "health": self.health,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "IndexStats":
        return cls(
            doc_count=int(data.get("doc_count", 0) or 0),
            store_size=int(data.get("store_size", 0) or 0),
            health=normalize_health(data.get("health")),
        )


@dataclass(frozen=True)
class NodeCacheEntry:
    """
    Last known picture of one node.

    ``last_updated`` is the epoch time of the last successful live fetch and
    stays untouched when a stopped node's indices are carried forward.
    """

    status: str
    last_updated: Optional[float] = None
    indices: Dict[str, IndexStats] = field(default_factory=dict)

    @property
    def is_running(self) -> bool:
        return self.status == STATUS_RUNNING

    def as_stopped(self) -> "NodeCacheEntry":
        return replace(self, status=STATUS_STOPPED, indices=dict(self.indices))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "last_updated": self.last_updated,
            "indices": {name: stats.to_dict() for name, stats in self.indices.items()},
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "NodeCacheEntry":
        status = data.get("status")
        return cls(
            status=status if status in (STATUS_RUNNING, STATUS_STOPPED) else STATUS_STOPPED,
            last_updated=data.get("last_updated"),
            indices={
                name: IndexStats.from_dict(stats or {})
                for name, stats in (data.get("indices") or {}).items()
            },
        )


class SearchTarget(NamedTuple):
    """A (node, index) pair; ``node`` is None for a legacy bare index name."""

    node: Optional[str]
    index: str

    def to_json(self) -> Union[str, Dict[str, str]]:
        if self.node is None:
            return self.index
        return {"node": self.node, "index": self.index}

    @classmethod
    def from_json(cls, value: Union[str, Dict[str, str]]) -> "SearchTarget":
        if isinstance(value, str):
            return cls(None, value)
        return cls(value.get("node"), value["index"])

    def __str__(self) -> str:
        return self.index if self.node is None else f"{self.node}/{self.index}"


@dataclass
class AccountRecord:
    """Parsed view of a raw line. Never stored; only the raw line is indexed."""

    url: str = ""
    username: str = ""
    password: str = ""
    source_file: Optional[str] = None
