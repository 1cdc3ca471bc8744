import itertools

import pytest

from linevault.cache import IndexCache
from linevault.cluster import NodeRegistry
from linevault.config import Settings
from linevault.exceptions import RemoteCallError, RemoteErrorKind
from linevault.models import NodeConfig


class FakeNodeClient:
    """In-memory stand-in for AccountIndex, one per node."""

    _ids = itertools.count(1)

    def __init__(self, node_name):
        self.node_name = node_name
        self.alive = True
        self.docs = {}
        self.foreign_shards = []
        self.failures = {}
        self.calls = []
        self.closed = False
        # when set, search hits come back reversed on every other call
        self.alternate_order = False

    def _check(self, method):
        self.calls.append(method)
        if method in self.failures:
            raise self.failures[method]

    def add_docs(self, index, lines):
        ids = []
        for line in lines:
            doc_id = f"{next(self._ids):08d}"
            self.docs.setdefault(index, {})[doc_id] = line
            ids.append(doc_id)
        return ids

    def _index(self, index):
        if index not in self.docs:
            raise RemoteCallError(RemoteErrorKind.NOT_FOUND, f"no such index [{index}]", node=self.node_name)
        return self.docs[index]

    def _matching(self, index, query):
        docs = self._index(index)
        return sorted(
            (doc_id, line) for doc_id, line in docs.items()
            if not query or query.lower() in line.lower()
        )

    async def ping(self):
        self.calls.append("ping")
        return self.alive

    async def health(self):
        self._check("health")
        return {"cluster_name": "test", "status": "green"}

    async def index_exists(self, name):
        self._check("index_exists")
        return name in self.docs

    async def create_index(self, name, shards=1, replicas=0):
        self._check("create_index")
        self.docs.setdefault(name, {})
        return {"acknowledged": True}

    async def ensure_index(self, name):
        if await self.index_exists(name):
            return False
        await self.create_index(name)
        return True

    async def delete_index(self, name):
        self._check("delete_index")
        self._index(name)
        del self.docs[name]
        return {"acknowledged": True}

    async def cat_indices(self):
        self._check("cat_indices")
        rows = [
            {
                "index": name,
                "health": "green",
                "status": "open",
                "docs.count": str(len(docs)),
                "store.size": str(100 * len(docs)),
            }
            for name, docs in self.docs.items()
        ]
        rows.extend(
            {"index": name, "health": "yellow", "status": "open", "docs.count": "7", "store.size": "1kb"}
            for name, _ in self.foreign_shards
        )
        return rows

    async def cat_shards(self):
        self._check("cat_shards")
        shards = [
            {"index": name, "shard": "0", "prirep": "p", "state": "STARTED", "node": self.node_name}
            for name in self.docs
        ]
        shards.extend(
            {"index": name, "shard": "0", "prirep": "p", "state": "STARTED", "node": owner}
            for name, owner in self.foreign_shards
        )
        return shards

    async def search(self, index, query=None, from_=0, size=20):
        self._check("search")
        matches = self._matching(index, query)
        window = matches[from_:from_ + size]
        if self.alternate_order and self.calls.count("search") % 2 == 0:
            window.reverse()
        return {
            "total": len(matches),
            "hits": [
                {"id": doc_id, "index": index, "raw_line": line}
                for doc_id, line in window
            ],
        }

    async def count(self, index, query=None):
        self._check("count")
        return len(self._matching(index, query))

    async def bulk_index(self, index, lines, refresh=False):
        self._check("bulk_index")
        lines = list(lines)
        if any("boom" in line for line in lines):
            raise RemoteCallError(RemoteErrorKind.OTHER, "1 document(s) failed to index", node=self.node_name)
        self.docs.setdefault(index, {})
        self.add_docs(index, lines)
        return len(lines)

    async def delete_ids(self, index, ids, refresh=True):
        self._check("delete_ids")
        docs = self.docs.setdefault(index, {})
        results = []
        for doc_id in ids:
            if docs.pop(doc_id, None) is None:
                results.append("not_found")
            else:
                results.append("deleted")
        return results

    async def delete_all(self, index):
        self._check("delete_all")
        docs = self._index(index)
        deleted = len(docs)
        docs.clear()
        return deleted

    async def update_account(self, index, doc_id, raw_line):
        self._check("update_account")
        docs = self._index(index)
        if doc_id not in docs:
            raise RemoteCallError(RemoteErrorKind.NOT_FOUND, f"[{doc_id}]: document missing", node=self.node_name)
        docs[doc_id] = raw_line

    async def delete_account(self, index, doc_id):
        self._check("delete_account")
        docs = self._index(index)
        if docs.pop(doc_id, None) is None:
            raise RemoteCallError(RemoteErrorKind.NOT_FOUND, f"[{doc_id}]: not_found", node=self.node_name)

    async def close(self):
        self.closed = True


NODE_PORTS = {"node-1": 9201, "node-2": 9202}


@pytest.fixture(autouse=True)
def closed_ports(monkeypatch):
    """Ports added to this set fail the TCP liveness probe."""
    closed = set()

    async def fake_is_port_open(host, port, timeout=0.5):
        return port not in closed

    monkeypatch.setattr("linevault.cluster.is_port_open", fake_is_port_open)
    return closed


@pytest.fixture
def settings(tmp_path):
    settings = Settings(
        data_dir=str(tmp_path / "data"),
        cache_file=str(tmp_path / "cache" / "indices-cache.json"),
    )
    settings.path = tmp_path / "config.json"

    for name, port in NODE_PORTS.items():
        data = tmp_path / "es" / name / "data"
        logs = tmp_path / "es" / name / "logs"
        data.mkdir(parents=True)
        logs.mkdir(parents=True)
        settings.nodes.append(
            NodeConfig(name, port=port, data_path=str(data), logs_path=str(logs))
        )
    return settings


@pytest.fixture
def clients():
    return {name: FakeNodeClient(name) for name in NODE_PORTS}


@pytest.fixture
def registry(settings, clients):
    return NodeRegistry(
        settings,
        client_factory=lambda node: clients.setdefault(node.name, FakeNodeClient(node.name)),
    )


@pytest.fixture
def cache(settings):
    return IndexCache(settings.cache_path, settings=settings)
