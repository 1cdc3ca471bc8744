import json
import shutil

import pytest

from linevault.cache import IndexCache, parse_store_size
from linevault.exceptions import RemoteCallError, RemoteErrorKind
from linevault.models import SearchTarget

from .conftest import NODE_PORTS


@pytest.mark.parametrize("value, expected", [
    ("1234", 1234),
    ("1.5kb", 1536),
    ("2mb", 2 * 1024 ** 2),
    (None, 0),
    ("garbage", 0),
    (42, 42),
])
def test_parse_store_size(value, expected):
    assert parse_store_size(value) == expected


@pytest.mark.asyncio
async def test_refresh_records_running_nodes(cache, registry, clients):
    clients["node-1"].add_docs("accounts", ["a.com:u:p", "b.com:u:p", "c.com:u:p"])

    snapshot = await cache.refresh(registry)

    entry = snapshot.nodes["node-1"]
    assert entry.status == "running"
    assert entry.last_updated is not None
    assert entry.indices["accounts"].doc_count == 3
    assert entry.indices["accounts"].store_size == 300
    assert entry.indices["accounts"].health == "green"
    assert snapshot.nodes["node-2"].indices == {}


@pytest.mark.asyncio
async def test_unreachable_node_is_carried_forward_as_stopped(cache, registry, clients, closed_ports):
    clients["node-1"].add_docs("accounts", ["a.com:u:p"])
    first = await cache.refresh(registry)

    closed_ports.add(NODE_PORTS["node-1"])
    second = await cache.refresh(registry)

    before, after = first.nodes["node-1"], second.nodes["node-1"]
    assert after.status == "stopped"
    assert after.indices == before.indices
    assert after.last_updated == before.last_updated


@pytest.mark.asyncio
async def test_failed_ping_marks_node_stopped(cache, registry, clients):
    clients["node-2"].alive = False

    snapshot = await cache.refresh(registry)

    assert snapshot.nodes["node-2"].status == "stopped"
    assert snapshot.nodes["node-2"].last_updated is None
    assert snapshot.nodes["node-2"].indices == {}


@pytest.mark.asyncio
async def test_fetch_failure_carries_forward(cache, registry, clients):
    clients["node-1"].add_docs("accounts", ["a.com:u:p"])
    await cache.refresh(registry)

    clients["node-1"].failures["cat_shards"] = RemoteCallError(RemoteErrorKind.UNAVAILABLE, "timeout")
    snapshot = await cache.refresh(registry)

    assert snapshot.nodes["node-1"].status == "stopped"
    assert "accounts" in snapshot.nodes["node-1"].indices


@pytest.mark.asyncio
async def test_missing_storage_evicts_node(cache, registry, settings):
    await cache.refresh(registry)
    assert "node-2" in cache.get().nodes

    shutil.rmtree(settings.nodes[1].data_path)
    snapshot = await cache.refresh(registry)

    assert "node-2" not in snapshot.nodes
    assert "node-1" in snapshot.nodes


@pytest.mark.asyncio
async def test_node_without_declared_paths_is_kept(cache, registry, settings):
    settings.nodes[1].data_path = None
    settings.nodes[1].logs_path = None

    snapshot = await cache.refresh(registry)

    assert snapshot.nodes["node-2"].status == "running"


@pytest.mark.asyncio
async def test_only_indices_with_local_shards_are_listed(cache, registry, clients):
    clients["node-1"].add_docs("accounts", ["a.com:u:p"])
    clients["node-1"].foreign_shards.append(("elsewhere", "node-9"))

    snapshot = await cache.refresh(registry)

    assert set(snapshot.nodes["node-1"].indices) == {"accounts"}


@pytest.mark.asyncio
async def test_count_failure_falls_back_to_cat_doc_count(cache, registry, clients):
    clients["node-1"].add_docs("accounts", ["a.com:u:p", "b.com:u:p"])
    clients["node-1"].failures["count"] = RemoteCallError(RemoteErrorKind.OTHER, "boom")

    snapshot = await cache.refresh(registry)

    assert snapshot.nodes["node-1"].status == "running"
    assert snapshot.nodes["node-1"].indices["accounts"].doc_count == 2


@pytest.mark.asyncio
async def test_reconcile_prunes_unresolvable_targets(cache, registry, clients, settings):
    clients["node-1"].add_docs("accounts", ["a.com:u:p"])
    clients["node-2"].add_docs("accounts", ["b.com:u:p"])
    settings.search_indices = [
        SearchTarget("node-1", "accounts"),
        SearchTarget("node-1", "gone"),
        SearchTarget("node-2", "accounts"),
        SearchTarget(None, "accounts"),
    ]

    shutil.rmtree(settings.nodes[1].logs_path)
    await cache.refresh(registry)

    assert cache.last_pruned == [SearchTarget("node-1", "gone"), SearchTarget("node-2", "accounts")]
    assert settings.search_indices == [SearchTarget("node-1", "accounts"), SearchTarget(None, "accounts")]

    saved = json.loads(settings.path.read_text(encoding="utf-8"))
    assert saved["search_indices"] == [{"node": "node-1", "index": "accounts"}, "accounts"]


@pytest.mark.asyncio
async def test_snapshot_is_persisted_and_reloaded(cache, registry, clients, settings):
    clients["node-1"].add_docs("accounts", ["a.com:u:p"])
    await cache.refresh(registry)

    reloaded = IndexCache(settings.cache_path)

    assert reloaded.get().nodes["node-1"].indices["accounts"].doc_count == 1
    assert reloaded.get().timestamp == cache.get().timestamp


@pytest.mark.asyncio
async def test_write_failure_still_swaps_snapshot(cache, registry, clients, monkeypatch):
    def broken_write(path, data):
        raise OSError("disk full")

    monkeypatch.setattr("linevault.cache.write_json_atomic", broken_write)
    clients["node-1"].add_docs("accounts", ["a.com:u:p"])

    await cache.refresh(registry)

    assert "accounts" in cache.get().nodes["node-1"].indices
    assert not cache.path.exists()


@pytest.mark.asyncio
async def test_config_save_failure_does_not_fail_refresh(cache, registry, clients, settings, monkeypatch):
    def broken_save():
        raise PermissionError("read-only config dir")

    clients["node-1"].add_docs("accounts", ["a.com:u:p"])
    settings.search_indices = [SearchTarget("node-1", "accounts"), SearchTarget("node-1", "gone")]
    monkeypatch.setattr(settings, "save", broken_save)

    snapshot = await cache.refresh(registry)

    assert "accounts" in snapshot.nodes["node-1"].indices
    assert cache.last_pruned == [SearchTarget("node-1", "gone")]
    assert settings.search_indices == [SearchTarget("node-1", "accounts")]


@pytest.mark.asyncio
async def test_get_single_node_and_remove(cache, registry):
    await cache.refresh(registry)

    assert list(cache.get("node-1").nodes) == ["node-1"]
    assert cache.get("missing").nodes == {}

    assert cache.remove("node-1") is True
    assert cache.remove("node-1") is False
    assert "node-1" not in cache.get().nodes


def test_unreadable_cache_file_loads_empty(tmp_path):
    path = tmp_path / "indices-cache.json"
    path.write_text("{not json", encoding="utf-8")

    assert IndexCache(path).get().nodes == {}


@pytest.mark.asyncio
async def test_status_and_clear(cache, registry):
    await cache.refresh(registry)

    status = cache.status()
    assert status["nodes"] == 2
    assert status["timestamp"] > 0

    cache.clear()

    assert cache.get().nodes == {}
    assert IndexCache(cache.path).get().nodes == {}
