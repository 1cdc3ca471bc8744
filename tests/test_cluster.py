import asyncio

import pytest

from linevault.cluster import ClusterManager, ensure_reachable, format_index_name, is_port_open
from linevault.exceptions import NodeUnreachableError, TargetNotFoundError, ValidationError
from linevault.models import NodeConfig

from .conftest import NODE_PORTS


@pytest.fixture
def manager(registry, cache):
    return ClusterManager(registry, cache)


def test_format_index_name():
    assert format_index_name("  My Dumps.2024 ") == "my_dumps_2024"
    assert format_index_name("accounts-eu_1") == "accounts-eu_1"


@pytest.mark.asyncio
async def test_ensure_reachable(registry, clients, closed_ports):
    node = registry.get("node-1")
    await ensure_reachable(node, clients["node-1"])

    clients["node-1"].alive = False
    with pytest.raises(NodeUnreachableError):
        await ensure_reachable(node, clients["node-1"])

    closed_ports.add(NODE_PORTS["node-1"])
    with pytest.raises(NodeUnreachableError, match="port"):
        await ensure_reachable(node, clients["node-1"])


@pytest.mark.asyncio
async def test_create_index_refreshes_cache(manager, cache):
    name = await manager.create_index("node-2", "Leak Dumps")

    assert name == "leak_dumps"
    assert "leak_dumps" in cache.get().nodes["node-2"].indices

    with pytest.raises(ValidationError):
        await manager.create_index("node-2", "leak_dumps")
    with pytest.raises(ValidationError):
        await manager.create_index("node-2", "   ")


@pytest.mark.asyncio
async def test_delete_index_refreshes_cache(manager, cache, clients):
    clients["node-1"].add_docs("old", ["a.com:u:p"])
    await cache.refresh(manager.registry)

    await manager.delete_index("node-1", "old")

    assert "old" not in cache.get().nodes["node-1"].indices


@pytest.mark.asyncio
async def test_health(manager):
    assert (await manager.health("node-1"))["status"] == "green"


@pytest.mark.asyncio
async def test_add_and_remove_node(manager, registry, settings, cache):
    await manager.add_node(NodeConfig("node-3", port=9203))

    assert "node-3" in registry
    assert cache.get().nodes["node-3"].status == "running"
    with pytest.raises(ValidationError):
        registry.add(NodeConfig("node-3"))

    settings.write_node = "node-3"
    await manager.remove_node("node-3")

    assert "node-3" not in registry
    assert "node-3" not in cache.get().nodes
    assert settings.write_node is None
    assert registry.write_node().name == "node-1"
    with pytest.raises(TargetNotFoundError):
        registry.get("node-3")


async def _listen():
    async def handle(reader, writer):
        writer.close()

    server = await asyncio.start_server(handle, "127.0.0.1", 0)
    return server, server.sockets[0].getsockname()[1]


@pytest.mark.asyncio
async def test_is_port_open_on_listening_port():
    server, port = await _listen()
    try:
        assert await is_port_open("127.0.0.1", port, timeout=2.0) is True
    finally:
        server.close()
        await server.wait_closed()


@pytest.mark.asyncio
async def test_is_port_open_on_closed_port():
    server, port = await _listen()
    server.close()
    await server.wait_closed()

    assert await is_port_open("127.0.0.1", port, timeout=2.0) is False
