"""
Linevault Cluster — Node Registry and Management
================================================

The node registry is the durable list of Elasticsearch nodes this instance
knows about (persisted inside the settings file). Each node is reached through
its own ``AccountIndex`` client.

Liveness is checked in two stages so that a dead node costs at most
``probe_timeout`` seconds instead of a full request timeout:

    1. TCP connect to the node's HTTP port
    2. Elasticsearch ping over that port
"""

import asyncio
import logging
import re
from typing import Callable, Dict, Iterator, List, Optional

from .config import Settings
from .core import AccountIndex
from .exceptions import NodeUnreachableError, TargetNotFoundError, ValidationError
from .models import NodeConfig

logger = logging.getLogger("linevault.cluster")

ClientFactory = Callable[[NodeConfig], AccountIndex]


async def is_port_open(host: str, port: int, timeout: float = 0.5) -> bool:
    """Return True when a TCP connection to host:port succeeds within timeout."""
    try:
        _, writer = await asyncio.wait_for(asyncio.open_connection(host, port), timeout)
    except (OSError, asyncio.TimeoutError):
        return False

    writer.close()
    try:
        await writer.wait_closed()
    except OSError:
        pass
    return True


async def ensure_reachable(node: NodeConfig, client: AccountIndex, timeout: float = 0.5):
    """
    Run the two-stage liveness check.

    Raises:
        NodeUnreachableError: if the port is closed or the ping fails
    """
    if not await is_port_open(node.host, node.port, timeout):
        raise NodeUnreachableError(node.name, f"port {node.port} closed")
    if not await client.ping():
        raise NodeUnreachableError(node.name, "ping failed")


def format_index_name(name: str) -> str:
    """Normalize a user supplied index name to what Elasticsearch accepts."""
    return re.sub(r"[^a-z0-9_-]", "_", name.strip().lower())


class NodeRegistry:
    """
    Registered nodes and their clients.

    Example:
        registry = NodeRegistry(settings)
        registry.add(NodeConfig("node-1", port=9200, data_path="/srv/es/n1/data"))
        client = registry.client_for("node-1")
    """

    def __init__(self, settings: Settings, client_factory: Optional[ClientFactory] = None):
        """
        Args:
            settings: Settings holding the persisted node list
            client_factory: Builds the client for a node (default: AccountIndex)
        """
        self.settings = settings
        self._client_factory = client_factory or self._default_client
        self._clients: Dict[str, AccountIndex] = {}

    def _default_client(self, node: NodeConfig) -> AccountIndex:
        return AccountIndex(
            node.url,
            node_name=node.name,
            request_timeout=self.settings.request_timeout
        )

    def __iter__(self) -> Iterator[NodeConfig]:
        return iter(list(self.settings.nodes))

    def __len__(self) -> int:
        return len(self.settings.nodes)

    def __contains__(self, name: object) -> bool:
        return any(n.name == name for n in self.settings.nodes)

    def names(self) -> List[str]:
        return [n.name for n in self.settings.nodes]

    def get(self, name: str) -> NodeConfig:
        for node in self.settings.nodes:
            if node.name == name:
                return node
        raise TargetNotFoundError(f"Node {name} is not registered")

    def add(self, node: NodeConfig) -> None:
        if node.name in self:
            raise ValidationError(f"Node {node.name} already exists")
        self.settings.nodes.append(node)
        self.settings.save()
        logger.info("Registered node %s at %s", node.name, node.url)

    async def remove(self, name: str) -> NodeConfig:
        """Unregister a node and close its client."""
        node = self.get(name)
        self.settings.nodes = [n for n in self.settings.nodes if n.name != name]
        if self.settings.write_node == name:
            self.settings.write_node = None
        self.settings.save()

        client = self._clients.pop(name, None)
        if client is not None:
            await client.close()
        logger.info("Removed node %s", name)
        return node

    def client_for(self, name: str) -> AccountIndex:
        if name not in self._clients:
            self._clients[name] = self._client_factory(self.get(name))
        return self._clients[name]

    def write_node(self) -> NodeConfig:
        """Node that receives ingestion by default."""
        if self.settings.write_node:
            return self.get(self.settings.write_node)
        if not self.settings.nodes:
            raise ValidationError("No nodes configured")
        return self.settings.nodes[0]

    async def close(self):
        clients, self._clients = self._clients, {}
        for client in clients.values():
            await client.close()


class ClusterManager:
    """
    Node and index management that keeps the index cache in step.

    Every change that alters which indices exist refreshes the cache, which
    in turn prunes search targets that no longer resolve.

    Example:
        manager = ClusterManager(registry, cache)
        await manager.create_index("node-1", "accounts-2024")
        await manager.remove_node("node-2")
    """

    def __init__(self, registry: NodeRegistry, cache):
        """
        Args:
            registry: Node registry
            cache: IndexCache to refresh after changes
        """
        self.registry = registry
        self.cache = cache

    async def health(self, node_name: str) -> dict:
        """
        Get cluster health as seen from one node.

        Returns:
            Dict with cluster health information
        """
        return await self.registry.client_for(node_name).health()

    async def create_index(
        self,
        node_name: str,
        name: str,
        shards: int = 1,
        replicas: int = 0
    ) -> str:
        """
        Create an account index on a node.

        Args:
            node_name: Target node
            name: Index name (normalized)
            shards: Number of primary shards
            replicas: Number of replica shards

        Returns:
            The normalized index name
        """
        index = format_index_name(name)
        if not index:
            raise ValidationError("Index name is empty")

        client = self.registry.client_for(node_name)
        if await client.index_exists(index):
            raise ValidationError(f"Index {index} already exists on {node_name}")

        await client.create_index(index, shards=shards, replicas=replicas)
        logger.info("Created index %s on %s", index, node_name)
        await self.cache.refresh(self.registry)
        return index

    async def delete_index(self, node_name: str, name: str) -> None:
        """Delete an index from a node."""
        await self.registry.client_for(node_name).delete_index(name)
        logger.info("Deleted index %s on %s", name, node_name)
        await self.cache.refresh(self.registry)

    async def add_node(self, node: NodeConfig) -> None:
        self.registry.add(node)
        await self.cache.refresh(self.registry)

    async def remove_node(self, name: str) -> NodeConfig:
        """
        Unregister a node and drop it from the cache.

        Returns:
            The removed node configuration
        """
        node = await self.registry.remove(name)
        self.cache.remove(name)
        self.cache.reconcile()
        return node
