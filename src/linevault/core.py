"""
Linevault Core — Per-Node Elasticsearch Client
==============================================

Every node in the registry gets its own ``AccountIndex``: a thin async wrapper
around ``AsyncElasticsearch`` pinned to that node's HTTP address. It is the
only place that talks to Elasticsearch; everything above it sees plain dicts
and ``RemoteCallError``.

Documents are deliberately minimal: one ``raw_line`` text field with an
edge-ngram ``autocomplete`` sub-field for prefix search. Parsing into
url/username/password happens at read time.

    doc = {"raw_line": "https://example.com:alice:hunter2"}
"""

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Iterable, List, Optional

from elasticsearch import ApiError, AsyncElasticsearch, TransportError
from elasticsearch.helpers import BulkIndexError, async_bulk

from .exceptions import RemoteCallError, RemoteErrorKind


def _body(response: Any) -> Any:
    return getattr(response, "body", response)


def build_search_query(query: Optional[str]) -> Dict[str, Any]:
    """
    Query DSL for a user search string.

    Args:
        query: Free text; None or empty matches everything

    Returns:
        Query clause for the ``query`` parameter of a search/count call
    """
    if not query:
        return {"match_all": {}}

    q = query.lower()
    return {
        "bool": {
            "should": [
                {"match": {"raw_line.autocomplete": {"query": q, "operator": "and"}}},
                {"match_phrase_prefix": {"raw_line": q}},
            ],
            "minimum_should_match": 1,
        }
    }


class AccountIndex:
    """
    Async client for account indices hosted on a single node.

    Example:
        async with AccountIndex("http://localhost:9200", node_name="node-1") as node:
            await node.ensure_index("accounts")
            await node.bulk_index("accounts", ["example.com:alice:secret"])
            page = await node.search("accounts", "alice", from_=0, size=20)
    """

    # Settings and mapping for every account index
    INDEX_MAPPING = {
        "settings": {
            "analysis": {
                "analyzer": {
                    "autocomplete_analyzer": {
                        "tokenizer": "autocomplete_tokenizer",
                        "filter": ["lowercase"]
                    }
                },
                "tokenizer": {
                    "autocomplete_tokenizer": {
                        "type": "edge_ngram",
                        "min_gram": 2,
                        "max_gram": 10
                    }
                }
            }
        },
        "mappings": {
            "properties": {
                "raw_line": {
                    "type": "text",
                    "fields": {
                        "autocomplete": {
                            "type": "text",
                            "analyzer": "autocomplete_analyzer"
                        }
                    }
                }
            }
        }
    }

    def __init__(
        self,
        url: str,
        node_name: Optional[str] = None,
        api_key: Optional[str] = None,
        basic_auth: Optional[tuple] = None,
        verify_certs: bool = True,
        request_timeout: float = 10.0,
        max_retries: int = 1,
        client: Optional[AsyncElasticsearch] = None
    ):
        """
        Connect to one node.

        Args:
            url: Node HTTP address, e.g. "http://localhost:9200"
            node_name: Registry name of the node (used in errors)
            api_key: API key for authentication
            basic_auth: Tuple of (username, password)
            verify_certs: Verify SSL certificates (https only)
            request_timeout: Per-call timeout in seconds
            max_retries: Retries per call before giving up
            client: Pre-built client (mainly for tests)
        """
        self.url = url
        self.node_name = node_name or url

        if client is None:
            conn_kwargs: Dict[str, Any] = {
                "hosts": [url],
                "request_timeout": request_timeout,
                "max_retries": max_retries
            }
            if url.startswith("https"):
                conn_kwargs["verify_certs"] = verify_certs

            if api_key:
                conn_kwargs["api_key"] = api_key
            elif basic_auth:
                conn_kwargs["basic_auth"] = basic_auth

            client = AsyncElasticsearch(**conn_kwargs)

        self._client = client

    @asynccontextmanager
    async def _remote_call(self) -> AsyncIterator[None]:
        try:
            yield
        except BulkIndexError as e:
            raise RemoteCallError(
                RemoteErrorKind.OTHER,
                f"{len(e.errors)} document(s) failed to index",
                node=self.node_name
            ) from e
        except (ApiError, TransportError) as e:
            raise RemoteCallError.from_exception(e, node=self.node_name) from e

    async def ping(self) -> bool:
        """Protocol-level liveness check. Never raises."""
        try:
            return bool(await self._client.ping())
        except (ApiError, TransportError):
            return False

    async def health(self) -> dict:
        async with self._remote_call():
            return _body(await self._client.cluster.health())

    async def index_exists(self, name: str) -> bool:
        async with self._remote_call():
            return bool(await self._client.indices.exists(index=name))

    async def create_index(self, name: str, shards: int = 1, replicas: int = 0) -> dict:
        """
        Create an account index with the autocomplete mapping.

        Args:
            name: Index name
            shards: Number of primary shards
            replicas: Number of replica shards

        Returns:
            Creation response
        """
        settings = {
            "number_of_shards": shards,
            "number_of_replicas": replicas,
            **self.INDEX_MAPPING["settings"]
        }
        async with self._remote_call():
            return _body(await self._client.indices.create(
                index=name,
                settings=settings,
                mappings=self.INDEX_MAPPING["mappings"]
            ))

    async def ensure_index(self, name: str) -> bool:
        """Create the index if missing. Returns True when it was created."""
        if await self.index_exists(name):
            return False
        await self.create_index(name)
        return True

    async def delete_index(self, name: str) -> dict:
        async with self._remote_call():
            return _body(await self._client.indices.delete(index=name))

    async def cat_indices(self) -> List[dict]:
        """
        List non-system indices visible from this node.

        Returns:
            Rows with index, health, status, docs.count and store.size (bytes)
        """
        async with self._remote_call():
            rows = _body(await self._client.cat.indices(
                format="json",
                bytes="b",
                h="index,health,status,docs.count,store.size"
            ))
        return [row for row in rows if not row.get("index", "").startswith(".")]

    async def cat_shards(self) -> List[dict]:
        """List shard allocations (index, shard, prirep, state, node)."""
        async with self._remote_call():
            return list(_body(await self._client.cat.shards(
                format="json",
                h="index,shard,prirep,state,node"
            )))

    async def search(
        self,
        index: str,
        query: Optional[str] = None,
        from_: int = 0,
        size: int = 20
    ) -> Dict[str, Any]:
        """
        Run one page of a search against a single index.

        Args:
            index: Index name
            query: Search text (None lists everything)
            from_: Offset of the first hit
            size: Page size

        Returns:
            Dict with ``total`` and ``hits`` (id, index, raw_line)
        """
        async with self._remote_call():
            response = _body(await self._client.search(
                index=index,
                query=build_search_query(query),
                from_=from_,
                size=size,
                track_total_hits=True
            ))

        hits = response["hits"]
        total = hits.get("total", 0)
        if isinstance(total, dict):
            total = total.get("value", 0)

        return {
            "total": int(total),
            "hits": [
                {
                    "id": hit["_id"],
                    "index": hit.get("_index", index),
                    "raw_line": hit.get("_source", {}).get("raw_line", "")
                }
                for hit in hits["hits"]
            ]
        }

    async def count(self, index: str, query: Optional[str] = None) -> int:
        async with self._remote_call():
            response = _body(await self._client.count(
                index=index,
                query=build_search_query(query)
            ))
        return int(response["count"])

    async def bulk_index(
        self,
        index: str,
        lines: Iterable[str],
        refresh: bool = False
    ) -> int:
        """
        Index raw lines with the bulk API.

        Args:
            index: Target index
            lines: Raw lines, one document each
            refresh: Force refresh after the request

        Returns:
            Number of documents indexed
        """
        actions = (
            {"_index": index, "_source": {"raw_line": line}}
            for line in lines
        )
        async with self._remote_call():
            success, _ = await async_bulk(self._client, actions, refresh=refresh)
        return success

    async def delete_ids(
        self,
        index: str,
        ids: List[str],
        refresh: bool = True
    ) -> List[str]:
        """
        Delete documents by id in one bulk request.

        Returns:
            Per-id result strings as reported by Elasticsearch
            ("deleted", "not_found", ...)
        """
        operations = [{"delete": {"_index": index, "_id": doc_id}} for doc_id in ids]
        async with self._remote_call():
            response = _body(await self._client.bulk(operations=operations, refresh=refresh))
        return [
            item.get("delete", {}).get("result", "error")
            for item in response.get("items", [])
        ]

    async def delete_all(self, index: str) -> int:
        """Delete every document of an index. Returns the deleted count."""
        async with self._remote_call():
            response = _body(await self._client.delete_by_query(
                index=index,
                query={"match_all": {}},
                refresh=True,
                conflicts="proceed"
            ))
        return int(response.get("deleted", 0))

    async def update_account(self, index: str, doc_id: str, raw_line: str) -> None:
        async with self._remote_call():
            await self._client.update(
                index=index,
                id=doc_id,
                doc={"raw_line": raw_line},
                refresh=True
            )

    async def delete_account(self, index: str, doc_id: str) -> None:
        async with self._remote_call():
            await self._client.delete(index=index, id=doc_id, refresh=True)

    async def close(self):
        """Close the underlying client connection."""
        await self._client.close()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()
