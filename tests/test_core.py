from types import SimpleNamespace
from unittest import mock

import pytest
from elasticsearch import ApiError, ConnectionError, NotFoundError

from linevault.core import AccountIndex, build_search_query
from linevault.exceptions import RemoteCallError, RemoteErrorKind


def make_index():
    client = mock.MagicMock()
    return AccountIndex("http://localhost:9200", node_name="node-1", client=client), client


def test_build_search_query():
    assert build_search_query(None) == {"match_all": {}}
    assert build_search_query("") == {"match_all": {}}

    query = build_search_query("Example.COM")
    should = query["bool"]["should"]
    assert should[0] == {"match": {"raw_line.autocomplete": {"query": "example.com", "operator": "and"}}}
    assert should[1] == {"match_phrase_prefix": {"raw_line": "example.com"}}
    assert query["bool"]["minimum_should_match"] == 1


@pytest.mark.asyncio
async def test_search_normalizes_hits():
    index, client = make_index()
    client.search = mock.AsyncMock(return_value={
        "hits": {
            "total": {"value": 12, "relation": "eq"},
            "hits": [
                {"_id": "a1", "_index": "accounts", "_source": {"raw_line": "x.com:u:p"}},
            ],
        }
    })

    result = await index.search("accounts", "x.com", from_=20, size=10)

    assert result == {"total": 12, "hits": [{"id": "a1", "index": "accounts", "raw_line": "x.com:u:p"}]}
    kwargs = client.search.call_args.kwargs
    assert kwargs["from_"] == 20
    assert kwargs["size"] == 10
    assert kwargs["track_total_hits"] is True


@pytest.mark.asyncio
async def test_not_found_maps_to_remote_error_kind():
    index, client = make_index()
    client.count = mock.AsyncMock(
        side_effect=NotFoundError("index_not_found_exception", SimpleNamespace(status=404), {})
    )

    with pytest.raises(RemoteCallError) as exc_info:
        await index.count("missing")

    assert exc_info.value.kind is RemoteErrorKind.NOT_FOUND
    assert exc_info.value.node == "node-1"


@pytest.mark.parametrize("status, kind", [
    (409, RemoteErrorKind.CONFLICT),
    (503, RemoteErrorKind.UNAVAILABLE),
    (400, RemoteErrorKind.OTHER),
])
def test_api_error_status_mapping(status, kind):
    error = ApiError("failure", SimpleNamespace(status=status), {})
    assert RemoteCallError.from_exception(error).kind is kind


def test_connection_error_is_unavailable():
    error = RemoteCallError.from_exception(ConnectionError("refused"), node="node-2")
    assert error.kind is RemoteErrorKind.UNAVAILABLE
    assert "node-2" in str(error)


@pytest.mark.asyncio
async def test_ping_never_raises():
    index, client = make_index()
    client.ping = mock.AsyncMock(side_effect=ConnectionError("refused"))

    assert await index.ping() is False


@pytest.mark.asyncio
async def test_bulk_index_builds_raw_line_actions():
    index, client = make_index()

    with mock.patch("linevault.core.async_bulk", mock.AsyncMock(return_value=(2, []))) as bulk:
        indexed = await index.bulk_index("accounts", ["a.com:u:p", "b.com:u:p"])

    assert indexed == 2
    actions = list(bulk.call_args.args[1])
    assert actions == [
        {"_index": "accounts", "_source": {"raw_line": "a.com:u:p"}},
        {"_index": "accounts", "_source": {"raw_line": "b.com:u:p"}},
    ]


@pytest.mark.asyncio
async def test_delete_ids_reports_per_item_results():
    index, client = make_index()
    client.bulk = mock.AsyncMock(return_value={
        "errors": False,
        "items": [
            {"delete": {"_id": "a", "result": "deleted", "status": 200}},
            {"delete": {"_id": "b", "result": "not_found", "status": 404}},
        ],
    })

    assert await index.delete_ids("accounts", ["a", "b"]) == ["deleted", "not_found"]
    operations = client.bulk.call_args.kwargs["operations"]
    assert operations == [
        {"delete": {"_index": "accounts", "_id": "a"}},
        {"delete": {"_index": "accounts", "_id": "b"}},
    ]


@pytest.mark.asyncio
async def test_cat_indices_hides_system_indices():
    index, client = make_index()
    client.cat.indices = mock.AsyncMock(return_value=[
        {"index": ".security", "docs.count": "1"},
        {"index": "accounts", "docs.count": "5"},
    ])

    rows = await index.cat_indices()

    assert [row["index"] for row in rows] == ["accounts"]


@pytest.mark.asyncio
async def test_ensure_index_creates_once():
    index, client = make_index()
    client.indices.exists = mock.AsyncMock(side_effect=[False, True])
    client.indices.create = mock.AsyncMock(return_value={"acknowledged": True})

    assert await index.ensure_index("accounts") is True
    assert await index.ensure_index("accounts") is False
    client.indices.create.assert_awaited_once()
    settings = client.indices.create.call_args.kwargs["settings"]
    assert settings["analysis"]["tokenizer"]["autocomplete_tokenizer"]["type"] == "edge_ngram"
