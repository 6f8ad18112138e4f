"""Index store client tests against a fake Elasticsearch-compatible server."""

from __future__ import annotations

import asyncio
import base64

import pytest

from marketindexer.contracts.events import IndexOperation, MessageEnvelope
from marketindexer.indexer.client import (
    BulkResponse,
    IndexStoreClient,
    IndexStoreConfig,
    IndexStoreConnectionError,
    IndexStoreError,
)
from tests.fixtures.servers import FakeIndexStore


def make_op(seq: int, doc_type: str = "ticker") -> IndexOperation:
    envelope = MessageEnvelope(
        type="ticker",
        time="2024-01-01T00:00:00Z",
        product_id="BTC-USD",
        sequence=seq,
        price="50000.00",
    )
    return IndexOperation(index="gdax-market", doc_type=doc_type, document=envelope)


async def closed_port_url() -> str:
    store = FakeIndexStore()
    await store.start()
    url = store.url
    await store.stop()
    return url


class TestIndexStoreConfig:
    """Config validation."""

    def test_hosts_trailing_slash_stripped(self) -> None:
        config = IndexStoreConfig(hosts=["http://a:9200/", "http://b:9200"])
        assert config.hosts == ["http://a:9200", "http://b:9200"]

    def test_empty_hosts_rejected(self) -> None:
        with pytest.raises(ValueError, match="hosts"):
            IndexStoreConfig(hosts=[])

    def test_non_positive_timeout_rejected(self) -> None:
        with pytest.raises(ValueError, match="request_timeout_s"):
            IndexStoreConfig(request_timeout_s=0)


class TestBulkResponseParsing:
    """Raw _bulk response parsing."""

    def test_from_raw(self) -> None:
        raw = {
            "took": 7,
            "errors": True,
            "items": [
                {"index": {"_index": "i", "_id": "1", "status": 201}},
                {"index": {"_index": "i", "status": 400, "error": {"type": "x"}}},
                {"create": {"_index": "i", "_id": "3", "status": 200}},
            ],
        }
        response = BulkResponse.from_raw(raw)
        assert response.took_ms == 7
        assert response.errors is True
        assert len(response.succeeded) == 2
        assert len(response.failed) == 1
        assert response.failed[0].error == {"type": "x"}

    def test_from_raw_empty(self) -> None:
        response = BulkResponse.from_raw({})
        assert response.items == []
        assert response.succeeded == []


class TestIndexStoreClient:
    """Requests against the fake index store."""

    @pytest.mark.asyncio
    async def test_start_pings_cluster(self) -> None:
        store = FakeIndexStore()
        await store.start()
        client = IndexStoreClient(IndexStoreConfig(hosts=[store.url]))
        try:
            await client.start()
            assert len(store.authorization) == 1
            assert not client.closed
        finally:
            await client.close()
            await store.stop()
        assert client.closed

    @pytest.mark.asyncio
    async def test_start_fails_when_unreachable(self) -> None:
        url = await closed_port_url()
        client = IndexStoreClient(IndexStoreConfig(hosts=[url], request_timeout_s=2.0))
        try:
            with pytest.raises(IndexStoreConnectionError):
                await client.start()
        finally:
            await client.close()

    @pytest.mark.asyncio
    async def test_basic_auth_sent(self) -> None:
        store = FakeIndexStore()
        await store.start()
        client = IndexStoreClient(
            IndexStoreConfig(hosts=[store.url], username="elastic", password="changeme")
        )
        try:
            await client.start()
            expected = "Basic " + base64.b64encode(b"elastic:changeme").decode()
            assert store.authorization == [expected]
        finally:
            await client.close()
            await store.stop()

    @pytest.mark.asyncio
    async def test_no_auth_without_username(self) -> None:
        store = FakeIndexStore()
        await store.start()
        client = IndexStoreClient(IndexStoreConfig(hosts=[store.url]))
        try:
            await client.start()
            assert store.authorization == [None]
        finally:
            await client.close()
            await store.stop()

    @pytest.mark.asyncio
    async def test_index_exists_and_create(self) -> None:
        store = FakeIndexStore(existing_indices={"existing"})
        await store.start()
        client = IndexStoreClient(IndexStoreConfig(hosts=[store.url]))
        try:
            assert await client.index_exists("existing") is True
            assert await client.index_exists("gdax-market") is False

            body = b'{"settings": {"number_of_shards": 1}}'
            result = await client.create_index("gdax-market", body)
            assert result["acknowledged"] is True
            assert store.indices["gdax-market"] == {"settings": {"number_of_shards": 1}}
            assert await client.index_exists("gdax-market") is True

            with pytest.raises(IndexStoreError) as exc_info:
                await client.create_index("gdax-market", body)
            assert exc_info.value.status == 400
        finally:
            await client.close()
            await store.stop()

    @pytest.mark.asyncio
    async def test_bulk_sends_ndjson(self) -> None:
        store = FakeIndexStore()
        await store.start()
        client = IndexStoreClient(IndexStoreConfig(hosts=[store.url]))
        try:
            response = await client.bulk([make_op(1), make_op(2), make_op(3)])

            assert len(response.succeeded) == 3
            assert response.failed == []
            assert store.content_types == ["application/x-ndjson"]

            docs = store.documents("gdax-market")
            assert [d["sequence"] for d in docs] == [1, 2, 3]
            assert all(d["doc_type"] == "ticker" for d in docs)
            assert all(d["price"] == "50000.00" for d in docs)
            action, _ = store.bulk_requests[0].items[0]
            assert action == {"index": {"_index": "gdax-market"}}
        finally:
            await client.close()
            await store.stop()

    @pytest.mark.asyncio
    async def test_bulk_with_mapping_types(self) -> None:
        store = FakeIndexStore()
        await store.start()
        client = IndexStoreClient(IndexStoreConfig(hosts=[store.url], mapping_types=True))
        try:
            await client.bulk([make_op(1, doc_type="snap-shot")])
            action, source = store.bulk_requests[0].items[0]
            assert action == {"index": {"_index": "gdax-market", "_type": "snap-shot"}}
            assert "doc_type" not in source
        finally:
            await client.close()
            await store.stop()

    @pytest.mark.asyncio
    async def test_bulk_item_failures_reported(self) -> None:
        store = FakeIndexStore(reject=lambda source: source.get("sequence") == 2)
        await store.start()
        client = IndexStoreClient(IndexStoreConfig(hosts=[store.url]))
        try:
            response = await client.bulk([make_op(1), make_op(2), make_op(3)])
            assert response.errors is True
            assert len(response.succeeded) == 2
            assert len(response.failed) == 1
            assert response.failed[0].status == 400
        finally:
            await client.close()
            await store.stop()

    @pytest.mark.asyncio
    async def test_bulk_http_error_raises(self) -> None:
        store = FakeIndexStore(bulk_status=503)
        await store.start()
        client = IndexStoreClient(IndexStoreConfig(hosts=[store.url]))
        try:
            with pytest.raises(IndexStoreError) as exc_info:
                await client.bulk([make_op(1)])
            assert exc_info.value.status == 503
        finally:
            await client.close()
            await store.stop()

    @pytest.mark.asyncio
    async def test_bulk_non_json_body_raises(self) -> None:
        store = FakeIndexStore(garbage_json=True)
        await store.start()
        client = IndexStoreClient(IndexStoreConfig(hosts=[store.url]))
        try:
            with pytest.raises(IndexStoreError, match="invalid JSON") as exc_info:
                await client.bulk([make_op(1)])
            assert exc_info.value.status == 200
        finally:
            await client.close()
            await store.stop()

    @pytest.mark.asyncio
    async def test_bulk_truncated_body_raises(self) -> None:
        async def handle(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
            await reader.readuntil(b"\r\n\r\n")
            writer.write(b'HTTP/1.1 200 OK\r\nContent-Length: 100\r\n\r\n{"took": 1')
            await writer.drain()
            writer.close()

        server = await asyncio.start_server(handle, "127.0.0.1", 0)
        port = server.sockets[0].getsockname()[1]
        client = IndexStoreClient(IndexStoreConfig(hosts=[f"http://127.0.0.1:{port}"]))
        try:
            with pytest.raises(IndexStoreError):
                await client.bulk([make_op(1)])
        finally:
            await client.close()
            server.close()
            await server.wait_closed()

    @pytest.mark.asyncio
    async def test_bulk_missing_items_count_as_failed(self) -> None:
        store = FakeIndexStore(drop_items=2)
        await store.start()
        client = IndexStoreClient(IndexStoreConfig(hosts=[store.url]))
        try:
            response = await client.bulk([make_op(1), make_op(2), make_op(3)])
            assert len(response.items) == 3
            assert len(response.succeeded) == 1
            assert len(response.failed) == 2
            assert response.errors is True
            assert all(item.status == 0 for item in response.failed)
        finally:
            await client.close()
            await store.stop()

    @pytest.mark.asyncio
    async def test_empty_bulk_sends_nothing(self) -> None:
        store = FakeIndexStore()
        await store.start()
        client = IndexStoreClient(IndexStoreConfig(hosts=[store.url]))
        try:
            response = await client.bulk([])
            assert response.items == []
            assert store.bulk_requests == []
        finally:
            await client.close()
            await store.stop()

    @pytest.mark.asyncio
    async def test_fails_over_to_next_host(self) -> None:
        dead = await closed_port_url()
        store = FakeIndexStore()
        await store.start()
        client = IndexStoreClient(IndexStoreConfig(hosts=[dead, store.url]))
        try:
            for i in range(3):
                await client.bulk([make_op(i)])
            assert len(store.bulk_requests) == 3
        finally:
            await client.close()
            await store.stop()


class TestSniffing:
    """Host discovery from /_nodes/http."""

    @pytest.mark.asyncio
    async def test_sniff_replaces_hosts(self) -> None:
        store = FakeIndexStore(
            nodes={
                "n1": {"http": {"publish_address": "es-1/10.0.0.1:9200"}},
                "n2": {"http": {"publish_address": "10.0.0.2:9200"}},
                "n3": {"name": "no-http"},
            }
        )
        await store.start()
        client = IndexStoreClient(IndexStoreConfig(hosts=[store.url]))
        try:
            hosts = await client.sniff()
            assert hosts == ["http://10.0.0.1:9200", "http://10.0.0.2:9200"]
            assert client.hosts == hosts
        finally:
            await client.close()
            await store.stop()

    @pytest.mark.asyncio
    async def test_sniff_without_nodes_keeps_hosts(self) -> None:
        store = FakeIndexStore(nodes={})
        await store.start()
        client = IndexStoreClient(IndexStoreConfig(hosts=[store.url], sniff=True))
        try:
            await client.start()
            assert client.hosts == [store.url]
        finally:
            await client.close()
            await store.stop()
