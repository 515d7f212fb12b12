"""
Unit tests for the HTTP and S3 replica transports.

Tests cover:
- HTTP push/fetch against an httpx MockTransport
- S3 push/fetch against a mocked aiobotocore client
- Error mapping to ReplicationError
"""

import base64
import hashlib
import json
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest
from botocore.exceptions import ClientError

from dr.billvault.config import ReplicaBackend, ReplicationConfig, S3Config
from dr.billvault.errors import ReplicationError
from dr.billvault.integrity.checksum import digest
from dr.billvault.models import Manifest, ManifestKind, ManifestStatus, ReplicaNode, utcnow
from dr.billvault.replication.base import MANIFEST_HEADER, create_replica_transport
from dr.billvault.replication.http import HttpReplicaTransport
from dr.billvault.replication.s3 import S3ReplicaTransport, parse_s3_address

PAYLOAD = b"\x1f\x8bcompressed snapshot"


def make_manifest(payload=PAYLOAD):
    created_at = utcnow()
    return Manifest(
        manifest_id="backup_1",
        created_at=created_at,
        kind=ManifestKind.FULL,
        entity_sets=["bills"],
        retention_until=created_at + timedelta(days=90),
        status=ManifestStatus.COMPLETED,
        size_bytes=len(payload),
        payload_ref=digest(payload),
    )


class TestHttpReplicaTransport:
    """Tests for HttpReplicaTransport."""

    @pytest.fixture
    def node(self):
        return ReplicaNode("secondary1", "http://replica.test:8470/")

    def transport_for(self, handler):
        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        return HttpReplicaTransport(client=client)

    @pytest.mark.asyncio
    async def test_push(self, node):
        manifest = make_manifest()
        seen = {}

        def handler(request):
            seen["method"] = request.method
            seen["url"] = str(request.url)
            seen["manifest"] = json.loads(request.headers[MANIFEST_HEADER])
            seen["body"] = request.content
            return httpx.Response(
                201,
                json={
                    "manifest_id": "backup_1",
                    "payload_ref": digest(request.content),
                    "stored_at": "2026-10-19T10:00:00+00:00",
                },
            )

        ack = await self.transport_for(handler).push(node, manifest, PAYLOAD)

        assert seen["method"] == "PUT"
        assert seen["url"] == "http://replica.test:8470/v1/replicas/backup_1"
        assert seen["manifest"]["id"] == "backup_1"
        assert seen["body"] == PAYLOAD
        assert ack.node_id == "secondary1"
        assert ack.payload_ref == manifest.payload_ref

    @pytest.mark.asyncio
    async def test_push_rejected(self, node):
        transport = self.transport_for(lambda request: httpx.Response(422, text="mismatch"))
        with pytest.raises(ReplicationError) as exc_info:
            await transport.push(node, make_manifest(), PAYLOAD)
        assert exc_info.value.node_id == "secondary1"

    @pytest.mark.asyncio
    async def test_push_connection_error(self, node):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(ReplicationError):
            await self.transport_for(handler).push(node, make_manifest(), PAYLOAD)

    @pytest.mark.asyncio
    async def test_push_malformed_ack(self, node):
        transport = self.transport_for(lambda request: httpx.Response(200, json={"ok": True}))
        with pytest.raises(ReplicationError, match="Malformed"):
            await transport.push(node, make_manifest(), PAYLOAD)

    @pytest.mark.asyncio
    async def test_fetch(self, node):
        manifest = make_manifest()

        def handler(request):
            if request.url.path == "/v1/replicas/backup_1":
                return httpx.Response(200, json=manifest.to_dict())
            if request.url.path == "/v1/replicas/backup_1/payload":
                return httpx.Response(200, content=PAYLOAD)
            return httpx.Response(404)

        copy = await self.transport_for(handler).fetch(node, "backup_1")

        assert copy.manifest.manifest_id == "backup_1"
        assert copy.payload == PAYLOAD

    @pytest.mark.asyncio
    async def test_fetch_not_found(self, node):
        transport = self.transport_for(lambda request: httpx.Response(404))
        assert await transport.fetch(node, "backup_1") is None

    @pytest.mark.asyncio
    async def test_fetch_server_error(self, node):
        transport = self.transport_for(lambda request: httpx.Response(500))
        with pytest.raises(ReplicationError):
            await transport.fetch(node, "backup_1")

    @pytest.mark.asyncio
    async def test_close_leaves_injected_client_open(self):
        client = httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(200)))
        await HttpReplicaTransport(client=client).close()
        assert not client.is_closed
        await client.aclose()


class TestS3ReplicaTransport:
    """Tests for S3ReplicaTransport."""

    @pytest.fixture
    def node(self):
        return ReplicaNode("dr", "s3://billvault-dr/replica")

    @pytest.fixture
    def client(self):
        s3 = MagicMock()
        checksum = base64.b64encode(hashlib.sha256(PAYLOAD).digest()).decode("ascii")
        s3.put_object = AsyncMock(return_value={"ChecksumSHA256": checksum})
        s3.get_object = AsyncMock()
        return s3

    def test_parse_address(self):
        assert parse_s3_address("s3://bucket/a/b/") == ("bucket", "a/b")
        assert parse_s3_address("s3://bucket") == ("bucket", "")
        with pytest.raises(ValueError):
            parse_s3_address("http://bucket")

    @pytest.mark.asyncio
    async def test_push(self, node, client):
        manifest = make_manifest()
        transport = S3ReplicaTransport(S3Config(), client=client)

        ack = await transport.push(node, manifest, PAYLOAD)

        assert ack.payload_ref == manifest.payload_ref
        payload_call, manifest_call = client.put_object.call_args_list
        hex_digest = manifest.payload_ref.split(":", 1)[1]
        assert payload_call.kwargs["Bucket"] == "billvault-dr"
        assert payload_call.kwargs["Key"] == f"replica/payloads/{hex_digest}"
        assert payload_call.kwargs["Body"] == PAYLOAD
        assert manifest_call.kwargs["Key"] == "replica/manifests/backup_1.json"

    @pytest.mark.asyncio
    async def test_push_without_checksum_in_response(self, node, client):
        client.put_object.return_value = {}
        transport = S3ReplicaTransport(S3Config(), client=client)
        with pytest.raises(ReplicationError):
            await transport.push(node, make_manifest(), PAYLOAD)

    @pytest.mark.asyncio
    async def test_push_client_error(self, node, client):
        client.put_object.side_effect = ClientError(
            {"Error": {"Code": "AccessDenied", "Message": "denied"}}, "PutObject"
        )
        transport = S3ReplicaTransport(S3Config(), client=client)
        with pytest.raises(ReplicationError):
            await transport.push(node, make_manifest(), PAYLOAD)

    @pytest.mark.asyncio
    async def test_fetch(self, node, client):
        manifest = make_manifest()

        def body(data):
            stream = MagicMock()
            stream.read = AsyncMock(return_value=data)
            return {"Body": stream}

        client.get_object.side_effect = [
            body(json.dumps(manifest.to_dict()).encode("utf-8")),
            body(PAYLOAD),
        ]
        transport = S3ReplicaTransport(S3Config(), client=client)

        copy = await transport.fetch(node, "backup_1")

        assert copy.payload == PAYLOAD
        assert copy.manifest.payload_ref == manifest.payload_ref

    @pytest.mark.asyncio
    async def test_fetch_missing(self, node, client):
        client.get_object.side_effect = ClientError(
            {"Error": {"Code": "NoSuchKey", "Message": "missing"}}, "GetObject"
        )
        transport = S3ReplicaTransport(S3Config(), client=client)
        assert await transport.fetch(node, "backup_1") is None


class TestTransportFactory:
    """Tests for create_replica_transport."""

    def test_http(self):
        assert isinstance(create_replica_transport(ReplicationConfig()), HttpReplicaTransport)

    def test_s3(self):
        transport = create_replica_transport(ReplicationConfig(backend=ReplicaBackend.S3))
        assert isinstance(transport, S3ReplicaTransport)
