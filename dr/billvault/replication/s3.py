"""
S3 replica transport.

Each replica node is an S3 location given as ``s3://<bucket>/<prefix>``.
Objects:
    <prefix>/payloads/<sha256 hex>        payload bytes
    <prefix>/manifests/<manifest_id>.json manifest JSON

Payload uploads carry their SHA-256 so S3 rejects bytes that do not match;
the acknowledgement is the checksum S3 reports for the stored object.
Manifests are written after their payload.
"""

from __future__ import annotations

import base64
import json
import logging
from typing import Any

from aiobotocore.session import get_session
from botocore.exceptions import BotoCoreError, ClientError

from ..config import S3Config
from ..errors import ReplicationError
from ..integrity.checksum import PREFIX
from ..models import Manifest, ReplicaNode, utcnow
from .base import ReplicaAck, ReplicaCopy

logger = logging.getLogger(__name__)


def parse_s3_address(address: str) -> tuple[str, str]:
    """Split ``s3://bucket/prefix`` into (bucket, prefix)."""
    if not address.startswith("s3://"):
        raise ValueError(f"Not an S3 address: {address}")
    bucket, _, prefix = address[len("s3://"):].partition("/")
    if not bucket:
        raise ValueError(f"S3 address has no bucket: {address}")
    return bucket, prefix.strip("/")


def _key(prefix: str, suffix: str) -> str:
    return f"{prefix}/{suffix}" if prefix else suffix


def _ref_to_b64(payload_ref: str) -> str:
    return base64.b64encode(bytes.fromhex(payload_ref[len(PREFIX):])).decode("ascii")


def _b64_to_ref(value: str) -> str:
    return f"{PREFIX}{base64.b64decode(value).hex()}"


class S3ReplicaTransport:
    """Replica transport storing copies in S3 via aiobotocore.

    Example:
        >>> transport = S3ReplicaTransport(S3Config.from_env())
        >>> ack = await transport.push(node, manifest, payload)
        >>> await transport.close()
    """

    def __init__(self, config: S3Config, client: Any = None) -> None:
        """Initialize the transport.

        Args:
            config: S3 connection settings
            client: Preconfigured S3 client (tests pass a mock)
        """
        self.config = config
        self._s3_client = client
        self._s3_ctx = None
        self._session = None

    async def _get_client(self) -> Any:
        if self._s3_client is None:
            self._session = get_session()

            client_kwargs = {
                "region_name": self.config.region,
            }

            if self.config.endpoint_url:
                client_kwargs["endpoint_url"] = self.config.endpoint_url

            if self.config.access_key_id:
                client_kwargs["aws_access_key_id"] = self.config.access_key_id
                client_kwargs["aws_secret_access_key"] = self.config.secret_access_key

            self._s3_ctx = self._session.create_client("s3", **client_kwargs)
            self._s3_client = await self._s3_ctx.__aenter__()
        return self._s3_client

    async def push(self, node: ReplicaNode, manifest: Manifest, payload: bytes) -> ReplicaAck:
        if manifest.payload_ref is None:
            raise ReplicationError(
                f"Manifest {manifest.manifest_id} has no payload", node_id=node.node_id
            )
        try:
            bucket, prefix = parse_s3_address(node.address)
        except ValueError as e:
            raise ReplicationError(str(e), node_id=node.node_id) from e

        hex_digest = manifest.payload_ref[len(PREFIX):]
        client = await self._get_client()
        try:
            response = await client.put_object(
                Bucket=bucket,
                Key=_key(prefix, f"payloads/{hex_digest}"),
                Body=payload,
                ContentType="application/gzip",
                ChecksumSHA256=_ref_to_b64(manifest.payload_ref),
                Metadata={"manifest-id": manifest.manifest_id},
            )
            await client.put_object(
                Bucket=bucket,
                Key=_key(prefix, f"manifests/{manifest.manifest_id}.json"),
                Body=json.dumps(manifest.to_dict(), indent=2).encode("utf-8"),
                ContentType="application/json",
            )
        except (ClientError, BotoCoreError) as e:
            raise ReplicationError(f"Push to {node.node_id} failed: {e}", node_id=node.node_id) from e

        stored_checksum = response.get("ChecksumSHA256")
        if not stored_checksum:
            raise ReplicationError(
                f"Node {node.node_id} did not report a payload checksum", node_id=node.node_id
            )
        return ReplicaAck(
            node_id=node.node_id,
            manifest_id=manifest.manifest_id,
            payload_ref=_b64_to_ref(stored_checksum),
            acknowledged_at=utcnow(),
        )

    async def fetch(self, node: ReplicaNode, manifest_id: str) -> ReplicaCopy | None:
        try:
            bucket, prefix = parse_s3_address(node.address)
        except ValueError as e:
            raise ReplicationError(str(e), node_id=node.node_id) from e

        client = await self._get_client()
        try:
            response = await client.get_object(
                Bucket=bucket,
                Key=_key(prefix, f"manifests/{manifest_id}.json"),
            )
            content = await response["Body"].read()
            manifest = Manifest.from_dict(json.loads(content.decode("utf-8")))
            if manifest.payload_ref is None:
                return None

            response = await client.get_object(
                Bucket=bucket,
                Key=_key(prefix, f"payloads/{manifest.payload_ref[len(PREFIX):]}"),
            )
            payload = await response["Body"].read()
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") in ("NoSuchKey", "404"):
                return None
            raise ReplicationError(
                f"Fetch of {manifest_id} from {node.node_id} failed: {e}", node_id=node.node_id
            ) from e
        except BotoCoreError as e:
            raise ReplicationError(
                f"Fetch of {manifest_id} from {node.node_id} failed: {e}", node_id=node.node_id
            ) from e

        return ReplicaCopy(manifest=manifest, payload=payload)

    async def close(self) -> None:
        if self._s3_ctx is not None:
            await self._s3_ctx.__aexit__(None, None, None)
            self._s3_ctx = None
            self._s3_client = None
