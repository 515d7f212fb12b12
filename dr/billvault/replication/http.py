"""
HTTP replica transport.

Talks to a replica receiver (dr.billvault.api.replica_server) over HTTP:

    PUT  {address}/v1/replicas/{manifest_id}          body: payload bytes
                                                       header: X-BillVault-Manifest (JSON)
    GET  {address}/v1/replicas/{manifest_id}          -> manifest JSON
    GET  {address}/v1/replicas/{manifest_id}/payload  -> payload bytes

The receiver answers a PUT with the payload reference it computed from the
bytes it stored; that reference is the acknowledgement.
"""

from __future__ import annotations

import json
import logging

import httpx

from ..errors import ReplicationError
from ..models import Manifest, ReplicaNode, parse_iso
from .base import MANIFEST_HEADER, ReplicaAck, ReplicaCopy

logger = logging.getLogger(__name__)


class HttpReplicaTransport:
    """Replica transport over HTTP using httpx.

    Example:
        >>> transport = HttpReplicaTransport(timeout_seconds=30)
        >>> ack = await transport.push(node, manifest, payload)
        >>> await transport.close()
    """

    def __init__(
        self,
        timeout_seconds: float = 30.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        """Initialize the transport.

        Args:
            timeout_seconds: Per-request timeout
            client: Preconfigured client (tests pass one with a MockTransport)
        """
        self.timeout_seconds = timeout_seconds
        self._client = client
        self._owns_client = client is None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout_seconds)
        return self._client

    @staticmethod
    def _url(node: ReplicaNode, path: str) -> str:
        return f"{node.address.rstrip('/')}{path}"

    async def push(self, node: ReplicaNode, manifest: Manifest, payload: bytes) -> ReplicaAck:
        url = self._url(node, f"/v1/replicas/{manifest.manifest_id}")
        try:
            response = await self._get_client().put(
                url,
                content=payload,
                headers={
                    "Content-Type": "application/octet-stream",
                    MANIFEST_HEADER: json.dumps(manifest.to_dict()),
                },
            )
        except httpx.HTTPError as e:
            raise ReplicationError(f"Push to {node.node_id} failed: {e}", node_id=node.node_id) from e

        if response.status_code not in (200, 201):
            raise ReplicationError(
                f"Push to {node.node_id} rejected: HTTP {response.status_code} {response.text[:200]}",
                node_id=node.node_id,
            )

        try:
            body = response.json()
            return ReplicaAck(
                node_id=node.node_id,
                manifest_id=body["manifest_id"],
                payload_ref=body["payload_ref"],
                acknowledged_at=parse_iso(body["stored_at"]),
            )
        except (ValueError, KeyError, TypeError) as e:
            raise ReplicationError(
                f"Malformed acknowledgement from {node.node_id}: {e}", node_id=node.node_id
            ) from e

    async def fetch(self, node: ReplicaNode, manifest_id: str) -> ReplicaCopy | None:
        client = self._get_client()
        try:
            response = await client.get(self._url(node, f"/v1/replicas/{manifest_id}"))
            if response.status_code == 404:
                return None
            response.raise_for_status()
            manifest = Manifest.from_dict(response.json())

            payload_response = await client.get(
                self._url(node, f"/v1/replicas/{manifest_id}/payload")
            )
            if payload_response.status_code == 404:
                return None
            payload_response.raise_for_status()
        except httpx.HTTPError as e:
            raise ReplicationError(
                f"Fetch of {manifest_id} from {node.node_id} failed: {e}", node_id=node.node_id
            ) from e
        except (ValueError, KeyError) as e:
            raise ReplicationError(
                f"Malformed manifest from {node.node_id}: {e}", node_id=node.node_id
            ) from e

        return ReplicaCopy(manifest=manifest, payload=payload_response.content)

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None
