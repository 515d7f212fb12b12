"""
Replica receiver for the HTTP replica transport.

A replica node runs this aiohttp application and keeps its own payload arena
and manifest index:

    PUT /v1/replicas/{manifest_id}          store payload (body) + manifest (header)
    GET /v1/replicas                        list stored manifests
    GET /v1/replicas/{manifest_id}          manifest JSON
    GET /v1/replicas/{manifest_id}/payload  payload bytes
    GET /v1/health                          health check

Usage:
    python -m dr.billvault.api.replica_server

Invariants:
    - A payload is stored only if its bytes hash to the manifest's payload reference
    - The acknowledgement carries the reference of the bytes read back from disk
    - Re-pushing a stored manifest is idempotent

How to change safely:
    - Keep paths in sync with replication/http.py
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
from collections.abc import Callable

from aiohttp import web

from ..catalog.arena import PayloadArena
from ..catalog.index import ManifestIndex
from ..config import ReplicaServerConfig
from ..errors import BackupError
from ..integrity.checksum import digest
from ..models import Manifest, ManifestStatus, to_iso, utcnow
from ..replication.base import MANIFEST_HEADER

logger = logging.getLogger(__name__)

ARENA_KEY = web.AppKey("arena", PayloadArena)
INDEX_KEY = web.AppKey("index", ManifestIndex)
NODE_ID_KEY = web.AppKey("node_id", str)


def _error(status: int, message: str, code: str) -> web.Response:
    return web.json_response({"error": message, "error_code": code}, status=status)


def create_replica_app(arena: PayloadArena, index: ManifestIndex, node_id: str = "replica") -> web.Application:
    """Create the replica receiver application.

    Args:
        arena: Payload arena of this replica
        index: Manifest index of this replica (must be initialized)
        node_id: Identifier reported by the health endpoint
    """
    app = web.Application(client_max_size=1024**3)
    app[ARENA_KEY] = arena
    app[INDEX_KEY] = index
    app[NODE_ID_KEY] = node_id

    app.router.add_put("/v1/replicas/{manifest_id}", handle_put_replica)
    app.router.add_get("/v1/replicas", handle_list_replicas)
    app.router.add_get("/v1/replicas/{manifest_id}", handle_get_manifest)
    app.router.add_get("/v1/replicas/{manifest_id}/payload", handle_get_payload)
    app.router.add_get("/v1/health", handle_health)

    @web.middleware
    async def error_middleware(request: web.Request, handler: Callable) -> web.StreamResponse:
        try:
            return await handler(request)
        except web.HTTPException:
            raise
        except BackupError as e:
            logger.error(f"Replica handler error: {e.message}", extra={"code": e.code})
            return _error(500, e.message, e.code)
        except Exception as e:
            logger.error(f"Replica handler error: {e}", exc_info=True)
            return _error(500, str(e), "INTERNAL")

    app.middlewares.append(error_middleware)
    return app


async def handle_put_replica(request: web.Request) -> web.Response:
    """Handle PUT /v1/replicas/{manifest_id} - Store a replica."""
    arena = request.app[ARENA_KEY]
    index = request.app[INDEX_KEY]
    manifest_id = request.match_info["manifest_id"]

    header = request.headers.get(MANIFEST_HEADER)
    if not header:
        return _error(400, f"{MANIFEST_HEADER} header is required", "BAD_REQUEST")
    try:
        manifest = Manifest.from_dict(json.loads(header))
    except (ValueError, KeyError, TypeError) as e:
        return _error(400, f"Invalid manifest: {e}", "BAD_REQUEST")

    if manifest.manifest_id != manifest_id:
        return _error(400, "Manifest id does not match the URL", "BAD_REQUEST")
    if manifest.status != ManifestStatus.COMPLETED or manifest.payload_ref is None:
        return _error(422, "Only completed manifests can be replicated", "NOT_COMPLETED")

    payload = await request.read()
    if digest(payload) != manifest.payload_ref:
        return _error(422, "Payload does not match the manifest's payload reference", "CHECKSUM_MISMATCH")

    existing = await index.get(manifest_id)
    if existing is not None and existing.payload_ref != manifest.payload_ref:
        return _error(409, "A different payload is already stored for this manifest", "CONFLICT")

    arena.put(payload)
    if existing is None:
        await index.save(manifest)

    stored_ref = digest(arena.get(manifest.payload_ref))
    logger.info(
        f"Stored replica of {manifest_id}",
        extra={"manifest_id": manifest_id, "payload_ref": stored_ref, "size_bytes": len(payload)},
    )
    return web.json_response(
        {
            "manifest_id": manifest_id,
            "payload_ref": stored_ref,
            "stored_at": to_iso(utcnow()),
        },
        status=201 if existing is None else 200,
    )


async def handle_list_replicas(request: web.Request) -> web.Response:
    """Handle GET /v1/replicas - List stored manifests."""
    limit = request.query.get("limit")
    manifests = await request.app[INDEX_KEY].list_manifests(limit=int(limit) if limit else None)
    return web.json_response({"manifests": [m.to_dict() for m in manifests]})


async def handle_get_manifest(request: web.Request) -> web.Response:
    """Handle GET /v1/replicas/{manifest_id} - Get a stored manifest."""
    manifest = await request.app[INDEX_KEY].get(request.match_info["manifest_id"])
    if manifest is None:
        return _error(404, "Manifest not found", "NOT_FOUND")
    return web.json_response(manifest.to_dict())


async def handle_get_payload(request: web.Request) -> web.Response:
    """Handle GET /v1/replicas/{manifest_id}/payload - Get a stored payload."""
    arena = request.app[ARENA_KEY]
    manifest = await request.app[INDEX_KEY].get(request.match_info["manifest_id"])
    if manifest is None or manifest.payload_ref is None or not arena.exists(manifest.payload_ref):
        return _error(404, "Payload not found", "NOT_FOUND")
    return web.Response(body=arena.get(manifest.payload_ref), content_type="application/gzip")


async def handle_health(request: web.Request) -> web.Response:
    """Handle GET /v1/health - Health check."""
    stats = await request.app[INDEX_KEY].stats()
    return web.json_response(
        {
            "healthy": True,
            "node_id": request.app[NODE_ID_KEY],
            "manifests": stats.total,
            "newest": to_iso(stats.newest),
        }
    )


async def run_replica_server(config: ReplicaServerConfig, node_id: str = "replica") -> None:
    """Run the replica receiver until cancelled."""
    index = ManifestIndex(config.data_dir)
    await index.initialize()
    app = create_replica_app(PayloadArena(config.data_dir), index, node_id=node_id)

    runner = web.AppRunner(app)
    await runner.setup()

    site = web.TCPSite(runner, config.host, config.port)
    await site.start()

    logger.info(f"Replica server running on http://{config.host}:{config.port}")

    try:
        while True:
            await asyncio.sleep(3600)
    except asyncio.CancelledError:
        pass
    finally:
        await runner.cleanup()


def main() -> None:
    """Replica receiver entry point."""
    from ..config import ObservabilityConfig, ServiceConfig
    from ..main import setup_logging

    setup_logging(ServiceConfig(observability=ObservabilityConfig.from_env()))
    config = ReplicaServerConfig.from_env()
    try:
        asyncio.run(run_replica_server(config, node_id=os.getenv("REPLICA_NODE_ID", "replica")))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
