"""
Snapshot payload envelope.

A payload is a gzip-compressed JSON document:
    {
        "format_version": 1,
        "manifest_id": "backup_...",
        "created_at": "2026-10-19T10:00:00+00:00",
        "kind": "full",
        "entity_sets": {"bills": [{...}, ...], "users": [...]}
    }

Records in each set are stored in canonical order and the document is
written with sorted keys, so the same content always encodes to the same bytes.
"""

from __future__ import annotations

import gzip
import json
import zlib
from dataclasses import dataclass, field
from typing import Any

from ..errors import ChecksumError
from ..integrity.checksum import canonical_record

FORMAT_VERSION = 1


@dataclass
class PayloadEnvelope:
    """Decoded snapshot payload."""

    manifest_id: str
    created_at: str
    kind: str
    entity_sets: dict[str, list[dict[str, Any]]] = field(default_factory=dict)
    format_version: int = FORMAT_VERSION

    def record_counts(self) -> dict[str, int]:
        return {name: len(records) for name, records in self.entity_sets.items()}


def encode_payload(
    manifest_id: str,
    created_at: str,
    kind: str,
    entity_sets: dict[str, list[dict[str, Any]]],
) -> bytes:
    """Encode entity sets into a compressed payload.

    Raises:
        ChecksumError: If a record cannot be serialized
    """
    document = {
        "format_version": FORMAT_VERSION,
        "manifest_id": manifest_id,
        "created_at": created_at,
        "kind": kind,
        "entity_sets": {
            name: sorted(entity_sets[name], key=canonical_record) for name in sorted(entity_sets)
        },
    }
    try:
        body = json.dumps(document, sort_keys=True, separators=(",", ":"))
    except (TypeError, ValueError) as e:
        raise ChecksumError(f"Payload is not serializable: {e}") from e
    # mtime=0 keeps the compressed bytes reproducible
    return gzip.compress(body.encode("utf-8"), mtime=0)


def decode_payload(data: bytes) -> PayloadEnvelope:
    """Decode a compressed payload.

    Raises:
        ChecksumError: If the payload cannot be decompressed or parsed
    """
    try:
        raw = gzip.decompress(data)
    except (OSError, EOFError, zlib.error) as e:
        raise ChecksumError(f"Payload is not readable gzip: {e}") from e

    try:
        document = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise ChecksumError(f"Payload is not valid JSON: {e}") from e

    if not isinstance(document, dict):
        raise ChecksumError("Payload envelope is not an object")

    entity_sets = document.get("entity_sets")
    if not isinstance(entity_sets, dict):
        raise ChecksumError("Payload envelope has no entity_sets object")

    return PayloadEnvelope(
        manifest_id=document.get("manifest_id", ""),
        created_at=document.get("created_at", ""),
        kind=document.get("kind", ""),
        entity_sets=entity_sets,
        format_version=document.get("format_version", 0),
    )
