"""
Catalog module for BillVault - durable manifest storage.

The catalog is an arena + index pair:
- PayloadArena: payload files addressed by SHA-256 content hash
- ManifestIndex: SQLite rows keyed by manifest id, pointing at payloads

Invariants:
    - Payloads are written before their manifest row is completed
    - Manifest rows are deleted after their payloads (row delete commits a purge)
    - Payload bytes are immutable once addressed
"""

from .arena import PayloadArena
from .index import ManifestIndex, ManifestStats
from .payload import PayloadEnvelope, decode_payload, encode_payload

__all__ = [
    "PayloadArena",
    "ManifestIndex",
    "ManifestStats",
    "PayloadEnvelope",
    "encode_payload",
    "decode_payload",
]
