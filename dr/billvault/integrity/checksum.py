"""
Checksum engine for BillVault.

Computes the integrity digests stored in every manifest:
- digest(): SHA-256 of raw bytes
- combine(): order-sensitive digest over an ordered list of digests
- serialize_records(): canonical byte form of an entity set
- master_checksum(): combine() over per-set digests sorted by set name

Digests are rendered as ``sha256:<hex>``.

Invariants:
    - Pure and stateless, safe to call concurrently
    - The same records in any order serialize to the same bytes
    - combine() never collapses inputs in a way that hides their order
    - Failures raise ChecksumError; no partial digest is ever returned

How to change safely:
    - Changing the canonical form invalidates every stored checksum;
      introduce a new algorithm prefix instead of altering sha256
"""

from __future__ import annotations

import hashlib
import json
from collections.abc import Iterable, Mapping, Sequence
from pathlib import Path
from typing import Any

from ..errors import ChecksumError

ALGORITHM = "sha256"
PREFIX = f"{ALGORITHM}:"


def digest(data: bytes) -> str:
    """Compute the SHA-256 digest of raw bytes.

    Args:
        data: Bytes to digest

    Returns:
        Digest string with 'sha256:' prefix

    Raises:
        ChecksumError: If data is not bytes-like
    """
    if not isinstance(data, (bytes, bytearray, memoryview)):
        raise ChecksumError(f"Cannot digest object of type {type(data).__name__}")
    return f"{PREFIX}{hashlib.sha256(data).hexdigest()}"


def digest_file(path: Path) -> str:
    """Compute the SHA-256 digest of a file, streaming in chunks."""
    sha256 = hashlib.sha256()
    try:
        with open(path, "rb") as f:
            for chunk in iter(lambda: f.read(8192), b""):
                sha256.update(chunk)
    except OSError as e:
        raise ChecksumError(f"Cannot read {path}: {e}") from e
    return f"{PREFIX}{sha256.hexdigest()}"


def combine(ordered_digests: Sequence[str]) -> str:
    """Combine digests into one, preserving their order.

    Each item is length-prefixed before hashing so that neither reordering
    nor re-splitting the inputs produces the same result.

    Args:
        ordered_digests: Digests (or labelled digests) in significant order

    Returns:
        Combined digest with 'sha256:' prefix
    """
    sha256 = hashlib.sha256()
    for item in ordered_digests:
        if not isinstance(item, str):
            raise ChecksumError(f"Cannot combine non-string digest: {item!r}")
        try:
            encoded = item.encode("utf-8")
        except UnicodeEncodeError as e:
            raise ChecksumError(f"Cannot combine unencodable digest: {item!r}") from e
        sha256.update(len(encoded).to_bytes(8, "big"))
        sha256.update(encoded)
    return f"{PREFIX}{sha256.hexdigest()}"


def master_checksum(per_set_checksum: Mapping[str, str]) -> str:
    """Derive the master checksum over (name, digest) pairs sorted by name."""
    return combine([f"{name}={per_set_checksum[name]}" for name in sorted(per_set_checksum)])


def canonical_record(record: Mapping[str, Any]) -> str:
    """Serialize one record as canonical JSON (sorted keys, compact, ASCII).

    Non-ASCII text, including lone surrogates read back from JSON escapes,
    is written as \\u escapes so the canonical form always encodes.
    """
    try:
        return json.dumps(record, sort_keys=True, separators=(",", ":"))
    except (TypeError, ValueError) as e:
        raise ChecksumError(f"Record is not serializable: {e}") from e


def canonical_records(records: Iterable[Mapping[str, Any]]) -> list[str]:
    """Canonical form of every record, sorted so input order does not matter."""
    return sorted(canonical_record(record) for record in records)


def serialize_records(records: Iterable[Mapping[str, Any]]) -> bytes:
    """Serialize an entity set to its canonical byte form."""
    return ("[" + ",".join(canonical_records(records)) + "]").encode("utf-8")


def set_checksum(records: Iterable[Mapping[str, Any]]) -> str:
    """Digest of an entity set's canonical serialization."""
    return digest(serialize_records(records))


def is_digest(value: Any) -> bool:
    """Whether value looks like a digest produced by this module."""
    if not isinstance(value, str) or not value.startswith(PREFIX):
        return False
    hex_part = value[len(PREFIX):]
    return len(hex_part) == 64 and all(c in "0123456789abcdef" for c in hex_part)
