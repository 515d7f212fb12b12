"""
Integrity module for BillVault.

- checksum: pure digest functions (payload hash, per-set and master checksums)
- verifier: manifest verification, deep checks and replica-backed repair

Only the checksum functions are re-exported here. The catalog depends on
them, and the verifier depends on the catalog; import IntegrityVerifier
from dr.billvault.integrity.verifier.
"""

from .checksum import combine, digest, master_checksum, serialize_records, set_checksum

__all__ = [
    "combine",
    "digest",
    "master_checksum",
    "serialize_records",
    "set_checksum",
]
