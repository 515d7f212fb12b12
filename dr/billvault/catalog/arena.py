"""
Content-addressed payload arena.

Snapshot payloads are stored as immutable files named by their SHA-256:
    <root>/payloads/<hex[0:2]>/<hex>

Invariants:
    - A payload's path is derived from its content hash only
    - Writes are atomic (temp file + fsync + rename)
    - Deleting an absent payload is a no-op

How to change safely:
    - Never rewrite a payload in place except through restore_payload(),
      which checks that the bytes hash to the requested address
"""

from __future__ import annotations

import logging
import os
import tempfile
from pathlib import Path

from ..errors import ChecksumError, PayloadNotFoundError
from ..integrity.checksum import PREFIX, digest, is_digest

logger = logging.getLogger(__name__)


class PayloadArena:
    """Stores snapshot payloads on disk addressed by content hash.

    Example:
        >>> arena = PayloadArena("/var/lib/billvault")
        >>> ref = arena.put(b"...")
        >>> data = arena.get(ref)
    """

    def __init__(self, data_dir: str | Path) -> None:
        self.root = Path(data_dir) / "payloads"
        self.root.mkdir(parents=True, exist_ok=True)

    def path_for(self, ref: str) -> Path:
        """Get the file path for a payload reference."""
        if not is_digest(ref):
            raise ChecksumError(f"Invalid payload reference: {ref!r}")
        hex_digest = ref[len(PREFIX):]
        return self.root / hex_digest[:2] / hex_digest

    def put(self, data: bytes) -> str:
        """Store a payload and return its content reference.

        Storing identical bytes twice is a no-op returning the same reference.
        """
        ref = digest(data)
        path = self.path_for(ref)
        if path.exists():
            return ref
        self._write_atomic(path, data)
        logger.debug("Payload stored", extra={"payload_ref": ref, "size_bytes": len(data)})
        return ref

    def get(self, ref: str) -> bytes:
        """Read a payload.

        Raises:
            PayloadNotFoundError: If the payload is absent
        """
        path = self.path_for(ref)
        try:
            return path.read_bytes()
        except FileNotFoundError:
            raise PayloadNotFoundError(f"Payload not found: {ref}", details={"payload_ref": ref})
        except OSError as e:
            raise ChecksumError(f"Cannot read payload {ref}: {e}") from e

    def exists(self, ref: str) -> bool:
        return self.path_for(ref).exists()

    def size(self, ref: str) -> int:
        return self.path_for(ref).stat().st_size

    def delete(self, ref: str) -> bool:
        """Delete a payload. Returns False if it was already absent."""
        path = self.path_for(ref)
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        logger.debug("Payload deleted", extra={"payload_ref": ref})
        return True

    def restore_payload(self, ref: str, data: bytes) -> None:
        """Overwrite a (corrupted) payload with bytes that hash to ref.

        Raises:
            ChecksumError: If data does not hash to ref
        """
        actual = digest(data)
        if actual != ref:
            raise ChecksumError(
                f"Replacement payload hashes to {actual}, expected {ref}",
                details={"expected": ref, "actual": actual},
            )
        self._write_atomic(self.path_for(ref), data)
        logger.info("Payload rewritten from verified copy", extra={"payload_ref": ref})

    def _write_atomic(self, path: Path, data: bytes) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=".tmp-")
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, path)
        except BaseException:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise
