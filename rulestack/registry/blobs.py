"""Integrity-checked blob writes shared by every registry backend."""

from __future__ import annotations

import hashlib
from collections.abc import Iterable
from pathlib import Path

from rulestack.errors import IntegrityMismatch


def write_verified(chunks: Iterable[bytes], dest_path: str | Path, sha256: str, registry: str = "") -> int:
    """Stream ``chunks`` to ``dest_path`` while hashing them.

    The file is removed when the digest differs from ``sha256`` or when
    the stream fails part-way. Returns the number of bytes written.
    """
    dest = Path(dest_path)
    dest.parent.mkdir(parents=True, exist_ok=True)
    digest = hashlib.sha256()
    written = 0
    try:
        with open(dest, "wb") as f:
            for chunk in chunks:
                f.write(chunk)
                digest.update(chunk)
                written += len(chunk)
    except BaseException:
        dest.unlink(missing_ok=True)
        raise

    actual = digest.hexdigest()
    if actual != sha256.lower():
        dest.unlink(missing_ok=True)
        raise IntegrityMismatch(
            f"blob hash mismatch: expected {sha256}, got {actual}",
            expected=sha256,
            actual=actual,
            registry=registry,
        )
    return written
