"""
Atomic file writing with fsync so a deployed PEM file is never half-written.

Pattern:
  1. Write to a temporary file in the same directory
  2. chmod the temp file (keys must never be world-readable, even briefly)
  3. fsync, then rename over the destination (atomic on POSIX filesystems)

Used by the sync agent for cert/key/fullchain files and its fingerprint
state, and by the server for the ACME account key.
"""
from __future__ import annotations

import os
import tempfile
from pathlib import Path


def atomic_write_text(
    path: Path,
    content: str,
    encoding: str = "utf-8",
    mode: int | None = None,
) -> None:
    """Atomically replace *path* with *content* (text)."""
    atomic_write_bytes(path, content.encode(encoding), mode=mode)


def atomic_write_bytes(path: Path, content: bytes, mode: int | None = None) -> None:
    """
    Atomically replace *path* with *content*.

    When *mode* is given the permission bits are applied to the temp file
    before the rename, so the final path never exists with looser bits.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    # Same directory as the target so os.replace stays on one filesystem
    fd, temp_path = tempfile.mkstemp(
        prefix=f".{path.name}.",
        suffix=".tmp",
        dir=str(path.parent),
    )

    try:
        with os.fdopen(fd, "wb") as f:
            if mode is not None:
                os.fchmod(f.fileno(), mode)
            f.write(content)
            f.flush()
            os.fsync(f.fileno())

        os.replace(temp_path, path)
    except Exception:
        try:
            os.unlink(temp_path)
        except OSError:
            pass
        raise
