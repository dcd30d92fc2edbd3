"""
Local agent state: the fingerprint last deployed for each certificate id.

Stored as a small JSON document and rewritten atomically after every change,
so a crash mid-cycle leaves either the old or the new state on disk.  A
missing or unreadable file means "nothing deployed yet": every bound
certificate is fetched again on the next cycle.
"""
from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Dict, Optional

from storage.atomic import atomic_write_text

logger = logging.getLogger(__name__)


class LocalState:
    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self._fingerprints: Dict[str, str] = self._load()

    def _load(self) -> Dict[str, str]:
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return {}
        except (OSError, ValueError) as exc:
            logger.warning("Ignoring unreadable agent state %s: %s", self.path, exc)
            return {}
        return {str(k): str(v) for k, v in data.get("fingerprints", {}).items()}

    def fingerprint(self, cert_id: int) -> Optional[str]:
        return self._fingerprints.get(str(cert_id))

    def needs_update(self, cert_id: int, server_fingerprint: str) -> bool:
        return self.fingerprint(cert_id) != server_fingerprint

    def record(self, cert_id: int, fingerprint: str) -> None:
        """Persist *fingerprint*; the in-memory view only changes once the write succeeded."""
        updated = dict(self._fingerprints)
        updated[str(cert_id)] = fingerprint
        self._write(updated)
        self._fingerprints = updated

    def known_ids(self) -> set[int]:
        return {int(k) for k in self._fingerprints}

    def _write(self, fingerprints: Dict[str, str]) -> None:
        atomic_write_text(
            self.path,
            json.dumps({"fingerprints": fingerprints}, indent=2, sort_keys=True),
            mode=0o600,
        )
