"""State store: JSON snapshot of the full marketplace state.

The event log is the audit trail; the state store is the fast restart
path. Each save rewrites one JSON document carrying an explicit
schema_version. A document written by a different schema version is
refused rather than guessed at.

Integers are stored as JSON numbers, which Python reads back exactly at
any magnitude, so wei-scale amounts survive a round trip.
"""

from __future__ import annotations

import json
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

SCHEMA_VERSION = 1


class StateStore:
    """Single-file JSON store for marketplace state.

    Usage:
        store = StateStore(storage_path=data_dir / "state.json")
        store.save(service_state)
        state = store.load()  # None if nothing saved yet
    """

    def __init__(self, storage_path: Path) -> None:
        self._storage_path = storage_path

    @property
    def storage_path(self) -> Path:
        return self._storage_path

    def exists(self) -> bool:
        return self._storage_path.exists()

    def save(self, state: dict[str, Any]) -> None:
        """Write ``state`` atomically (temp file, then rename).

        Raises OSError if the file cannot be written.
        """
        document = {
            "schema_version": SCHEMA_VERSION,
            "saved_utc": datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ"),
            "state": state,
        }
        self._storage_path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._storage_path.with_suffix(self._storage_path.suffix + ".tmp")
        tmp_path.write_text(
            json.dumps(document, sort_keys=True, indent=2, ensure_ascii=False),
            encoding="utf-8",
        )
        os.replace(tmp_path, self._storage_path)

    def load(self) -> Optional[dict[str, Any]]:
        """Return the saved state, or None if nothing was saved.

        Raises ValueError for an unknown schema version or malformed file.
        """
        if not self._storage_path.exists():
            return None
        document = json.loads(self._storage_path.read_text(encoding="utf-8"))
        if not isinstance(document, dict) or "state" not in document:
            raise ValueError(f"Malformed state file: {self._storage_path}")
        version = document.get("schema_version")
        if version != SCHEMA_VERSION:
            raise ValueError(
                f"Unsupported state schema version {version!r} in "
                f"{self._storage_path} (expected {SCHEMA_VERSION})"
            )
        return document["state"]
