"""On-disk persistence of the last successful catalog snapshot.

The file is a cache, not the source of truth: it only seeds embeddings on a
cold start. Writes go to a temporary file in the same directory and are then
renamed over the target, so a reader only ever sees the previous complete
file or the new complete file.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, ValidationError

from mcp_vector_proxy.catalog.models import CatalogEntry, CatalogSnapshot
from mcp_vector_proxy.errors import SnapshotStoreError

logger = logging.getLogger(__name__)


class PersistedEntry(BaseModel):
    name: str
    description: str = ""
    inputSchema: Dict[str, Any] = Field(default_factory=dict)
    embedding: List[float]


class PersistedSnapshot(BaseModel):
    """File layout of the snapshot (``.tool-index.json``)."""

    tools: List[PersistedEntry] = Field(default_factory=list)
    indexedAt: Optional[datetime] = None
    fingerprint: str = ""
    model: Optional[str] = None

    @classmethod
    def from_snapshot(
        cls, snapshot: CatalogSnapshot, model: Optional[str] = None
    ) -> "PersistedSnapshot":
        return cls(
            tools=[
                PersistedEntry(
                    name=e.name,
                    description=e.description,
                    inputSchema=e.schema,
                    embedding=list(e.embedding),
                )
                for e in snapshot.entries
            ],
            indexedAt=snapshot.built_at,
            fingerprint=snapshot.fingerprint,
            model=model,
        )

    def to_snapshot(self) -> CatalogSnapshot:
        return CatalogSnapshot(
            entries=tuple(
                CatalogEntry(
                    name=t.name,
                    description=t.description,
                    schema=dict(t.inputSchema),
                    embedding=tuple(t.embedding),
                )
                for t in self.tools
            ),
            built_at=self.indexedAt,
            fingerprint=self.fingerprint,
        )


class SnapshotStore:
    """Reads and atomically writes the persisted snapshot file.

    Parameters
    ----------
    path:
        Location of the snapshot file. Its directory is created on first
        write.
    model:
        Name of the embedding model. A file written by a different model is
        ignored on load, since its vectors are not comparable.
    """

    def __init__(self, path: str, model: Optional[str] = None) -> None:
        self._path = path
        self._model = model

    @property
    def path(self) -> str:
        return self._path

    def load(self) -> Optional[CatalogSnapshot]:
        """Return the persisted snapshot, or ``None`` if absent or unreadable."""
        if not os.path.exists(self._path):
            return None
        try:
            with open(self._path, "r", encoding="utf-8") as fh:
                payload = json.load(fh)
            persisted = PersistedSnapshot.model_validate(payload)
        except (OSError, ValueError, ValidationError) as exc:
            logger.warning("Ignoring unreadable snapshot file %s: %s", self._path, exc)
            return None
        if self._model and persisted.model and persisted.model != self._model:
            logger.info(
                "Ignoring snapshot file %s built with model %s (current: %s).",
                self._path,
                persisted.model,
                self._model,
            )
            return None
        snapshot = persisted.to_snapshot()
        logger.debug("Loaded persisted snapshot: %s (%d entries)", self._path, len(snapshot))
        return snapshot

    def save(self, snapshot: CatalogSnapshot) -> None:
        """Write *snapshot* via temp file + rename.

        Raises :class:`SnapshotStoreError` if the file cannot be written; the
        previous file, if any, is left intact.
        """
        data = PersistedSnapshot.from_snapshot(snapshot, self._model).model_dump_json()
        dir_name = os.path.dirname(os.path.abspath(self._path)) or "."
        try:
            os.makedirs(dir_name, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(dir=dir_name, prefix=".tool-index_", suffix=".tmp")
        except OSError as exc:
            raise SnapshotStoreError(f"Cannot write snapshot file {self._path}: {exc}") from exc
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, self._path)
        except BaseException as exc:
            # Clean up temp file on failure
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            if isinstance(exc, OSError):
                raise SnapshotStoreError(
                    f"Cannot write snapshot file {self._path}: {exc}"
                ) from exc
            raise
        logger.debug("Snapshot written: %s (%d entries)", self._path, len(snapshot))
