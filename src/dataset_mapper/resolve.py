"""dataset_mapper.resolve

Stable identifier -> internal file id lookup against the reference store.

The reference connection is only ever read from.  Exactly one matching
row is required; zero or several matches are treated as a resolution
failure, never as a guess.
"""

from __future__ import annotations

import logging

import psycopg

from dataset_mapper.shared import MapperError

log = logging.getLogger(__name__)

SELECT_FILE_ID_SQL = "SELECT id FROM local_ega.files WHERE stable_id = %s"


class ResolutionError(MapperError):
    """Raised when a stable id cannot be mapped to exactly one file id."""

    def __init__(self, stable_id: str, reason: str) -> None:
        self.stable_id = stable_id
        self.reason = reason
        super().__init__(f"cannot resolve stable_id={stable_id!r}: {reason}")


class ReferenceResolver:
    """Resolve stable ids through an open psycopg connection.

    The caller owns the connection; open it with ``autocommit=True`` so
    lookups never leave a transaction idle on the reference store.
    """

    def __init__(self, conn: psycopg.Connection) -> None:
        self._conn = conn

    def resolve(self, stable_id: str) -> int:
        if not stable_id:
            raise ResolutionError(stable_id, "stable_id is empty")
        try:
            rows = self._conn.execute(SELECT_FILE_ID_SQL, (stable_id,)).fetchall()
        except psycopg.Error as exc:
            raise ResolutionError(stable_id, f"reference store error: {exc}") from exc

        if not rows:
            raise ResolutionError(stable_id, "no matching file")
        if len(rows) > 1:
            raise ResolutionError(stable_id, f"ambiguous ({len(rows)} files)")

        file_id = int(rows[0][0])
        log.debug("Resolved %s -> %d", stable_id, file_id)
        return file_id
