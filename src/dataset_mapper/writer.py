"""dataset_mapper.writer

Transactional writes of resolved mappings into local_ega_ebi.filedataset.

One Transaction per batch.  Rows inserted through a Transaction are not
visible to any other session until commit(); a failed insert or commit
rolls the whole transaction back before WriteError propagates, so a batch
is either fully visible or not at all.

Usage:
    writer = TransactionalWriter(conn)   # conn opened with autocommit=False
    tx = writer.begin()
    try:
        for mapping in resolved:
            writer.insert(tx, mapping)
        writer.commit(tx)
    except Exception:
        writer.rollback(tx)
        raise
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

import psycopg
from psycopg.pq import TransactionStatus

from dataset_mapper.decode import ResolvedMapping
from dataset_mapper.shared import MapperError

log = logging.getLogger(__name__)

INSERT_FILEDATASET_SQL = """
    INSERT INTO local_ega_ebi.filedataset (file_id, dataset_stable_id)
    VALUES (%s, %s)
"""

TX_OPEN = "open"
TX_COMMITTED = "committed"
TX_ROLLED_BACK = "rolled_back"


class WriteError(MapperError):
    """Raised when staging or committing a batch fails."""


@dataclass
class Transaction:
    state: str = TX_OPEN
    rows_staged: int = 0

    @property
    def is_open(self) -> bool:
        return self.state == TX_OPEN


class TransactionalWriter:
    """Stage resolved mappings on one write-store connection and commit as a unit."""

    def __init__(self, conn: psycopg.Connection) -> None:
        if conn.autocommit:
            raise WriteError("write-store connection must not be in autocommit mode")
        self._conn = conn
        self._current: Transaction | None = None

    def begin(self) -> Transaction:
        if self._current is not None and self._current.is_open:
            raise WriteError("a transaction is already open on this writer")
        status = self._conn.info.transaction_status
        if status != TransactionStatus.IDLE:
            raise WriteError(f"write-store connection is not idle ({status.name})")
        self._current = Transaction()
        return self._current

    def insert(self, tx: Transaction, mapping: ResolvedMapping) -> None:
        self._check_open(tx)
        try:
            self._conn.execute(
                INSERT_FILEDATASET_SQL, (mapping.file_id, mapping.dataset_id)
            )
        except psycopg.Error as exc:
            self.rollback(tx)
            raise WriteError(
                f"insert failed for file_id={mapping.file_id} "
                f"dataset_id={mapping.dataset_id!r}: {exc}"
            ) from exc
        tx.rows_staged += 1

    def commit(self, tx: Transaction) -> None:
        self._check_open(tx)
        try:
            self._conn.commit()
        except psycopg.Error as exc:
            self.rollback(tx)
            raise WriteError(f"commit failed: {exc}") from exc
        tx.state = TX_COMMITTED

    def rollback(self, tx: Transaction) -> None:
        """Discard everything staged in ``tx``.  No-op once tx is finished."""
        if not tx.is_open:
            return
        tx.state = TX_ROLLED_BACK
        if self._conn.closed:
            log.error("Write-store connection lost before rollback; server discards the transaction")
            return
        try:
            self._conn.rollback()
        except psycopg.Error as exc:
            log.error("Rollback failed: %s", exc)

    def _check_open(self, tx: Transaction) -> None:
        if tx is not self._current or not tx.is_open:
            raise WriteError(f"transaction is not open (state={tx.state})")
