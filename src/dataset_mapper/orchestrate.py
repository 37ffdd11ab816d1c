"""dataset_mapper.orchestrate

Per-delivery pipeline: decode -> (resolve) -> write, under a serialization gate.

State machine for one delivery:

  idle -> decoding -> dropped                          (ParseError)
  idle -> decoding -> writing -> committed             (direct-mode)
  idle -> decoding -> resolving <-> writing -> committed | rolled_back

Ordering is decode-then-begin: a payload that fails to decode never opens
a transaction, so a dropped batch touches no database state.  Resolution
happens record by record inside the open transaction, and any failure
there or in the writer ends in rollback.

process() never terminates the process.  It returns a BatchOutcome and the
caller (the queue consumer) decides whether a rolled-back batch is fatal.
"""

from __future__ import annotations

import logging
import threading
from contextlib import AbstractContextManager
from dataclasses import dataclass

from dataset_mapper.decode import (
    MODE_DIRECT,
    MODE_RESOLVE,
    VALID_MODES,
    ParseError,
    ResolvedMapping,
    decode_batch,
    to_resolved,
)
from dataset_mapper.resolve import ReferenceResolver
from dataset_mapper.shared import MapperError, RunCounters
from dataset_mapper.writer import TransactionalWriter, WriteError

log = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# States
# ---------------------------------------------------------------------------

STATE_IDLE = "idle"
STATE_DECODING = "decoding"
STATE_RESOLVING = "resolving"
STATE_WRITING = "writing"
STATE_COMMITTED = "committed"
STATE_DROPPED = "dropped"
STATE_ROLLED_BACK = "rolled_back"


@dataclass(frozen=True)
class BatchOutcome:
    state: str
    rows: int = 0
    error: MapperError | None = None

    @property
    def committed(self) -> bool:
        return self.state == STATE_COMMITTED

    @property
    def failed(self) -> bool:
        return self.state == STATE_ROLLED_BACK


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------

class BatchOrchestrator:
    """Run one delivery at a time through decode, resolve and write.

    Args:
        mode: 'resolve' or 'direct'.
        writer: TransactionalWriter bound to the write store.
        resolver: ReferenceResolver, required in resolve-mode, never called
            in direct-mode.
        gate: mutual-exclusion primitive held for the whole of one batch.
            Defaults to a fresh threading.Lock.
        counters: RunCounters updated per batch.
    """

    def __init__(
        self,
        mode: str,
        writer: TransactionalWriter,
        resolver: ReferenceResolver | None = None,
        gate: AbstractContextManager | None = None,
        counters: RunCounters | None = None,
    ) -> None:
        if mode not in VALID_MODES:
            raise ValueError(f"unknown mode {mode!r}; expected one of {VALID_MODES}")
        if mode == MODE_RESOLVE and resolver is None:
            raise ValueError("resolve mode requires a ReferenceResolver")
        self.mode = mode
        self._writer = writer
        self._resolver = resolver if mode == MODE_RESOLVE else None
        self._gate = gate if gate is not None else threading.Lock()
        self.counters = counters if counters is not None else RunCounters()
        self.state = STATE_IDLE

    def process(self, payload: bytes | str) -> BatchOutcome:
        with self._gate:
            try:
                return self._process_locked(payload)
            finally:
                self.state = STATE_IDLE

    def _process_locked(self, payload: bytes | str) -> BatchOutcome:
        self.counters.batches_received += 1

        self.state = STATE_DECODING
        try:
            records = decode_batch(payload, self.mode)
        except ParseError as exc:
            log.warning("Failed to parse incoming message: %s", exc)
            self.counters.batches_dropped += 1
            self.counters.warn(f"dropped batch: {exc}")
            return BatchOutcome(state=STATE_DROPPED, error=exc)

        try:
            tx = self._writer.begin()
        except WriteError as exc:
            log.error("Failed to begin transaction: %s", exc)
            self.counters.batches_rolled_back += 1
            self.counters.warn(f"could not begin batch: {exc}")
            return BatchOutcome(state=STATE_ROLLED_BACK, error=exc)

        try:
            for record in records:
                if self.mode == MODE_DIRECT:
                    mapping = to_resolved(record)
                else:
                    self.state = STATE_RESOLVING
                    file_id = self._resolver.resolve(record.stable_id)
                    self.counters.stable_ids_resolved += 1
                    mapping = ResolvedMapping(file_id=file_id, dataset_id=record.dataset_id)
                self.state = STATE_WRITING
                self._writer.insert(tx, mapping)
            self.state = STATE_WRITING
            self._writer.commit(tx)
        except MapperError as exc:
            self._writer.rollback(tx)
            log.error("Batch rolled back: %s", exc)
            self.counters.batches_rolled_back += 1
            self.counters.warn(f"rolled back batch: {exc}")
            return BatchOutcome(state=STATE_ROLLED_BACK, error=exc)
        except BaseException:
            self._writer.rollback(tx)
            self.counters.batches_rolled_back += 1
            raise

        self.state = STATE_COMMITTED
        self.counters.batches_committed += 1
        self.counters.rows_committed += tx.rows_staged
        log.info("Mappings stored: %d row(s) %s", tx.rows_staged, records)
        return BatchOutcome(state=STATE_COMMITTED, rows=tx.rows_staged)
