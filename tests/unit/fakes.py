"""In-memory stand-ins for the writer, resolver and broker client used by the unit tests."""

from __future__ import annotations

import threading
import time

from confluent_kafka import KafkaError, KafkaException

from dataset_mapper.decode import ResolvedMapping
from dataset_mapper.resolve import ResolutionError
from dataset_mapper.writer import Transaction, WriteError


class FakeWriter:
    """Records every call; commits into ``committed`` only on commit()."""

    def __init__(self, fail_insert_at: int | None = None, fail_commit: bool = False,
                 fail_begin: bool = False, insert_delay: float = 0.0) -> None:
        self.events: list[tuple[str, object]] = []
        self.committed: list[list[ResolvedMapping]] = []
        self._staged: list[ResolvedMapping] = []
        self._fail_insert_at = fail_insert_at
        self._fail_commit = fail_commit
        self._fail_begin = fail_begin
        self._insert_delay = insert_delay

    def begin(self) -> Transaction:
        if self._fail_begin:
            raise WriteError("connection is not idle (INERROR)")
        self.events.append(("begin", threading.current_thread().name))
        self._staged = []
        return Transaction()

    def insert(self, tx: Transaction, mapping: ResolvedMapping) -> None:
        if self._fail_insert_at is not None and tx.rows_staged == self._fail_insert_at:
            self.rollback(tx)
            raise WriteError("insert failed")
        time.sleep(self._insert_delay)
        self.events.append(("insert", threading.current_thread().name))
        self._staged.append(mapping)
        tx.rows_staged += 1

    def commit(self, tx: Transaction) -> None:
        if self._fail_commit:
            self.rollback(tx)
            raise WriteError("commit failed")
        self.events.append(("commit", threading.current_thread().name))
        self.committed.append(list(self._staged))
        tx.state = "committed"

    def rollback(self, tx: Transaction) -> None:
        if not tx.is_open:
            return
        self.events.append(("rollback", threading.current_thread().name))
        self._staged = []
        tx.state = "rolled_back"


class FakeResolver:
    def __init__(self, table: dict[str, int]) -> None:
        self.table = table
        self.calls: list[str] = []

    def resolve(self, stable_id: str) -> int:
        self.calls.append(stable_id)
        if stable_id not in self.table:
            raise ResolutionError(stable_id, "no matching file")
        return self.table[stable_id]


class ExplodingResolver:
    def resolve(self, stable_id: str) -> int:
        raise RuntimeError("unexpected")


class FakeMessage:
    def __init__(self, value: bytes | None, offset: int, error: KafkaError | None = None) -> None:
        self._value = value
        self._offset = offset
        self._error = error

    def value(self):
        return self._value

    def error(self):
        return self._error

    def topic(self):
        return "mappings"

    def partition(self):
        return 0

    def offset(self):
        return self._offset


class FakeKafkaConsumer:
    """Returns queued messages from poll(), then None forever."""

    def __init__(self, messages: list[FakeMessage], fail_commit: bool = False) -> None:
        self._messages = list(messages)
        self.subscribed: list[str] = []
        self.committed_offsets: list[int] = []
        self.closed = False
        self.polls = 0
        self._fail_commit = fail_commit

    def subscribe(self, topics):
        self.subscribed = list(topics)

    def poll(self, timeout=None):
        self.polls += 1
        if self._messages:
            return self._messages.pop(0)
        return None

    def commit(self, message=None, asynchronous=True):
        if self._fail_commit:
            raise KafkaException(KafkaError(KafkaError._NO_OFFSET))
        self.committed_offsets.append(message.offset())

    def close(self):
        self.closed = True

