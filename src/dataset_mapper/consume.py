"""dataset_mapper.consume

Queue consumer: one subscription, one delivery in flight.

Deliveries are handed to the BatchOrchestrator strictly in the order the
broker returns them; the next poll happens only after the orchestrator
returns.  The consumer is also the supervising layer for batch failures:

  on_batch_error='exit'  a rolled-back batch raises BatchFailedError and the
                         delivery is left unacknowledged (redelivered after
                         restart when acknowledgment is explicit).
  on_batch_error='skip'  the failure is logged, the delivery acknowledged,
                         and consumption continues.

Acknowledgment:
  explicit (auto_ack=False)  offset committed synchronously after the batch
                             was committed, dropped or skipped.
  auto (auto_ack=True)       the broker client commits offsets on its own
                             schedule; a crash mid-batch can lose the batch.
"""

from __future__ import annotations

import logging
from typing import Any

from confluent_kafka import Consumer, KafkaError, KafkaException

from dataset_mapper.config import ON_ERROR_EXIT, VALID_ON_ERROR, MapperConfig, build_consumer_config
from dataset_mapper.orchestrate import BatchOrchestrator, BatchOutcome
from dataset_mapper.shared import MapperError

log = logging.getLogger(__name__)

POLL_TIMEOUT_SECONDS = 1.0


class BatchFailedError(MapperError):
    """Raised under the 'exit' policy when a batch was rolled back."""

    def __init__(self, outcome: BatchOutcome) -> None:
        self.outcome = outcome
        super().__init__(f"batch rolled back: {outcome.error}")


class QueueConsumer:
    """Feed broker deliveries one at a time into a BatchOrchestrator."""

    def __init__(
        self,
        consumer: Any,
        topic: str,
        orchestrator: BatchOrchestrator,
        auto_ack: bool = False,
        on_batch_error: str = ON_ERROR_EXIT,
    ) -> None:
        if on_batch_error not in VALID_ON_ERROR:
            raise ValueError(f"unknown batch error policy {on_batch_error!r}")
        self._consumer = consumer
        self.topic = topic
        self._orchestrator = orchestrator
        self.auto_ack = auto_ack
        self.on_batch_error = on_batch_error
        self._running = False
        self.deliveries_handled = 0

    def stop(self) -> None:
        self._running = False

    def run(self, max_messages: int | None = None) -> None:
        """Consume until stop() is called or ``max_messages`` were handled.

        Raises:
            BatchFailedError: a batch was rolled back under the 'exit' policy.
            KafkaException: the broker client reported a fatal error.
        """
        self._consumer.subscribe([self.topic])
        log.info("Waiting for messages on %s (auto_ack=%s)", self.topic, self.auto_ack)
        self._running = True
        try:
            while self._running:
                if max_messages is not None and self.deliveries_handled >= max_messages:
                    break
                msg = self._consumer.poll(POLL_TIMEOUT_SECONDS)
                if msg is None:
                    continue
                err = msg.error()
                if err is not None:
                    if err.code() == KafkaError._PARTITION_EOF:
                        log.debug("Reached end of partition %s", msg.partition())
                        continue
                    self._orchestrator.counters.broker_errors += 1
                    if err.fatal():
                        log.error("Fatal consumer error: %s", err)
                        raise KafkaException(err)
                    log.error("Consumer error: %s", err)
                    continue
                self._handle(msg)
        finally:
            self._running = False
            self._consumer.close()
            log.info("Consumer closed after %d deliveries", self.deliveries_handled)

    def _handle(self, msg: Any) -> None:
        outcome = self._orchestrator.process(msg.value() or b"")
        self.deliveries_handled += 1

        if outcome.failed:
            if self.on_batch_error == ON_ERROR_EXIT:
                raise BatchFailedError(outcome)
            log.warning(
                "Skipping rolled-back batch at %s[%s]@%s: %s",
                msg.topic(), msg.partition(), msg.offset(), outcome.error,
            )
        self._acknowledge(msg)

    def _acknowledge(self, msg: Any) -> None:
        if self.auto_ack:
            return
        try:
            self._consumer.commit(message=msg, asynchronous=False)
        except KafkaException as exc:
            # The batch is already durable; the delivery may be seen again.
            self._orchestrator.counters.broker_errors += 1
            log.error("Offset commit failed for offset %s: %s", msg.offset(), exc)


def open_consumer(cfg: MapperConfig) -> Consumer:
    if cfg.auto_ack:
        log.warning(
            "Automatic acknowledgment enabled: a crash mid-batch can lose that batch"
        )
    return Consumer(build_consumer_config(cfg))
