"""dataset_mapper.cli

Process entrypoint for the mapper service.

Modes (--mode):
  resolve  messages carry stableId; file ids are looked up in the
           reference store (DB_IN_CONNECTION) before insertion (default)
  direct   messages carry fileId; no reference store is used

Usage (resolve):
    DB_IN_CONNECTION="postgresql://lega_in@db/lega" \\
    DB_OUT_CONNECTION="postgresql://lega_out@db/lega" \\
    MQ_CONNECTION="broker:9093" \\
    python -m dataset_mapper.cli --mode resolve

Usage (direct, broker without TLS):
    python -m dataset_mapper.cli --mode direct \\
        --db-out-dsn "$DB_OUT_CONNECTION" \\
        --mq-connection "$MQ_CONNECTION" \\
        --no-mq-tls
"""

from __future__ import annotations

import logging
import signal
import sys
import uuid
from datetime import datetime

import click
import psycopg
from confluent_kafka import KafkaException

from dataset_mapper.config import (
    DEFAULT_GROUP_ID,
    DEFAULT_QUEUE_NAME,
    ON_ERROR_EXIT,
    VALID_ON_ERROR,
    ConfigError,
    MapperConfig,
)
from dataset_mapper.consume import BatchFailedError, QueueConsumer, open_consumer
from dataset_mapper.decode import MODE_RESOLVE, VALID_MODES
from dataset_mapper.orchestrate import BatchOrchestrator
from dataset_mapper.resolve import ReferenceResolver
from dataset_mapper.shared import RunCounters, build_run_report, write_run_report
from dataset_mapper.writer import TransactionalWriter

log = logging.getLogger(__name__)


@click.command()
@click.option(
    "--mode",
    default=MODE_RESOLVE,
    type=click.Choice(list(VALID_MODES)),
    envvar="MAPPER_MODE",
    show_default=True,
    help="resolve: look up stableId; direct: messages already carry fileId",
)
@click.option("--db-out-dsn", envvar="DB_OUT_CONNECTION", default=None, help="Write-store PostgreSQL DSN")
@click.option("--db-in-dsn", envvar="DB_IN_CONNECTION", default=None, help="[resolve] Reference-store PostgreSQL DSN")
@click.option("--mq-connection", envvar="MQ_CONNECTION", default=None, help="Broker bootstrap servers")
@click.option("--queue-name", envvar="QUEUE_NAME", default=DEFAULT_QUEUE_NAME, show_default=True)
@click.option("--group-id", envvar="MQ_GROUP_ID", default=DEFAULT_GROUP_ID, show_default=True)
@click.option("--mq-tls/--no-mq-tls", envvar="MQ_TLS", default=True, show_default=True, help="Connect to the broker over TLS")
@click.option(
    "--verify-cert/--no-verify-cert",
    envvar="VERIFY_CERT",
    default=True,
    show_default=True,
    help="Verify the broker TLS certificate; disabling accepts any certificate",
)
@click.option("--ca-location", envvar="MQ_CA_LOCATION", default=None, type=click.Path(), help="CA bundle for broker TLS")
@click.option(
    "--auto-ack/--no-auto-ack",
    envvar="MQ_AUTO_ACK",
    default=False,
    show_default=True,
    help="Let the broker client acknowledge on its own schedule (a crash can lose a batch)",
)
@click.option(
    "--on-batch-error",
    envvar="ON_BATCH_ERROR",
    default=ON_ERROR_EXIT,
    type=click.Choice(list(VALID_ON_ERROR)),
    show_default=True,
    help="exit: stop the service on a rolled-back batch; skip: log and continue",
)
@click.option("--max-messages", default=None, type=int, help="Stop after this many deliveries (for testing)")
@click.option("--run-id", default=None, help="Override UUID for log correlation")
@click.option(
    "--log-level",
    envvar="LOG_LEVEL",
    default="INFO",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    show_default=True,
)
def main(
    mode: str,
    db_out_dsn: str | None,
    db_in_dsn: str | None,
    mq_connection: str | None,
    queue_name: str,
    group_id: str,
    mq_tls: bool,
    verify_cert: bool,
    ca_location: str | None,
    auto_ack: bool,
    on_batch_error: str,
    max_messages: int | None,
    run_id: str | None,
    log_level: str,
) -> None:
    """Consume dataset mapping batches and store them in local_ega_ebi.filedataset."""
    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    run_id = run_id or str(uuid.uuid4())
    started_at = datetime.utcnow().isoformat()

    cfg = MapperConfig(
        db_out_dsn=db_out_dsn or "",
        mq_connection=mq_connection or "",
        mode=mode,
        db_in_dsn=db_in_dsn,
        queue_name=queue_name,
        group_id=group_id,
        mq_tls=mq_tls,
        verify_cert=verify_cert,
        ca_location=ca_location,
        auto_ack=auto_ack,
        on_batch_error=on_batch_error,
    )
    try:
        cfg.validate()
    except ConfigError as exc:
        click.echo(f"[{run_id}] FATAL: {exc}", err=True)
        sys.exit(1)

    click.echo(
        f"[{run_id}] Starting mapper (mode={mode}, queue={queue_name}, "
        f"auto_ack={auto_ack}, on_batch_error={on_batch_error})"
    )

    counters = RunCounters()
    failed = False
    db_in: psycopg.Connection | None = None
    db_out: psycopg.Connection | None = None
    try:
        try:
            db_out = psycopg.connect(cfg.db_out_dsn, autocommit=False)
            if cfg.mode == MODE_RESOLVE:
                db_in = psycopg.connect(cfg.db_in_dsn, autocommit=True)
        except psycopg.Error as exc:
            click.echo(f"[{run_id}] FATAL: Failed to connect to DB: {exc}", err=True)
            sys.exit(1)

        orchestrator = BatchOrchestrator(
            mode=cfg.mode,
            writer=TransactionalWriter(db_out),
            resolver=ReferenceResolver(db_in) if db_in is not None else None,
            counters=counters,
        )

        try:
            kafka_consumer = open_consumer(cfg)
        except KafkaException as exc:
            click.echo(f"[{run_id}] FATAL: Failed to connect to broker: {exc}", err=True)
            sys.exit(1)

        consumer = QueueConsumer(
            kafka_consumer,
            cfg.queue_name,
            orchestrator,
            auto_ack=cfg.auto_ack,
            on_batch_error=cfg.on_batch_error,
        )
        _install_signal_handlers(consumer)
        click.echo(f"[{run_id}] Waiting for messages. To exit press CTRL+C")

        try:
            consumer.run(max_messages=max_messages)
        except BatchFailedError as exc:
            click.echo(f"[{run_id}] FATAL: {exc}", err=True)
            failed = True
        except KafkaException as exc:
            click.echo(f"[{run_id}] FATAL: Broker connection lost: {exc}", err=True)
            failed = True
    finally:
        for conn in (db_in, db_out):
            if conn is not None and not conn.closed:
                conn.close()

    click.echo(build_run_report(counters, mode))
    report_path = write_run_report(
        run_id, started_at, mode,
        {"queue_name": queue_name, "group_id": group_id},
        counters,
    )
    click.echo(f"[{run_id}] Run report: {report_path}")

    if failed:
        sys.exit(1)


def _install_signal_handlers(consumer: QueueConsumer) -> None:
    def _stop(signum, _frame) -> None:
        log.info("Received signal %s; stopping after the current delivery", signum)
        consumer.stop()

    signal.signal(signal.SIGTERM, _stop)
    signal.signal(signal.SIGINT, _stop)


if __name__ == "__main__":
    main()
