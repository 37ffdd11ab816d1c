"""dataset_mapper.config

Runtime configuration for the mapper service and the broker client
settings derived from it.

Every field is normally filled from the CLI, which reads the environment
(DB_OUT_CONNECTION, DB_IN_CONNECTION, MQ_CONNECTION, QUEUE_NAME,
VERIFY_CERT, ...).  Broker TLS certificate verification is on unless it is
explicitly disabled.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from dataset_mapper.decode import MODE_RESOLVE, VALID_MODES
from dataset_mapper.shared import MapperError

log = logging.getLogger(__name__)

DEFAULT_QUEUE_NAME = "mappings"
DEFAULT_GROUP_ID = "mapper"

ON_ERROR_EXIT = "exit"
ON_ERROR_SKIP = "skip"
VALID_ON_ERROR = (ON_ERROR_EXIT, ON_ERROR_SKIP)


class ConfigError(MapperError):
    """Raised when the supplied configuration cannot run the service."""


@dataclass
class MapperConfig:
    db_out_dsn: str
    mq_connection: str
    mode: str = MODE_RESOLVE
    db_in_dsn: str | None = None
    queue_name: str = DEFAULT_QUEUE_NAME
    group_id: str = DEFAULT_GROUP_ID
    mq_tls: bool = True
    verify_cert: bool = True
    ca_location: str | None = None
    auto_ack: bool = False
    on_batch_error: str = ON_ERROR_EXIT

    def validate(self) -> None:
        if self.mode not in VALID_MODES:
            raise ConfigError(f"unknown mode {self.mode!r}")
        missing = []
        if not self.db_out_dsn:
            missing.append("--db-out-dsn (DB_OUT_CONNECTION)")
        if not self.mq_connection:
            missing.append("--mq-connection (MQ_CONNECTION)")
        if self.mode == MODE_RESOLVE and not self.db_in_dsn:
            missing.append("--db-in-dsn (DB_IN_CONNECTION)")
        if missing:
            raise ConfigError(f"{self.mode} mode requires: {', '.join(missing)}")
        if self.on_batch_error not in VALID_ON_ERROR:
            raise ConfigError(f"unknown batch error policy {self.on_batch_error!r}")
        if not self.queue_name:
            raise ConfigError("queue name must not be empty")


def build_consumer_config(cfg: MapperConfig) -> dict[str, Any]:
    """confluent-kafka Consumer settings for ``cfg``.

    Explicit acknowledgment disables the client's periodic offset commits;
    the consumer then commits each offset only after its batch was handled.
    """
    config: dict[str, Any] = {
        "bootstrap.servers": cfg.mq_connection,
        "group.id": cfg.group_id,
        "client.id": f"{cfg.group_id}-consumer",
        "enable.auto.commit": cfg.auto_ack,
        "auto.offset.reset": "earliest",
        "max.poll.interval.ms": 300000,
        "session.timeout.ms": 45000,
    }
    if cfg.mq_tls:
        config["security.protocol"] = "SSL"
        config.update(build_tls_config(cfg.verify_cert, cfg.ca_location))
    return config


def build_tls_config(verify_cert: bool, ca_location: str | None = None) -> dict[str, Any]:
    if not verify_cert:
        log.warning(
            "Broker TLS certificate verification is DISABLED; "
            "any certificate the broker presents will be accepted"
        )
        return {
            "enable.ssl.certificate.verification": False,
            "ssl.endpoint.identification.algorithm": "none",
        }
    tls: dict[str, Any] = {
        "enable.ssl.certificate.verification": True,
        "ssl.endpoint.identification.algorithm": "https",
    }
    if ca_location:
        tls["ssl.ca.location"] = ca_location
    return tls
