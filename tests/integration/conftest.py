"""Integration test fixtures.

Applies the reference and write-store schema against an ephemeral
PostgreSQL database provided by pytest-postgresql before each test.
"""

from __future__ import annotations

from pathlib import Path

import psycopg
import pytest
from pytest_postgresql import factories

# ---------------------------------------------------------------------------
# Paths
# ---------------------------------------------------------------------------

SCHEMA_DIR = Path(__file__).parent / "schema"
SCHEMA_FILES = [
    SCHEMA_DIR / "0001_reference_files.sql",
    SCHEMA_DIR / "0002_filedataset.sql",
]

# ---------------------------------------------------------------------------
# pytest-postgresql process fixture
# ---------------------------------------------------------------------------

postgresql_proc = factories.postgresql_proc()
postgresql = factories.postgresql("postgresql_proc")


# ---------------------------------------------------------------------------
# Schema fixture
# ---------------------------------------------------------------------------

@pytest.fixture(scope="function")
def db_dsn(postgresql):
    """Return a DSN for a database with the schema applied.

    Function scope gives every test a fresh database.
    """
    dsn = (
        f"host={postgresql.info.host} "
        f"port={postgresql.info.port} "
        f"dbname={postgresql.info.dbname} "
        f"user={postgresql.info.user} "
        f"password={postgresql.info.password or ''}"
    )
    with psycopg.connect(dsn, autocommit=True) as conn:
        for schema_file in SCHEMA_FILES:
            conn.execute(schema_file.read_text(encoding="utf-8"))
    return dsn


@pytest.fixture
def write_conn(db_dsn):
    conn = psycopg.connect(db_dsn, autocommit=False)
    try:
        yield conn
    finally:
        conn.close()


@pytest.fixture
def reference_conn(db_dsn):
    conn = psycopg.connect(db_dsn, autocommit=True)
    try:
        yield conn
    finally:
        conn.close()


@pytest.fixture
def observer_conn(db_dsn):
    """A separate session used to check what other transactions can see."""
    conn = psycopg.connect(db_dsn, autocommit=True)
    try:
        yield conn
    finally:
        conn.close()


@pytest.fixture
def files(reference_conn):
    """Seed local_ega.files and return {stable_id: id}."""
    ids = {}
    for stable_id in ("EGAF001", "EGAF002", "EGAF003", "EGAF004", "EGAF005", "EGAF006"):
        row = reference_conn.execute(
            "INSERT INTO local_ega.files (stable_id) VALUES (%s) RETURNING id",
            (stable_id,),
        ).fetchone()
        ids[stable_id] = row[0]
    return ids
