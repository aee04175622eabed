"""Database helpers for preparing the Supabase/Postgres session tables."""

from __future__ import annotations

import logging
import os
from typing import Optional

import psycopg2
from psycopg2.extensions import connection as PGConnection

_LOGGER = logging.getLogger(__name__)

SESSION_RECORDS_TABLE = "session_records"


def get_connection(dsn: Optional[str] = None) -> PGConnection:
    """Return a new database connection using the configured DSN."""

    connection_dsn = dsn or os.getenv("SUPABASE_DB_URL") or os.getenv("DATABASE_URL")
    if not connection_dsn:
        raise RuntimeError("No database DSN configured via SUPABASE_DB_URL or DATABASE_URL")
    return psycopg2.connect(connection_dsn)


def ensure_session_records_table(connection: PGConnection) -> None:
    """Create the shared session records table and its lookup index.

    ``seq`` is assigned on insert and orders records that share a
    ``created_at`` value by arrival.
    """

    with connection.cursor() as cursor:
        cursor.execute(
            f"""
            CREATE TABLE IF NOT EXISTS {SESSION_RECORDS_TABLE} (
                id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
                seq BIGINT GENERATED ALWAYS AS IDENTITY,
                namespace TEXT NOT NULL,
                session_id TEXT NOT NULL,
                kind TEXT NOT NULL,
                payload JSONB NOT NULL DEFAULT '{{}}'::jsonb,
                created_at TIMESTAMPTZ,
                version INTEGER NOT NULL DEFAULT 1
            )
            """
        )
        cursor.execute(
            f"""
            ALTER TABLE {SESSION_RECORDS_TABLE}
            ADD COLUMN IF NOT EXISTS seq BIGINT GENERATED ALWAYS AS IDENTITY
            """
        )
        cursor.execute(
            f"""
            CREATE INDEX IF NOT EXISTS {SESSION_RECORDS_TABLE}_scope_idx
            ON {SESSION_RECORDS_TABLE} (namespace, session_id, kind, created_at, seq)
            """
        )
    connection.commit()


def prepare_database(dsn: Optional[str] = None) -> None:
    """Open a connection, create the session tables and close it again."""

    connection = get_connection(dsn)
    try:
        ensure_session_records_table(connection)
        _LOGGER.info("Session tables are ready")
    finally:
        connection.close()


__all__ = [
    "SESSION_RECORDS_TABLE",
    "ensure_session_records_table",
    "get_connection",
    "prepare_database",
]
