from __future__ import annotations

import json
import re
from datetime import datetime
from typing import Any, Iterable, List, Optional, Sequence, Set
from uuid import uuid4

import psycopg
from psycopg import sql

from ..db import execute, executemany, fetchall, fetchone
from ..exceptions import ConfigurationError, StoreWriteError
from ..models import Connection, ExtractionLog, ExtractionProgress, OrderDetailCandidate, OrderDetailRow
from .base import RecordRow

_TABLE_NAME = re.compile(r"^[a-z_][a-z0-9_]*$")

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS api_connections (
  id TEXT PRIMARY KEY,
  provider TEXT NOT NULL,
  name TEXT NOT NULL,
  credentials JSONB NOT NULL DEFAULT '{}'::jsonb,
  environment TEXT NOT NULL DEFAULT 'production',
  status TEXT NOT NULL DEFAULT 'active',
  last_test_at TIMESTAMPTZ,
  last_test_success BOOLEAN,
  created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
  updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
);

CREATE TABLE IF NOT EXISTS extraction_progress (
  connection_id TEXT NOT NULL REFERENCES api_connections(id) ON DELETE CASCADE,
  endpoint TEXT NOT NULL,
  last_offset INTEGER NOT NULL DEFAULT 0,
  is_complete BOOLEAN NOT NULL DEFAULT false,
  total_records INTEGER NOT NULL DEFAULT 0,
  last_sync_at TIMESTAMPTZ,
  next_sync_at TIMESTAMPTZ,
  updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
  PRIMARY KEY (connection_id, endpoint)
);

CREATE TABLE IF NOT EXISTS extraction_logs (
  id TEXT PRIMARY KEY,
  connection_id TEXT NOT NULL REFERENCES api_connections(id) ON DELETE CASCADE,
  endpoint TEXT NOT NULL,
  status TEXT NOT NULL DEFAULT 'running',
  records_processed INTEGER NOT NULL DEFAULT 0,
  records_created INTEGER NOT NULL DEFAULT 0,
  records_updated INTEGER NOT NULL DEFAULT 0,
  duration_ms INTEGER,
  error_message TEXT,
  started_at TIMESTAMPTZ NOT NULL DEFAULT now(),
  finished_at TIMESTAMPTZ
);
"""

ENTITY_TABLE_SQL = """
CREATE TABLE IF NOT EXISTS {table} (
  id BIGSERIAL PRIMARY KEY,
  connection_id TEXT NOT NULL REFERENCES api_connections(id) ON DELETE CASCADE,
  external_id TEXT NOT NULL,
  data JSONB NOT NULL DEFAULT '{{}}'::jsonb,
  created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
  updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
  UNIQUE (connection_id, external_id)
)
"""

ORDER_DETAILS_TABLE_SQL = """
CREATE TABLE IF NOT EXISTS {table} (
  id BIGSERIAL PRIMARY KEY,
  connection_id TEXT NOT NULL REFERENCES api_connections(id) ON DELETE CASCADE,
  external_id TEXT NOT NULL,
  order_uid TEXT,
  order_status TEXT,
  data JSONB NOT NULL DEFAULT '{{}}'::jsonb,
  details_synced_at TIMESTAMPTZ DEFAULT now(),
  created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
  updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
  UNIQUE (connection_id, external_id)
)
"""

SQL_GET_CONNECTION = """
SELECT id, provider, name, credentials->>'token', environment, status, last_test_at, last_test_success
FROM api_connections
WHERE id = %s
"""

SQL_LIST_CONNECTIONS = """
SELECT id, provider, name, credentials->>'token', environment, status, last_test_at, last_test_success
FROM api_connections
WHERE status = %s
ORDER BY created_at
"""

SQL_RECORD_TEST = """
UPDATE api_connections
SET last_test_at = %s,
    last_test_success = %s,
    status = CASE WHEN %s THEN 'active' ELSE 'error' END,
    updated_at = now()
WHERE id = %s
"""

SQL_SET_STATUS = """
UPDATE api_connections SET status = %s, updated_at = now() WHERE id = %s
"""

SQL_GET_PROGRESS = """
SELECT last_offset, is_complete, total_records, last_sync_at, next_sync_at, updated_at
FROM extraction_progress
WHERE connection_id = %s AND endpoint = %s
"""

SQL_UPSERT_PROGRESS = """
INSERT INTO extraction_progress (connection_id, endpoint, last_offset, is_complete, total_records, last_sync_at, next_sync_at, updated_at)
VALUES (%s, %s, %s, %s, %s, %s, %s, now())
ON CONFLICT (connection_id, endpoint)
DO UPDATE SET
  last_offset = EXCLUDED.last_offset,
  is_complete = EXCLUDED.is_complete,
  total_records = EXCLUDED.total_records,
  last_sync_at = EXCLUDED.last_sync_at,
  next_sync_at = EXCLUDED.next_sync_at,
  updated_at = now()
"""

SQL_RESET_PROGRESS = """
DELETE FROM extraction_progress WHERE connection_id = %s AND endpoint = %s
"""

SQL_START_LOG = """
INSERT INTO extraction_logs (id, connection_id, endpoint, status, started_at)
VALUES (%s, %s, %s, 'running', now())
RETURNING started_at
"""

SQL_UPDATE_LOG = """
UPDATE extraction_logs
SET status = %s,
    records_processed = %s,
    records_created = %s,
    records_updated = %s,
    duration_ms = %s,
    error_message = %s,
    finished_at = %s
WHERE id = %s
"""

SQL_TRY_LOCK = "SELECT pg_try_advisory_lock(hashtext(%s))"
SQL_UNLOCK = "SELECT pg_advisory_unlock(hashtext(%s))"


def _ident(table: str) -> sql.Identifier:
    if not _TABLE_NAME.match(table):
        raise ConfigurationError(f"Invalid table name: {table!r}")
    return sql.Identifier(table)


def _lock_key(connection_id: str, endpoint: str) -> str:
    return f"extraction:{connection_id}:{endpoint}"


def _connection_from_row(row: tuple) -> Connection:
    cid, provider, name, token, environment, status, last_test_at, last_test_success = row
    return Connection(
        id=str(cid),
        provider=provider,
        name=name,
        token=token,
        environment=environment,
        status=status,
        last_test_at=last_test_at,
        last_test_success=last_test_success,
    )


class PostgresStore:
    """SyncStore backed by PostgreSQL (psycopg 3).

    Expects an autocommit connection: each checkpoint write stands alone,
    batch writes run inside their own transaction.
    """

    def __init__(self, conn: psycopg.Connection) -> None:
        self.conn = conn

    def ensure_schema(self, entity_tables: Iterable[str], order_details_table: str | None = None) -> None:
        with self.conn.transaction():
            execute(self.conn, SCHEMA_SQL)
            for table in entity_tables:
                execute(self.conn, sql.SQL(ENTITY_TABLE_SQL).format(table=_ident(table)))
            if order_details_table:
                execute(self.conn, sql.SQL(ORDER_DETAILS_TABLE_SQL).format(table=_ident(order_details_table)))

    # Connections

    def get_connection(self, connection_id: str) -> Optional[Connection]:
        row = fetchone(self.conn, SQL_GET_CONNECTION, (connection_id,))
        return _connection_from_row(row) if row else None

    def list_connections(self, status: str = "active") -> List[Connection]:
        return [_connection_from_row(r) for r in fetchall(self.conn, SQL_LIST_CONNECTIONS, (status,))]

    def record_connection_test(self, connection_id: str, success: bool, tested_at: datetime) -> None:
        execute(self.conn, SQL_RECORD_TEST, (tested_at, success, success, connection_id))

    def set_connection_status(self, connection_id: str, status: str) -> None:
        execute(self.conn, SQL_SET_STATUS, (status, connection_id))

    # Progress

    def get_progress(self, connection_id: str, endpoint: str) -> Optional[ExtractionProgress]:
        row = fetchone(self.conn, SQL_GET_PROGRESS, (connection_id, endpoint))
        if not row:
            return None
        last_offset, is_complete, total_records, last_sync_at, next_sync_at, updated_at = row
        return ExtractionProgress(
            connection_id=connection_id,
            endpoint=endpoint,
            last_offset=last_offset,
            is_complete=is_complete,
            total_records=total_records,
            last_sync_at=last_sync_at,
            next_sync_at=next_sync_at,
            updated_at=updated_at,
        )

    def save_progress(self, progress: ExtractionProgress) -> None:
        execute(
            self.conn,
            SQL_UPSERT_PROGRESS,
            (
                progress.connection_id,
                progress.endpoint,
                progress.last_offset,
                progress.is_complete,
                progress.total_records,
                progress.last_sync_at,
                progress.next_sync_at,
            ),
        )

    def reset_progress(self, connection_id: str, endpoint: str) -> None:
        execute(self.conn, SQL_RESET_PROGRESS, (connection_id, endpoint))

    # Records

    def existing_external_ids(self, table: str, connection_id: str, external_ids: Sequence[str]) -> Set[str]:
        if not external_ids:
            return set()
        q = sql.SQL("SELECT external_id FROM {} WHERE connection_id = %s AND external_id = ANY(%s)").format(_ident(table))
        try:
            rows = fetchall(self.conn, q, (connection_id, list(external_ids)))
        except psycopg.Error as e:
            raise StoreWriteError(f"Lookup in {table} failed: {e}") from e
        return {r[0] for r in rows}

    def upsert_records(self, table: str, connection_id: str, rows: Sequence[RecordRow]) -> None:
        if not rows:
            return
        q = sql.SQL(
            """
            INSERT INTO {} (connection_id, external_id, data, created_at, updated_at)
            VALUES (%s, %s, %s::jsonb, now(), now())
            ON CONFLICT (connection_id, external_id)
            DO UPDATE SET data = EXCLUDED.data, updated_at = now()
            """
        ).format(_ident(table))
        params = [(connection_id, ext, json.dumps(data, ensure_ascii=False, default=str)) for ext, data in rows]
        self._write(q, params, table)

    def count_records(self, table: str, connection_id: str) -> int:
        q = sql.SQL("SELECT count(*) FROM {} WHERE connection_id = %s").format(_ident(table))
        row = fetchone(self.conn, q, (connection_id,))
        return int(row[0]) if row else 0

    # Order details

    def list_detail_candidates(
        self,
        connection_id: str,
        parent_table: str,
        detail_table: str,
        key_field: str,
        status_field: str,
    ) -> List[OrderDetailCandidate]:
        q = sql.SQL(
            """
            SELECT o.data->>%(key)s, o.data->>%(status)s, d.details_synced_at
            FROM {parent} o
            LEFT JOIN {detail} d
              ON d.connection_id = o.connection_id AND d.order_uid = o.data->>%(key)s
            WHERE o.connection_id = %(cid)s AND o.data->>%(key)s IS NOT NULL
            """
        ).format(parent=_ident(parent_table), detail=_ident(detail_table))
        rows = fetchall(self.conn, q, {"key": key_field, "status": status_field, "cid": connection_id})
        return [OrderDetailCandidate(parent_key=k, parent_status=s, details_synced_at=t) for k, s, t in rows]

    def upsert_order_details(self, table: str, connection_id: str, rows: Iterable[OrderDetailRow]) -> None:
        params = [
            (connection_id, r.external_id, r.order_uid, r.order_status, json.dumps(r.data, ensure_ascii=False, default=str))
            for r in rows
        ]
        if not params:
            return
        q = sql.SQL(
            """
            INSERT INTO {} (connection_id, external_id, order_uid, order_status, data, details_synced_at, created_at, updated_at)
            VALUES (%s, %s, %s, %s, %s::jsonb, now(), now(), now())
            ON CONFLICT (connection_id, external_id)
            DO UPDATE SET
              order_uid = EXCLUDED.order_uid,
              order_status = EXCLUDED.order_status,
              data = EXCLUDED.data,
              details_synced_at = now(),
              updated_at = now()
            """
        ).format(_ident(table))
        self._write(q, params, table)

    # Audit log

    def start_log(self, connection_id: str, endpoint: str) -> ExtractionLog:
        log_id = str(uuid4())
        row = fetchone(self.conn, SQL_START_LOG, (log_id, connection_id, endpoint))
        return ExtractionLog(id=log_id, connection_id=connection_id, endpoint=endpoint, started_at=row[0] if row else None)

    def update_log(self, log: ExtractionLog) -> None:
        execute(
            self.conn,
            SQL_UPDATE_LOG,
            (
                log.status,
                log.records_processed,
                log.records_created,
                log.records_updated,
                log.duration_ms,
                log.error_message,
                log.finished_at,
                log.id,
            ),
        )

    # Overlap guard

    def try_lock(self, connection_id: str, endpoint: str) -> bool:
        row = fetchone(self.conn, SQL_TRY_LOCK, (_lock_key(connection_id, endpoint),))
        return bool(row and row[0])

    def release_lock(self, connection_id: str, endpoint: str) -> None:
        execute(self.conn, SQL_UNLOCK, (_lock_key(connection_id, endpoint),))

    def _write(self, query: Any, params: List[tuple], table: str) -> None:
        try:
            with self.conn.transaction():
                executemany(self.conn, query, params)
        except psycopg.Error as e:
            raise StoreWriteError(f"Upsert into {table} failed: {e}") from e
