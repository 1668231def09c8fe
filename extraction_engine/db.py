from __future__ import annotations

from contextlib import contextmanager
from typing import Any, Iterator, Optional, Sequence

import psycopg


@contextmanager
def connect(dsn: str, autocommit: bool = True) -> Iterator[psycopg.Connection]:
    """Open a psycopg connection.

    Autocommit is the default so every checkpoint write is durable on its own;
    multi-statement writes open explicit ``conn.transaction()`` blocks.
    """
    conn = psycopg.connect(dsn, autocommit=autocommit)
    try:
        yield conn
        if not autocommit:
            conn.commit()
    except Exception:
        if not autocommit:
            conn.rollback()
        raise
    finally:
        conn.close()


def execute(conn: Any, sql: Any, params: Sequence[Any] | dict | None = None) -> None:
    with conn.cursor() as cur:
        cur.execute(sql, params)


def executemany(conn: Any, sql: Any, params_seq: Sequence[Sequence[Any]]) -> None:
    with conn.cursor() as cur:
        cur.executemany(sql, params_seq)


def fetchone(conn: Any, sql: Any, params: Sequence[Any] | dict | None = None) -> Optional[tuple]:
    with conn.cursor() as cur:
        cur.execute(sql, params)
        return cur.fetchone()


def fetchall(conn: Any, sql: Any, params: Sequence[Any] | dict | None = None) -> list[tuple]:
    with conn.cursor() as cur:
        cur.execute(sql, params)
        return cur.fetchall()
