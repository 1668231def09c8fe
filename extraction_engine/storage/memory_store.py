from __future__ import annotations

import copy
import threading
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Sequence, Set, Tuple
from uuid import uuid4

from ..models import (
    Connection,
    Document,
    ExtractionLog,
    ExtractionProgress,
    OrderDetailCandidate,
    OrderDetailRow,
)
from ..utils import now_utc
from .base import RecordRow


@dataclass
class StoredRecord:
    external_id: str
    data: Document
    created_at: datetime
    updated_at: datetime
    order_uid: str | None = None
    order_status: str | None = None
    details_synced_at: datetime | None = None


class MemoryStore:
    """In-process store with the same semantics as the PostgreSQL one.

    Used for dry runs and tests. Keyed on (connection_id, external_id) per
    table, so repeated upserts converge exactly like ``ON CONFLICT``.
    """

    def __init__(self) -> None:
        self._connections: Dict[str, Connection] = {}
        self._progress: Dict[Tuple[str, str], ExtractionProgress] = {}
        self._tables: Dict[str, Dict[Tuple[str, str], StoredRecord]] = {}
        self._logs: Dict[str, ExtractionLog] = {}
        self._locks: Set[Tuple[str, str]] = set()
        self._mutex = threading.Lock()

    # Connections

    def add_connection(self, connection: Connection) -> None:
        self._connections[connection.id] = connection

    def get_connection(self, connection_id: str) -> Optional[Connection]:
        conn = self._connections.get(connection_id)
        return replace(conn) if conn else None

    def list_connections(self, status: str = "active") -> List[Connection]:
        return [replace(c) for c in self._connections.values() if c.status == status]

    def record_connection_test(self, connection_id: str, success: bool, tested_at: datetime) -> None:
        conn = self._connections[connection_id]
        conn.last_test_at = tested_at
        conn.last_test_success = success
        conn.status = "active" if success else "error"

    def set_connection_status(self, connection_id: str, status: str) -> None:
        self._connections[connection_id].status = status

    # Progress

    def get_progress(self, connection_id: str, endpoint: str) -> Optional[ExtractionProgress]:
        p = self._progress.get((connection_id, endpoint))
        return replace(p) if p else None

    def save_progress(self, progress: ExtractionProgress) -> None:
        stored = replace(progress, updated_at=now_utc())
        self._progress[(progress.connection_id, progress.endpoint)] = stored

    def reset_progress(self, connection_id: str, endpoint: str) -> None:
        self._progress.pop((connection_id, endpoint), None)

    # Records

    def table(self, name: str) -> Dict[Tuple[str, str], StoredRecord]:
        return self._tables.setdefault(name, {})

    def records(self, table: str, connection_id: str) -> Dict[str, Document]:
        return {ext: r.data for (cid, ext), r in self.table(table).items() if cid == connection_id}

    def existing_external_ids(self, table: str, connection_id: str, external_ids: Sequence[str]) -> Set[str]:
        rows = self.table(table)
        return {ext for ext in external_ids if (connection_id, ext) in rows}

    def upsert_records(self, table: str, connection_id: str, rows: Sequence[RecordRow]) -> None:
        with self._mutex:
            target = self.table(table)
            now = now_utc()
            for external_id, data in rows:
                key = (connection_id, external_id)
                existing = target.get(key)
                if existing:
                    existing.data = copy.deepcopy(data)
                    existing.updated_at = now
                else:
                    target[key] = StoredRecord(external_id=external_id, data=copy.deepcopy(data), created_at=now, updated_at=now)

    def count_records(self, table: str, connection_id: str) -> int:
        return sum(1 for (cid, _) in self.table(table) if cid == connection_id)

    # Order details

    def list_detail_candidates(
        self,
        connection_id: str,
        parent_table: str,
        detail_table: str,
        key_field: str,
        status_field: str,
    ) -> List[OrderDetailCandidate]:
        synced = {r.order_uid: r.details_synced_at for (cid, _), r in self.table(detail_table).items() if cid == connection_id}
        out: List[OrderDetailCandidate] = []
        for (cid, _), rec in self.table(parent_table).items():
            if cid != connection_id:
                continue
            key = rec.data.get(key_field)
            if key is None:
                continue
            status = rec.data.get(status_field)
            out.append(
                OrderDetailCandidate(
                    parent_key=str(key),
                    parent_status=str(status) if status is not None else None,
                    details_synced_at=synced.get(str(key)),
                )
            )
        return out

    def upsert_order_details(self, table: str, connection_id: str, rows: Iterable[OrderDetailRow]) -> None:
        with self._mutex:
            target = self.table(table)
            now = now_utc()
            for row in rows:
                key = (connection_id, row.external_id)
                existing = target.get(key)
                created_at = existing.created_at if existing else now
                target[key] = StoredRecord(
                    external_id=row.external_id,
                    data=copy.deepcopy(row.data),
                    created_at=created_at,
                    updated_at=now,
                    order_uid=row.order_uid,
                    order_status=row.order_status,
                    details_synced_at=now,
                )

    # Audit log

    def start_log(self, connection_id: str, endpoint: str) -> ExtractionLog:
        log = ExtractionLog(id=str(uuid4()), connection_id=connection_id, endpoint=endpoint, started_at=now_utc())
        self._logs[log.id] = log
        return replace(log)

    def update_log(self, log: ExtractionLog) -> None:
        self._logs[log.id] = replace(log)

    def logs(self, connection_id: str | None = None) -> List[ExtractionLog]:
        return [replace(log) for log in self._logs.values() if connection_id is None or log.connection_id == connection_id]

    # Overlap guard

    def try_lock(self, connection_id: str, endpoint: str) -> bool:
        with self._mutex:
            key = (connection_id, endpoint)
            if key in self._locks:
                return False
            self._locks.add(key)
            return True

    def release_lock(self, connection_id: str, endpoint: str) -> None:
        with self._mutex:
            self._locks.discard((connection_id, endpoint))
