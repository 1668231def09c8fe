from __future__ import annotations

from datetime import datetime
from typing import Iterable, List, Optional, Protocol, Sequence, Set, Tuple

from ..models import (
    Connection,
    Document,
    ExtractionLog,
    ExtractionProgress,
    OrderDetailCandidate,
    OrderDetailRow,
)

# (external_id, payload)
RecordRow = Tuple[str, Document]


class SyncStore(Protocol):
    # Connections
    def get_connection(self, connection_id: str) -> Optional[Connection]: ...

    def list_connections(self, status: str = "active") -> List[Connection]: ...

    def record_connection_test(self, connection_id: str, success: bool, tested_at: datetime) -> None: ...

    def set_connection_status(self, connection_id: str, status: str) -> None: ...

    # Progress (checkpoints)
    def get_progress(self, connection_id: str, endpoint: str) -> Optional[ExtractionProgress]: ...

    def save_progress(self, progress: ExtractionProgress) -> None: ...

    def reset_progress(self, connection_id: str, endpoint: str) -> None: ...

    # Synced records
    def existing_external_ids(self, table: str, connection_id: str, external_ids: Sequence[str]) -> Set[str]: ...

    def upsert_records(self, table: str, connection_id: str, rows: Sequence[RecordRow]) -> None: ...

    def count_records(self, table: str, connection_id: str) -> int: ...

    # Order details
    def list_detail_candidates(
        self,
        connection_id: str,
        parent_table: str,
        detail_table: str,
        key_field: str,
        status_field: str,
    ) -> List[OrderDetailCandidate]: ...

    def upsert_order_details(self, table: str, connection_id: str, rows: Iterable[OrderDetailRow]) -> None: ...

    # Audit log
    def start_log(self, connection_id: str, endpoint: str) -> ExtractionLog: ...

    def update_log(self, log: ExtractionLog) -> None: ...

    # Overlap guard
    def try_lock(self, connection_id: str, endpoint: str) -> bool: ...

    def release_lock(self, connection_id: str, endpoint: str) -> None: ...
