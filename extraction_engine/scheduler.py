from __future__ import annotations

from datetime import datetime, timedelta
from typing import Iterable, List, Optional, Sequence

from .catalog import priority_of
from .models import EndpointDef, EndpointStatus
from .storage.base import SyncStore
from .utils import now_utc


class EndpointScheduler:
    """Pick the next entity needing work for one connection.

    Order is the fixed catalog priority. Incomplete entities win; when all are
    complete, a stale entity still short of its remote total is re-opened.
    """

    def __init__(self, store: SyncStore, stale_after: timedelta = timedelta(minutes=30)) -> None:
        self.store = store
        self.stale_after = stale_after

    def statuses(self, connection_id: str, endpoints: Iterable[EndpointDef], now: Optional[datetime] = None) -> List[EndpointStatus]:
        now = now or now_utc()
        out: List[EndpointStatus] = []
        for ep in endpoints:
            progress = self.store.get_progress(connection_id, ep.slug)
            last_sync = progress.last_sync_at if progress else None
            age = (now - last_sync).total_seconds() / 60.0 if last_sync else None
            out.append(
                EndpointStatus(
                    endpoint=ep.slug,
                    priority=priority_of(ep.slug),
                    is_complete=bool(progress and progress.is_complete),
                    last_offset=progress.last_offset if progress else 0,
                    total_records=progress.total_records if progress else 0,
                    local_count=self.store.count_records(ep.table, connection_id),
                    last_sync_at=last_sync,
                    age_minutes=age,
                )
            )
        out.sort(key=lambda s: (s.priority, s.endpoint))
        return out

    def is_stale(self, status: EndpointStatus) -> bool:
        if status.age_minutes is None:
            return True
        return status.age_minutes >= self.stale_after.total_seconds() / 60.0

    def select(self, statuses: Sequence[EndpointStatus], exclude: Iterable[str] = ()) -> Optional[EndpointStatus]:
        skip = set(exclude)
        ordered = [s for s in sorted(statuses, key=lambda s: (s.priority, s.endpoint)) if s.endpoint not in skip]
        for s in ordered:
            if not s.is_complete:
                return s
        for s in ordered:
            if self.is_stale(s) and s.local_count < s.total_records:
                return s
        return None

    def next_pending(
        self,
        connection_id: str,
        endpoints: Iterable[EndpointDef],
        exclude: Iterable[str] = (),
        now: Optional[datetime] = None,
    ) -> Optional[EndpointStatus]:
        return self.select(self.statuses(connection_id, endpoints, now=now), exclude=exclude)
