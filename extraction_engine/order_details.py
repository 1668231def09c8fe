from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Tuple

import requests

from .catalog import OrderDetailPolicy, ORDER_DETAILS
from .config import Settings
from .deadline import Deadline
from .exceptions import ExtractionError, RemoteHTTPError, StoreWriteError
from .fetcher import PaginatedFetcher
from .identity import IdentityStrategy
from .logging_utils import get_logger, log_json
from .models import BatchResult, Document, EndpointDef, OrderDetailCandidate, OrderDetailRow
from .storage.base import SyncStore
from .utils import chunked, now_utc

TIER_ACTIVE = "active"
TIER_SETTLED = "settled"
TIER_TERMINAL = "terminal"
TIER_RANK = {TIER_ACTIVE: 0, TIER_SETTLED: 1, TIER_TERMINAL: 2}


@dataclass
class DetailRunResult:
    counts: BatchResult = field(default_factory=BatchResult)
    parents: int = 0
    due: int = 0
    attempted: int = 0
    is_complete: bool = False
    # Set when the credential was rejected; the run stops after the current chunk.
    auth_error: str | None = None


class OrderDetailSyncer:
    """Fetch one detail document per stored parent order.

    Parents are re-fetched by status tier: active ones after a short delay,
    settled ones after a long one, terminal ones only if never fetched.
    Fetches fan out ``concurrency`` at a time; each chunk is awaited in full
    before the next starts.
    """

    def __init__(
        self,
        store: SyncStore,
        fetcher: PaginatedFetcher,
        connection_id: str,
        endpoint: EndpointDef,
        parent: EndpointDef,
        settings: Settings,
        policy: OrderDetailPolicy = ORDER_DETAILS,
        logger: Optional[logging.Logger] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.store = store
        self.fetcher = fetcher
        self.connection_id = connection_id
        self.endpoint = endpoint
        self.parent = parent
        self.policy = policy
        self.concurrency = max(settings.detail_concurrency, 1)
        self.pause_sec = settings.detail_chunk_pause_sec
        self.max_per_run = settings.detail_max_per_run
        self.active_stale = timedelta(minutes=settings.detail_active_stale_minutes)
        self.settled_stale = timedelta(minutes=settings.detail_settled_stale_minutes)
        self.identity = IdentityStrategy(endpoint.id_fields)
        self.logger = logger or get_logger()
        self.sleep = sleep

    def tier_of(self, status: str | None) -> str:
        s = (status or "").strip().lower()
        if s in self.policy.terminal_statuses:
            return TIER_TERMINAL
        if s in self.policy.settled_statuses:
            return TIER_SETTLED
        # Unknown statuses are treated as still moving.
        return TIER_ACTIVE

    def is_due(self, candidate: OrderDetailCandidate, now: datetime) -> bool:
        if candidate.details_synced_at is None:
            return True
        tier = self.tier_of(candidate.parent_status)
        if tier == TIER_TERMINAL:
            return False
        threshold = self.active_stale if tier == TIER_ACTIVE else self.settled_stale
        return now - candidate.details_synced_at >= threshold

    def select(self, now: Optional[datetime] = None) -> Tuple[List[OrderDetailCandidate], int]:
        """Return (due candidates in fetch order, number of parents)."""
        now = now or now_utc()
        candidates = self.store.list_detail_candidates(
            self.connection_id,
            parent_table=self.parent.table,
            detail_table=self.endpoint.table,
            key_field=self.policy.key_field,
            status_field=self.policy.status_field,
        )
        due = [c for c in candidates if self.is_due(c, now)]
        epoch = datetime.min.replace(tzinfo=now.tzinfo)
        due.sort(key=lambda c: (TIER_RANK[self.tier_of(c.parent_status)], c.details_synced_at is not None, c.details_synced_at or epoch))
        return due, len(candidates)

    def run(self, deadline: Deadline, now: Optional[datetime] = None) -> DetailRunResult:
        due, parents = self.select(now)
        result = DetailRunResult(parents=parents, due=len(due))
        batch = due[: self.max_per_run] if self.max_per_run > 0 else due
        timed_out = False

        log_json(self.logger, logging.INFO, "details_selected", connection=self.connection_id, parents=parents, due=len(due), batch=len(batch))

        with ThreadPoolExecutor(max_workers=self.concurrency) as pool:
            for i, chunk in enumerate(chunked(batch, self.concurrency)):
                if i and self.pause_sec > 0:
                    self.sleep(self.pause_sec)
                if deadline.expired():
                    timed_out = True
                    log_json(self.logger, logging.INFO, "deadline_reached", endpoint=self.endpoint.slug, attempted=result.attempted)
                    break
                futures = [(c, pool.submit(self.fetcher.fetch_one, self.endpoint, c.parent_key, deadline)) for c in chunk]
                rows: List[OrderDetailRow] = []
                for cand, fut in futures:
                    try:
                        data = fut.result()
                    except RemoteHTTPError as e:
                        if e.auth_failure:
                            result.auth_error = str(e)
                        else:
                            result.counts.skipped += 1
                        log_json(self.logger, logging.WARNING, "detail_fetch_failed", key=cand.parent_key, status=e.status, error=str(e))
                        continue
                    except (ExtractionError, requests.RequestException) as e:
                        result.counts.skipped += 1
                        log_json(self.logger, logging.WARNING, "detail_fetch_failed", key=cand.parent_key, error=str(e))
                        continue
                    rows.append(self._row(cand, data))
                result.attempted += len(chunk)
                result.counts.processed += len(chunk)
                result.counts.add(self._write(rows))
                if result.auth_error:
                    break

        result.is_complete = not timed_out and not result.auth_error and len(batch) == len(due)
        return result

    def _row(self, cand: OrderDetailCandidate, data: Document) -> OrderDetailRow:
        status = data.get(self.policy.status_field)
        return OrderDetailRow(
            external_id=self.identity.find(data) or cand.parent_key,
            order_uid=cand.parent_key,
            order_status=str(status) if status is not None else cand.parent_status,
            data=data,
        )

    def _write(self, rows: List[OrderDetailRow]) -> BatchResult:
        counts = BatchResult()
        if not rows:
            return counts
        table = self.endpoint.table
        ids = [r.external_id for r in rows]
        try:
            existing = self.store.existing_external_ids(table, self.connection_id, ids)
            self.store.upsert_order_details(table, self.connection_id, rows)
        except StoreWriteError as e:
            counts.skipped = len(rows)
            log_json(self.logger, logging.ERROR, "batch_failed", endpoint=self.endpoint.slug, rows=len(rows), error=str(e))
            return counts
        counts.created = sum(1 for ext in ids if ext not in existing)
        counts.updated = len(ids) - counts.created
        return counts
