from __future__ import annotations

import logging
from typing import Optional

from .logging_utils import get_logger, log_json
from .models import BatchResult, EndpointDef, EndpointResult, ExtractionLog, ValidationResult
from .storage.base import SyncStore
from .utils import now_utc, truncate

STATUS_RUNNING = "running"
STATUS_SUCCESS = "success"
STATUS_ERROR = "error"


def continuation_message(reached: int, total: int) -> str:
    if total > 0:
        return f"{min(reached, total)}/{total} processed, will continue"
    return f"{reached}/? processed, will continue"


class RunLogger:
    """One extraction_logs row per attempt: running -> success | error."""

    def __init__(
        self,
        store: SyncStore,
        connection_id: str,
        endpoint: str,
        progress_every_pages: int = 5,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.store = store
        self.connection_id = connection_id
        self.endpoint = endpoint
        self.progress_every_pages = max(progress_every_pages, 1)
        self.logger = logger or get_logger()
        self.log: ExtractionLog | None = None

    def start(self) -> ExtractionLog:
        self.log = self.store.start_log(self.connection_id, self.endpoint)
        log_json(self.logger, logging.INFO, "run_started", connection=self.connection_id, endpoint=self.endpoint, log_id=self.log.id)
        return self.log

    def progress(self, counts: BatchResult, pages: int, elapsed_ms: int) -> None:
        """Expose live counts on long runs; only every N pages."""
        if self.log is None or pages % self.progress_every_pages:
            return
        self._apply(counts)
        self.log.duration_ms = elapsed_ms
        self.store.update_log(self.log)

    def finish(self, result: EndpointResult) -> None:
        if self.log is None:
            return
        self._apply(result)
        self.log.duration_ms = result.duration_ms
        self.log.finished_at = now_utc()
        if result.success and result.is_complete:
            self.log.status = STATUS_SUCCESS
            self.log.error_message = None
        else:
            self.log.status = STATUS_ERROR
            self.log.error_message = truncate(result.error or result.message, 2000) or None
        self.store.update_log(self.log)
        log_json(
            self.logger,
            logging.INFO if self.log.status == STATUS_SUCCESS else logging.WARNING,
            "run_finished",
            connection=self.connection_id,
            endpoint=self.endpoint,
            status=self.log.status,
            processed=result.processed,
            created=result.created,
            updated=result.updated,
            final_offset=result.final_offset,
            total_records=result.total_records,
            message=self.log.error_message,
        )

    def _apply(self, counts: BatchResult | EndpointResult) -> None:
        if self.log is None:
            return
        self.log.records_processed = counts.processed
        self.log.records_created = counts.created
        self.log.records_updated = counts.updated


def validate_counts(
    store: SyncStore,
    connection_id: str,
    endpoint: EndpointDef,
    remote_total: int,
    logger: Optional[logging.Logger] = None,
) -> ValidationResult | None:
    """Compare stored rows with the remote total after a complete run.

    A shortfall is reported, never repaired: progress stays complete.
    """
    if remote_total <= 0:
        return None
    logger = logger or get_logger()
    local = store.count_records(endpoint.table, connection_id)
    result = ValidationResult(local_count=local, remote_total=remote_total)
    if not result.ok:
        log_json(
            logger,
            logging.WARNING,
            "count_drift",
            connection=connection_id,
            endpoint=endpoint.slug,
            local_count=local,
            remote_total=remote_total,
            missing=remote_total - local,
        )
    return result
