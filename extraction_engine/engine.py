from __future__ import annotations

import logging
import time
from datetime import timedelta
from typing import Callable, Dict, Optional

import requests

from .batcher import UpsertBatcher
from .catalog import ORDER_DETAILS, active_endpoints, get_endpoint, get_provider
from .config import Settings
from .deadline import Deadline
from .exceptions import ConfigurationError, ExtractionError, RemoteHTTPError
from .fetcher import PaginatedFetcher
from .http_client import HttpClient, HttpConfig
from .logging_utils import get_logger, log_json
from .models import (
    BatchResult,
    Connection,
    EndpointDef,
    EndpointResult,
    ExtractionProgress,
    SyncRequest,
    SyncResponse,
)
from .order_details import OrderDetailSyncer
from .runs import RunLogger, continuation_message, validate_counts
from .scheduler import EndpointScheduler
from .storage.base import SyncStore
from .utils import now_utc

FetcherFactory = Callable[[Connection], PaginatedFetcher]

ALL_COMPLETE_MESSAGE = "All entities are complete"
LOCK_BUSY_MESSAGE = "Extraction already running for this entity"


class ExtractionEngine:
    """Time-boxed sync of one connection.

    Every call to :meth:`run` owns a fresh :class:`Deadline`. State between
    calls lives only in the store (progress rows, synced records, logs).
    """

    def __init__(
        self,
        store: SyncStore,
        settings: Settings,
        fetcher_factory: Optional[FetcherFactory] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.fetcher_factory = fetcher_factory or self.default_fetcher
        self.clock = clock
        self.sleep = sleep
        self.logger = logger or get_logger()
        self.scheduler = EndpointScheduler(store, stale_after=timedelta(minutes=settings.stale_minutes))

    def default_fetcher(self, connection: Connection) -> PaginatedFetcher:
        provider = get_provider(connection.provider)
        cfg = HttpConfig(
            user_agent=self.settings.http_user_agent,
            read_timeout=self.settings.http_read_timeout_sec,
            max_retries=self.settings.http_max_retries,
        )
        client = HttpClient(cfg, token=connection.token)
        return PaginatedFetcher(client, provider.url_for(connection.environment), logger=self.logger)

    def load_connection(self, connection_id: str) -> Connection:
        connection = self.store.get_connection(connection_id)
        if connection is None:
            raise ConfigurationError(f"Unknown connection: {connection_id}")
        if not connection.token:
            raise ConfigurationError(f"Connection {connection_id} has no API token")
        if connection.status == "paused":
            raise ConfigurationError(f"Connection {connection_id} is paused")
        return connection

    def run(self, request: SyncRequest) -> SyncResponse:
        deadline = Deadline(self.settings.soft_budget_sec, self.settings.hard_budget_sec, clock=self.clock)
        connection = self.load_connection(request.connection_id)
        provider = get_provider(connection.provider)
        endpoint = get_endpoint(provider.slug, request.entity) if request.entity else None

        log_json(
            self.logger,
            logging.INFO,
            "sync_started",
            connection=connection.id,
            entity=request.entity,
            test_only=request.test_only,
            force_reset=request.force_reset,
        )

        fetcher = self.fetcher_factory(connection)
        try:
            if request.test_only:
                return self.test_connection(connection, fetcher, deadline)

            if endpoint is not None:
                result = self.sync_endpoint(
                    connection,
                    endpoint,
                    fetcher,
                    deadline,
                    continue_from_checkpoint=request.continue_from_checkpoint,
                    force_reset=request.force_reset,
                )
                return self._response(connection, {endpoint.slug: result}, deadline)

            return self.run_pending(connection, fetcher, deadline)
        finally:
            fetcher.client.close()

    def run_pending(self, connection: Connection, fetcher: PaginatedFetcher, deadline: Deadline) -> SyncResponse:
        """Chain through pending entities in priority order while the budget lasts."""
        endpoints = active_endpoints(connection.provider)
        results: Dict[str, EndpointResult] = {}

        while not deadline.expired():
            status = self.scheduler.next_pending(connection.id, endpoints, exclude=results)
            if status is None:
                break
            endpoint = get_endpoint(connection.provider, status.endpoint)
            result = self.sync_endpoint(connection, endpoint, fetcher, deadline)
            results[endpoint.slug] = result
            if not (result.success and result.is_complete):
                break

        return self._response(connection, results, deadline)

    def test_connection(self, connection: Connection, fetcher: PaginatedFetcher, deadline: Deadline) -> SyncResponse:
        endpoint = get_endpoint(connection.provider, ORDER_DETAILS.parent_endpoint)
        ok, data = fetcher.check_access(endpoint)
        self.store.record_connection_test(connection.id, ok, now_utc())
        log_json(self.logger, logging.INFO if ok else logging.WARNING, "connection_tested", connection=connection.id, endpoint=endpoint.slug, success=ok)
        return SyncResponse(
            success=ok,
            duration_ms=deadline.elapsed_ms(),
            message="Connection OK" if ok else "Connection test failed",
            test_result={
                "success": ok,
                "endpoint": endpoint.slug,
                "sample": data if ok else None,
                "error": None if ok else data,
            },
        )

    def sync_endpoint(
        self,
        connection: Connection,
        endpoint: EndpointDef,
        fetcher: PaginatedFetcher,
        deadline: Deadline,
        continue_from_checkpoint: bool = True,
        force_reset: bool = False,
    ) -> EndpointResult:
        if not self.store.try_lock(connection.id, endpoint.slug):
            log_json(self.logger, logging.WARNING, "lock_busy", connection=connection.id, endpoint=endpoint.slug)
            return EndpointResult(endpoint=endpoint.slug, message=LOCK_BUSY_MESSAGE)
        try:
            if force_reset:
                self.store.reset_progress(connection.id, endpoint.slug)
                log_json(self.logger, logging.INFO, "progress_reset", connection=connection.id, endpoint=endpoint.slug)
            if endpoint.slug == ORDER_DETAILS.endpoint:
                return self._sync_order_details(connection, endpoint, fetcher, deadline)
            return self._sync_pages(connection, endpoint, fetcher, deadline, continue_from_checkpoint)
        finally:
            self.store.release_lock(connection.id, endpoint.slug)

    def _sync_pages(
        self,
        connection: Connection,
        endpoint: EndpointDef,
        fetcher: PaginatedFetcher,
        deadline: Deadline,
        continue_from_checkpoint: bool,
    ) -> EndpointResult:
        started_ms = deadline.elapsed_ms()
        progress = self.store.get_progress(connection.id, endpoint.slug) or ExtractionProgress(connection.id, endpoint.slug)
        # A finished pass is re-run from the start.
        resume = continue_from_checkpoint and not progress.is_complete
        offset = progress.last_offset if resume else 0
        total = progress.total_records

        run_log = RunLogger(self.store, connection.id, endpoint.slug, self.settings.progress_every_pages, logger=self.logger)
        run_log.start()
        batcher = UpsertBatcher(self.store, connection.id, endpoint, batch_size=self.settings.batch_size, logger=self.logger)
        result = EndpointResult(endpoint=endpoint.slug, final_offset=offset, total_records=total)
        counts = BatchResult()
        complete = False
        pages = 0

        log_json(self.logger, logging.INFO, "endpoint_started", connection=connection.id, endpoint=endpoint.slug, start_offset=offset, resumed=resume)

        try:
            for page in fetcher.iter_pages(endpoint, start_offset=offset, deadline=deadline):
                if page.total is not None:
                    total = page.total

                if not page.records:
                    if total and page.offset < total:
                        log_json(
                            self.logger,
                            logging.WARNING,
                            "remote_total_unreached",
                            endpoint=endpoint.slug,
                            offset=page.offset,
                            total=total,
                        )
                    offset = max(page.offset, total)
                    complete = True
                    self._checkpoint(progress, offset, complete, total)
                    break

                page_counts, drained = batcher.process(page.records, deadline)
                counts.add(page_counts)
                pages += 1
                if not drained:
                    break

                offset = page.next_offset
                complete = page.is_last
                self._checkpoint(progress, offset, complete, total)
                run_log.progress(counts, pages, deadline.elapsed_ms() - started_ms)
                if complete:
                    break

        except RemoteHTTPError as e:
            if e.fatal:
                self.store.set_connection_status(connection.id, "error")
            result.success = False
            result.error = str(e)
        except (ExtractionError, requests.RequestException) as e:
            result.success = False
            result.error = str(e)

        result.processed = counts.processed
        result.created = counts.created
        result.updated = counts.updated
        result.skipped = counts.skipped
        result.final_offset = offset
        result.total_records = total
        result.is_complete = result.success and complete

        if not result.success:
            log_json(self.logger, logging.ERROR, "endpoint_failed", connection=connection.id, endpoint=endpoint.slug, offset=offset, error=result.error)
        return self._finish(connection, endpoint, progress, run_log, result, deadline, started_ms)

    def _sync_order_details(
        self,
        connection: Connection,
        endpoint: EndpointDef,
        fetcher: PaginatedFetcher,
        deadline: Deadline,
    ) -> EndpointResult:
        started_ms = deadline.elapsed_ms()
        progress = self.store.get_progress(connection.id, endpoint.slug) or ExtractionProgress(connection.id, endpoint.slug)
        run_log = RunLogger(self.store, connection.id, endpoint.slug, self.settings.progress_every_pages, logger=self.logger)
        run_log.start()

        parent = get_endpoint(connection.provider, ORDER_DETAILS.parent_endpoint)
        syncer = OrderDetailSyncer(
            self.store,
            fetcher,
            connection.id,
            endpoint,
            parent,
            self.settings,
            policy=ORDER_DETAILS,
            logger=self.logger,
            sleep=self.sleep,
        )
        detail = syncer.run(deadline)

        total = detail.parents
        local = self.store.count_records(endpoint.table, connection.id)
        offset = total if detail.is_complete else min(local, total)

        result = EndpointResult(
            endpoint=endpoint.slug,
            processed=detail.counts.processed,
            created=detail.counts.created,
            updated=detail.counts.updated,
            skipped=detail.counts.skipped,
            is_complete=detail.is_complete,
            total_records=total,
            final_offset=offset,
        )
        if detail.auth_error:
            self.store.set_connection_status(connection.id, "error")
            result.success = False
            result.error = detail.auth_error
            log_json(self.logger, logging.ERROR, "endpoint_failed", connection=connection.id, endpoint=endpoint.slug, error=result.error)
        else:
            self._checkpoint(progress, offset, detail.is_complete, total)
        return self._finish(connection, endpoint, progress, run_log, result, deadline, started_ms)

    def _checkpoint(self, progress: ExtractionProgress, offset: int, complete: bool, total: int) -> None:
        progress.last_offset = offset
        progress.is_complete = complete
        progress.total_records = total or 0
        self.store.save_progress(progress)
        log_json(
            self.logger,
            logging.DEBUG,
            "checkpoint_saved",
            connection=progress.connection_id,
            endpoint=progress.endpoint,
            last_offset=offset,
            is_complete=complete,
            total_records=progress.total_records,
        )

    def _finish(
        self,
        connection: Connection,
        endpoint: EndpointDef,
        progress: ExtractionProgress,
        run_log: RunLogger,
        result: EndpointResult,
        deadline: Deadline,
        started_ms: int,
    ) -> EndpointResult:
        result.duration_ms = deadline.elapsed_ms() - started_ms

        if result.success:
            if result.is_complete:
                result.validation = validate_counts(self.store, connection.id, endpoint, result.total_records, logger=self.logger)
            else:
                result.message = continuation_message(result.final_offset, result.total_records)
                log_json(self.logger, logging.INFO, "deadline_reached", connection=connection.id, endpoint=endpoint.slug, message=result.message)

            now = now_utc()
            progress.last_sync_at = now
            progress.next_sync_at = now + timedelta(minutes=self.settings.sync_frequency_minutes)
            self.store.save_progress(progress)

        run_log.finish(result)
        return result

    def _response(self, connection: Connection, results: Dict[str, EndpointResult], deadline: Deadline) -> SyncResponse:
        all_complete = self.scheduler.next_pending(connection.id, active_endpoints(connection.provider)) is None
        return SyncResponse(
            success=all(r.success for r in results.values()),
            duration_ms=deadline.elapsed_ms(),
            endpoints=results,
            all_complete=all_complete,
            message=ALL_COMPLETE_MESSAGE if all_complete else None,
        )
