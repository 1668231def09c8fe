from __future__ import annotations

import argparse
import json
import logging
from datetime import timedelta

from dotenv import load_dotenv

from .catalog import ENDPOINTS, ORDER_DETAILS, active_endpoints
from .config import load_settings
from .db import connect
from .engine import ExtractionEngine
from .exceptions import ConfigurationError
from .logging_utils import configure_logging, get_logger, log_json
from .models import SyncRequest
from .scheduler import EndpointScheduler
from .storage.base import SyncStore
from .storage.memory_store import MemoryStore
from .storage.postgres_store import PostgresStore


def cmd_db_init(store: PostgresStore) -> int:
    entity_tables = [ep.table for ep in ENDPOINTS if ep.slug != ORDER_DETAILS.endpoint]
    details = next(ep.table for ep in ENDPOINTS if ep.slug == ORDER_DETAILS.endpoint)
    store.ensure_schema(entity_tables, order_details_table=details)
    log_json(get_logger(), logging.INFO, "schema_ready", tables=len(entity_tables) + 1)
    return 0


def cmd_status(store: PostgresStore, connection_id: str, stale_minutes: int) -> int:
    connection = store.get_connection(connection_id)
    if connection is None:
        raise SystemExit(f"Unknown connection: {connection_id}")
    scheduler = EndpointScheduler(store, stale_after=timedelta(minutes=stale_minutes))
    for s in scheduler.statuses(connection.id, active_endpoints(connection.provider)):
        age = f"{s.age_minutes:.0f}m" if s.age_minutes is not None else "never"
        print(
            f"{s.priority:>2} {s.endpoint:<14} complete={s.is_complete!s:<5} "
            f"offset={s.last_offset} total={s.total_records} local={s.local_count} age={age}"
        )
    return 0


def dry_run_store(source: SyncStore, connection_id: str) -> MemoryStore:
    """Copy one connection and its checkpoints into memory; synced rows stay behind."""
    store = MemoryStore()
    connection = source.get_connection(connection_id)
    if connection is None:
        return store
    store.add_connection(connection)
    for ep in active_endpoints(connection.provider):
        progress = source.get_progress(connection_id, ep.slug)
        if progress is not None:
            store.save_progress(progress)
    return store


def cmd_run(engine: ExtractionEngine, args: argparse.Namespace) -> int:
    request = SyncRequest(
        connection_id=args.connection_id,
        entity=args.entity,
        test_only=args.test_only,
        continue_from_checkpoint=not args.no_continue,
        force_reset=args.force_reset,
    )
    try:
        response = engine.run(request)
    except ConfigurationError as e:
        log_json(get_logger(), logging.ERROR, "sync_rejected", connection=args.connection_id, error=str(e))
        print(json.dumps({"success": False, "error": str(e)}))
        return 2
    print(json.dumps(response.to_dict(), default=str, indent=2, ensure_ascii=False))
    return 0 if response.success else 1


def schedule_loop() -> None:
    from apscheduler.schedulers.blocking import BlockingScheduler
    from apscheduler.triggers.interval import IntervalTrigger

    settings = load_settings()
    logger = get_logger()

    sched = BlockingScheduler(timezone="UTC")

    def job():
        with connect(settings.database_url) as conn:
            store = PostgresStore(conn)
            engine = ExtractionEngine(store, settings, logger=logger)
            for connection in store.list_connections("active"):
                try:
                    response = engine.run(SyncRequest(connection_id=connection.id))
                    log_json(
                        logger,
                        logging.INFO,
                        "scheduled_sync_done",
                        connection=connection.id,
                        success=response.success,
                        all_complete=response.all_complete,
                        total=response.total,
                    )
                except Exception as e:
                    log_json(logger, logging.ERROR, "scheduled_job_failed", connection=connection.id, error=str(e))

    sched.add_job(job, IntervalTrigger(minutes=settings.sched_sync_minutes), id="sync_active_connections", max_instances=1, coalesce=True)
    log_json(logger, logging.INFO, "scheduler_started", sync_minutes=settings.sched_sync_minutes)
    sched.start()


def main(argv=None):
    load_dotenv(override=False)
    settings = load_settings()
    configure_logging(settings.log_level)

    parser = argparse.ArgumentParser(prog="extraction-engine")
    sub = parser.add_subparsers(dest="cmd", required=True)

    db = sub.add_parser("db", help="Database commands")
    db_sub = db.add_subparsers(dest="db_cmd", required=True)
    db_sub.add_parser("init", help="Create tables")

    sync = sub.add_parser("sync", help="Extraction commands")
    sync_sub = sync.add_subparsers(dest="sync_cmd", required=True)

    runp = sync_sub.add_parser("run", help="Run one time-boxed sync for a connection")
    runp.add_argument("connection_id", type=str)
    runp.add_argument("--entity", type=str, default=None)
    runp.add_argument("--test-only", action="store_true")
    runp.add_argument("--force-reset", action="store_true")
    runp.add_argument("--no-continue", action="store_true", help="Start from offset 0 instead of the checkpoint")
    runp.add_argument("--dry-run", action="store_true", help="Fetch and upsert into memory only")

    statp = sync_sub.add_parser("status", help="Show per-entity progress")
    statp.add_argument("connection_id", type=str)

    sync_sub.add_parser("schedule", help="Run APScheduler loop over active connections")

    args = parser.parse_args(argv)

    if args.cmd == "sync" and args.sync_cmd == "schedule":
        schedule_loop()
        return 0

    with connect(settings.database_url) as conn:
        store = PostgresStore(conn)
        if args.cmd == "db":
            return cmd_db_init(store)
        if args.sync_cmd == "status":
            return cmd_status(store, args.connection_id, settings.stale_minutes)
        if args.sync_cmd == "run":
            target = dry_run_store(store, args.connection_id) if args.dry_run else store
            return cmd_run(ExtractionEngine(target, settings), args)

    return 0


if __name__ == "__main__":
    raise SystemExit(main())
