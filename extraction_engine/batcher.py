from __future__ import annotations

import logging
from typing import List, Optional, Sequence, Tuple

from .deadline import Deadline
from .exceptions import StoreWriteError
from .identity import IdentityStrategy
from .logging_utils import get_logger, log_json
from .models import BatchResult, Document, EndpointDef
from .storage.base import RecordRow, SyncStore
from .utils import chunked


class UpsertBatcher:
    """Dedupe, classify and upsert remote records for one (connection, entity).

    Writes are keyed on (connection_id, external_id), so feeding the same page
    twice converges to the same rows; the second pass reports only updates.
    """

    def __init__(
        self,
        store: SyncStore,
        connection_id: str,
        endpoint: EndpointDef,
        batch_size: int = 100,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.store = store
        self.connection_id = connection_id
        self.endpoint = endpoint
        self.batch_size = max(batch_size, 1)
        self.identity = IdentityStrategy(endpoint.id_fields)
        self.logger = logger or get_logger()

    def dedupe(self, records: Sequence[Document]) -> List[RecordRow]:
        # Last occurrence wins.
        unique: dict[str, Document] = {}
        for rec in records:
            unique[self.identity.external_id(rec)] = rec
        return list(unique.items())

    def write(self, rows: Sequence[RecordRow]) -> BatchResult:
        """Upsert one sub-batch of already-deduplicated rows."""
        result = BatchResult()
        if not rows:
            return result
        table = self.endpoint.table
        ids = [ext for ext, _ in rows]
        try:
            existing = self.store.existing_external_ids(table, self.connection_id, ids)
            self.store.upsert_records(table, self.connection_id, rows)
        except StoreWriteError as e:
            result.skipped = len(rows)
            log_json(
                self.logger,
                logging.ERROR,
                "batch_failed",
                endpoint=self.endpoint.slug,
                connection=self.connection_id,
                rows=len(rows),
                error=str(e),
            )
            return result

        result.created = sum(1 for ext in ids if ext not in existing)
        result.updated = len(ids) - result.created
        log_json(
            self.logger,
            logging.DEBUG,
            "batch_upserted",
            endpoint=self.endpoint.slug,
            rows=len(rows),
            created=result.created,
            updated=result.updated,
        )
        return result

    def process(self, records: Sequence[Document], deadline: Optional[Deadline] = None) -> Tuple[BatchResult, bool]:
        """Write a fetched page in bounded sub-batches.

        Returns the counts and whether every sub-batch was attempted. Once the
        hard limit of ``deadline`` passes, remaining sub-batches are left for
        the next invocation.
        """
        total = BatchResult()
        rows = self.dedupe(records)
        chunks = list(chunked(rows, self.batch_size))
        written = 0
        for i, chunk in enumerate(chunks):
            if deadline is not None and deadline.hard_expired():
                log_json(
                    self.logger,
                    logging.WARNING,
                    "drain_stopped",
                    endpoint=self.endpoint.slug,
                    written_batches=i,
                    pending_batches=len(chunks) - i,
                )
                total.processed = written
                return total, False
            total.add(self.write(chunk))
            written += len(chunk)
        total.processed = len(records)
        return total, True
