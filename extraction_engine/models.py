from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

# Remote payloads are schema-on-read documents.
Document = Dict[str, Any]


@dataclass
class Connection:
    id: str
    provider: str
    name: str
    token: str | None
    environment: str = "production"
    status: str = "active"  # active | paused | error
    last_test_at: datetime | None = None
    last_test_success: bool | None = None


@dataclass(frozen=True)
class Provider:
    slug: str
    name: str
    base_url: str
    base_url_dev: str | None = None

    def url_for(self, environment: str) -> str:
        if environment == "development" and self.base_url_dev:
            return self.base_url_dev
        return self.base_url


@dataclass(frozen=True)
class EndpointDef:
    slug: str
    name: str
    path: str
    provider: str = "eskolare"
    method: str = "GET"
    response_data_path: str = "results"
    page_size_param: str = "limit"
    offset_param: str = "offset"
    default_page_size: int = 100
    paginated: bool = True
    is_active: bool = True
    id_fields: Tuple[str, ...] = ()

    @property
    def table(self) -> str:
        return f"{self.provider}_{self.slug}"


@dataclass
class ExtractionProgress:
    connection_id: str
    endpoint: str
    last_offset: int = 0
    is_complete: bool = False
    total_records: int = 0
    last_sync_at: datetime | None = None
    next_sync_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class ExtractionLog:
    id: str
    connection_id: str
    endpoint: str
    status: str = "running"  # running | success | error
    records_processed: int = 0
    records_created: int = 0
    records_updated: int = 0
    duration_ms: int | None = None
    error_message: str | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None


@dataclass
class Page:
    offset: int
    records: List[Document]
    total: int | None
    next_offset: int
    is_last: bool
    is_list: bool = True


@dataclass
class BatchResult:
    processed: int = 0
    created: int = 0
    updated: int = 0
    skipped: int = 0

    def add(self, other: "BatchResult") -> None:
        self.processed += other.processed
        self.created += other.created
        self.updated += other.updated
        self.skipped += other.skipped


@dataclass
class ValidationResult:
    local_count: int
    remote_total: int

    @property
    def ok(self) -> bool:
        return self.local_count >= self.remote_total


@dataclass
class EndpointStatus:
    endpoint: str
    priority: int
    is_complete: bool
    last_offset: int
    total_records: int
    local_count: int
    last_sync_at: datetime | None
    age_minutes: float | None


@dataclass
class OrderDetailCandidate:
    parent_key: str
    parent_status: str | None
    details_synced_at: datetime | None = None


@dataclass
class OrderDetailRow:
    external_id: str
    order_uid: str
    order_status: str | None
    data: Document


@dataclass
class SyncRequest:
    connection_id: str
    entity: str | None = None
    test_only: bool = False
    continue_from_checkpoint: bool = True
    force_reset: bool = False


@dataclass
class EndpointResult:
    endpoint: str
    success: bool = True
    duration_ms: int = 0
    processed: int = 0
    created: int = 0
    updated: int = 0
    skipped: int = 0
    is_complete: bool = False
    total_records: int = 0
    final_offset: int = 0
    error: str | None = None
    message: str | None = None
    validation: Optional[ValidationResult] = None

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        if self.validation is not None:
            d["validation"]["ok"] = self.validation.ok
        return d


@dataclass
class SyncResponse:
    success: bool
    duration_ms: int = 0
    endpoints: Dict[str, EndpointResult] = field(default_factory=dict)
    all_complete: bool = False
    message: str | None = None
    test_result: Dict[str, Any] | None = None

    @property
    def total(self) -> Dict[str, int]:
        return {
            "processed": sum(r.processed for r in self.endpoints.values()),
            "created": sum(r.created for r in self.endpoints.values()),
            "updated": sum(r.updated for r in self.endpoints.values()),
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "duration_ms": self.duration_ms,
            "total": self.total,
            "endpoints": {k: v.to_dict() for k, v in self.endpoints.items()},
            "all_complete": self.all_complete,
            "message": self.message,
            "test_result": self.test_result,
        }
