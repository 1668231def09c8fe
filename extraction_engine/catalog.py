from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, List, Tuple

from .exceptions import ConfigurationError
from .models import EndpointDef, Provider

ESKOLARE = Provider(
    slug="eskolare",
    name="Eskolare",
    base_url="https://api.eskolare.com/api/integrations/eskolare",
    base_url_dev="https://api.dev.eskolare.com/api/integrations/eskolare",
)

PROVIDERS: Dict[str, Provider] = {ESKOLARE.slug: ESKOLARE}

ENDPOINTS: Tuple[EndpointDef, ...] = (
    EndpointDef(slug="orders", name="Orders", path="/orders/"),
    EndpointDef(slug="payments", name="Payments", path="/payments/"),
    EndpointDef(slug="cancellations", name="Cancellations", path="/cancellations/"),
    EndpointDef(slug="partnerships", name="Partnerships", path="/institutions/partnerships/"),
    EndpointDef(slug="grades", name="Grades", path="/institutions/grades/"),
    EndpointDef(slug="showcases", name="Showcases", path="/institutions/showcases/"),
    EndpointDef(slug="withdrawals", name="Withdrawals", path="/financial/withdrawals/"),
    EndpointDef(slug="transactions", name="Transactions", path="/financial/transactions/"),
    EndpointDef(slug="categories", name="Categories", path="/catalog/categories/"),
    # Dashboard-shaped: one object, no pagination. Not served by the API at the moment.
    EndpointDef(slug="summaries", name="Summaries", path="/dashboard/", response_data_path="data", paginated=False, is_active=False),
    EndpointDef(slug="order_details", name="Order details", path="/orders/{key}/", paginated=False, id_fields=("order_number", "uid")),
)

# Parents before children, high-volume entities last.
PRIORITY: Tuple[str, ...] = (
    "partnerships",
    "grades",
    "categories",
    "showcases",
    "withdrawals",
    "cancellations",
    "orders",
    "order_details",
    "payments",
    "transactions",
)


@dataclass(frozen=True)
class OrderDetailPolicy:
    endpoint: str = "order_details"
    parent_endpoint: str = "orders"
    key_field: str = "uid"
    status_field: str = "status"
    active_statuses: Tuple[str, ...] = ("created", "pending", "waiting_payment", "processing", "approved", "invoiced", "shipped")
    settled_statuses: Tuple[str, ...] = ("paid", "completed", "delivered")
    terminal_statuses: Tuple[str, ...] = ("canceled", "cancelled", "refunded", "returned", "expired")


ORDER_DETAILS = OrderDetailPolicy()


def get_provider(slug: str) -> Provider:
    if slug not in PROVIDERS:
        raise ConfigurationError(f"Unknown provider: {slug}. Available: {', '.join(PROVIDERS)}")
    return PROVIDERS[slug]


def active_endpoints(provider: str) -> List[EndpointDef]:
    return [ep for ep in ENDPOINTS if ep.provider == provider and ep.is_active]


def get_endpoint(provider: str, slug: str) -> EndpointDef:
    for ep in active_endpoints(provider):
        if ep.slug == slug:
            return ep
    available = ", ".join(ep.slug for ep in active_endpoints(provider))
    raise ConfigurationError(f"Unknown entity: {slug}. Available: {available}")


def priority_of(slug: str) -> int:
    try:
        return PRIORITY.index(slug) + 1
    except ValueError:
        return len(PRIORITY) + 1
