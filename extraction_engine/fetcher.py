from __future__ import annotations

import logging
from typing import Any, Dict, Iterator, Optional, Tuple

import requests

from .deadline import Deadline
from .exceptions import ExtractionError, RemoteHTTPError
from .http_client import HttpClient
from .logging_utils import get_logger, log_json
from .models import Document, EndpointDef, Page
from .utils import truncate

FALLBACK_DATA_KEYS = ("results", "data")
TOTAL_KEY = "count"


def extract_results(body: Any, data_path: str) -> Any:
    """Return the record array (or single value) under ``data_path`` with fallbacks."""
    if isinstance(body, list):
        return body
    if not isinstance(body, dict):
        return None
    for key in (data_path, *FALLBACK_DATA_KEYS):
        value = body.get(key)
        if value is not None:
            return value
    return None


def extract_total(body: Any) -> int | None:
    if not isinstance(body, dict):
        return None
    value = body.get(TOTAL_KEY)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return int(value)


class PaginatedFetcher:
    """Offset/limit pagination against one remote base URL.

    Once the API reports a total count it is authoritative: a short page
    before ``offset >= total`` does not end the sequence.
    """

    def __init__(self, client: HttpClient, base_url: str, logger: Optional[logging.Logger] = None) -> None:
        self.client = client
        self.base_url = base_url.rstrip("/")
        self.logger = logger or get_logger()

    def url_for(self, endpoint: EndpointDef, key: str | None = None) -> str:
        path = endpoint.path.format(key=key) if key is not None else endpoint.path
        return f"{self.base_url}{path}"

    def get_json(
        self,
        url: str,
        params: Dict[str, Any] | None = None,
        deadline: Optional[Deadline] = None,
        method: str = "GET",
    ) -> Any:
        resp = self.client.request(method, url, deadline=deadline, params=params)
        if not 200 <= resp.status_code < 300:
            body = truncate(resp.text, 500)
            log_json(self.logger, logging.ERROR, "remote_http_error", url=url, status=resp.status_code, body=body)
            raise RemoteHTTPError(resp.status_code, body, url=url)
        try:
            return resp.json()
        except ValueError as e:
            raise ExtractionError(f"Invalid JSON from {url}: {truncate(resp.text, 100)}") from e

    def iter_pages(
        self,
        endpoint: EndpointDef,
        start_offset: int = 0,
        page_size: int | None = None,
        deadline: Optional[Deadline] = None,
    ) -> Iterator[Page]:
        limit = page_size or endpoint.default_page_size
        url = self.url_for(endpoint)

        if not endpoint.paginated:
            if deadline is not None and deadline.expired():
                return
            body = self.get_json(url, deadline=deadline, method=endpoint.method)
            yield self._single_page(endpoint, body)
            return

        offset = start_offset
        total: int | None = None
        while True:
            if deadline is not None and deadline.expired():
                return

            params = {endpoint.page_size_param: limit, endpoint.offset_param: offset}
            body = self.get_json(url, params=params, deadline=deadline, method=endpoint.method)

            count = extract_total(body)
            if count is not None:
                total = count

            results = extract_results(body, endpoint.response_data_path)
            if results is None:
                results = []

            if not isinstance(results, list):
                log_json(self.logger, logging.INFO, "page_not_list", endpoint=endpoint.slug, offset=offset)
                yield Page(offset=offset, records=[results], total=total, next_offset=max(offset + 1, total or 0), is_last=True, is_list=False)
                return

            if not results:
                log_json(self.logger, logging.INFO, "page_empty", endpoint=endpoint.slug, offset=offset, total=total)
                yield Page(offset=offset, records=[], total=total, next_offset=offset, is_last=True)
                return

            next_offset = offset + limit
            is_last = total is not None and next_offset >= total
            log_json(
                self.logger,
                logging.INFO,
                "page_fetched",
                endpoint=endpoint.slug,
                offset=offset,
                records=len(results),
                total=total,
            )
            yield Page(offset=offset, records=results, total=total, next_offset=next_offset, is_last=is_last)
            if is_last:
                return
            offset = next_offset

    def fetch_one(self, endpoint: EndpointDef, key: str, deadline: Optional[Deadline] = None) -> Document:
        body = self.get_json(self.url_for(endpoint, key=key), deadline=deadline, method=endpoint.method)
        if not isinstance(body, dict):
            raise ExtractionError(f"Unexpected detail payload for {endpoint.slug}/{key}")
        return body

    def check_access(self, endpoint: EndpointDef) -> Tuple[bool, Any]:
        """Lightweight reachability check: first page with a single record."""
        params = {endpoint.page_size_param: 1} if endpoint.paginated else None
        try:
            return True, self.get_json(self.url_for(endpoint), params=params, method=endpoint.method)
        except (ExtractionError, requests.RequestException) as e:
            return False, str(e)

    def _single_page(self, endpoint: EndpointDef, body: Any) -> Page:
        results = extract_results(body, endpoint.response_data_path)
        if results is None:
            # Dashboard-shaped: the whole response is the record.
            results = body if body else []
        if isinstance(results, list):
            return Page(offset=0, records=results, total=len(results), next_offset=len(results), is_last=True)
        return Page(offset=0, records=[results], total=1, next_offset=1, is_last=True, is_list=False)
