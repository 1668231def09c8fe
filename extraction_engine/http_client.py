from __future__ import annotations

import random
import time
from dataclasses import dataclass
from typing import Any, Optional

import requests

from .deadline import Deadline

RETRY_STATUS = {408, 429, 500, 502, 503, 504}


@dataclass
class HttpConfig:
    user_agent: str
    connect_timeout: float = 10.0
    read_timeout: float = 20.0
    max_retries: int = 2
    backoff_base_sec: float = 1.0
    backoff_max_sec: float = 8.0


class HttpClient:
    def __init__(self, cfg: HttpConfig, token: str | None = None):
        self.cfg = cfg
        self.session = requests.Session()
        self.session.headers.update({
            "User-Agent": cfg.user_agent,
            "Accept": "application/json",
            "Content-Type": "application/json",
        })
        if token:
            self.session.headers["Authorization"] = f"Bearer {token}"

    def request(self, method: str, url: str, deadline: Optional[Deadline] = None, **kwargs: Any) -> requests.Response:
        timeout = kwargs.pop("timeout", (self.cfg.connect_timeout, self.cfg.read_timeout))

        attempt = 0
        while True:
            attempt += 1
            try:
                resp = self.session.request(method, url, timeout=timeout, **kwargs)
                if resp.status_code in RETRY_STATUS and attempt <= self.cfg.max_retries:
                    if self._sleep(attempt, resp, deadline):
                        continue
                return resp
            except requests.RequestException:
                if attempt <= self.cfg.max_retries and self._sleep(attempt, None, deadline):
                    continue
                raise

    def close(self) -> None:
        self.session.close()

    def _sleep(self, attempt: int, resp: Optional[requests.Response], deadline: Optional[Deadline]) -> bool:
        """Back off before a retry. Returns False when the wait would overrun the budget."""
        base = self.cfg.backoff_base_sec * (2 ** (attempt - 1))
        wait = min(base, self.cfg.backoff_max_sec)

        if resp is not None:
            ra = resp.headers.get("Retry-After")
            if ra:
                try:
                    wait = max(wait, float(ra))
                except ValueError:
                    pass

        wait += random.uniform(0, 0.25 * wait)
        if deadline is not None and wait >= deadline.remaining():
            return False
        time.sleep(wait)
        return True
