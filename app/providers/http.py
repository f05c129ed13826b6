# app/providers/http.py
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Optional

import httpx

logger = logging.getLogger("ioupay.http")

_REDACTED_HEADERS = ("authorization", "x-api-key")


@dataclass
class HttpResponse:
    status_code: int
    json: Optional[dict[str, Any]]
    text: str

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300


class HttpClient:
    def __init__(self, timeout_s: float = 20.0, follow_redirects: bool = True):
        self._client = httpx.Client(timeout=timeout_s, follow_redirects=follow_redirects)

    def post(
        self,
        url: str,
        *,
        headers: dict[str, str],
        json_body: dict[str, Any] | None = None,
        debug: bool = False,
    ) -> HttpResponse:
        r = self._client.post(url, headers=headers, json=json_body)
        if debug:
            self._debug_dump("POST", url, headers, json_body, r)
        return self._wrap(r)

    def get(
        self,
        url: str,
        *,
        headers: dict[str, str],
        debug: bool = False,
    ) -> HttpResponse:
        r = self._client.get(url, headers=headers)
        if debug:
            self._debug_dump("GET", url, headers, None, r)
        return self._wrap(r)

    @staticmethod
    def _wrap(r: httpx.Response) -> HttpResponse:
        try:
            payload = r.json()
        except ValueError:
            payload = None
        if not isinstance(payload, dict):
            payload = None
        return HttpResponse(status_code=r.status_code, json=payload, text=r.text)

    @staticmethod
    def _debug_dump(method: str, url: str, headers: dict[str, str], json_body: Any, r: httpx.Response) -> None:
        # Don't log secrets
        safe_headers = {
            k: ("REDACTED" if k.lower() in _REDACTED_HEADERS else v) for k, v in (headers or {}).items()
        }
        logger.debug(
            "%s %s headers=%s json=%s -> status=%s text=%s",
            method,
            url,
            safe_headers,
            json_body,
            r.status_code,
            r.text[:300],
        )


def is_retryable_http(code: int) -> bool:
    return code in (408, 425, 429, 500, 502, 503, 504)
