from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Protocol

import requests
from requests.auth import HTTPBasicAuth

from plannersync.errors import NetworkError

logger = logging.getLogger(__name__)


@dataclass
class HttpResponse:
    status: int
    body: str
    headers: dict[str, str] | None = None


class HttpTransport(Protocol):
    def request(
        self,
        method: str,
        url: str,
        headers: dict[str, str] | None = None,
        body: str | None = None,
    ) -> HttpResponse: ...


class RequestsTransport:
    """Authenticated CalDAV transport. HTTP error statuses are returned, not raised.

    Headers are sent exactly as the caller passes them; ``Depth`` and the
    XML content type belong to PROPFIND/REPORT only.
    """

    def __init__(self, username: str, password: str, timeout_seconds: int = 30) -> None:
        self.timeout_seconds = timeout_seconds
        self._session = requests.Session()
        self._session.auth = HTTPBasicAuth(username, password)

    def request(
        self,
        method: str,
        url: str,
        headers: dict[str, str] | None = None,
        body: str | None = None,
    ) -> HttpResponse:
        try:
            response = self._session.request(
                method,
                url,
                headers=dict(headers or {}),
                data=body.encode("utf-8") if body is not None else None,
                timeout=self.timeout_seconds,
            )
        except requests.RequestException as exc:
            logger.warning("%s %s failed: %s", method, url, exc)
            raise NetworkError(f"{method} {url} failed: {exc}") from exc
        if response.encoding is None:
            response.encoding = "utf-8"
        return HttpResponse(status=response.status_code, body=response.text, headers=dict(response.headers))
