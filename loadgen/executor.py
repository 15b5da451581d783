"""
Single-request executor.

Sends one HTTP request through a ``requests.Session`` and captures what
came back: status code, elapsed latency, body and headers.  Transport
failures never escape this module.  A timeout, a refused connection or
any other ``requests`` exception becomes an :class:`HttpResult` with
status ``0`` and an error description, so one bad request can never take
down the virtual user that sent it.

Each virtual user owns its own session (and therefore its own connection
pool), the way a real client would.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Iterable
from typing import Any

import requests
from requests.adapters import HTTPAdapter

from loadgen.errors import TransportError
from loadgen.models import HttpResult, RequestTarget

logger = logging.getLogger(__name__)

TRANSPORT_ERROR_STATUS = 0


def new_session(pool_size: int = 1) -> requests.Session:
    """Create a session whose connection pool fits ``pool_size`` workers."""
    session = requests.Session()
    adapter = HTTPAdapter(
        pool_connections=1, pool_maxsize=max(pool_size, 1), max_retries=0
    )
    session.mount("http://", adapter)
    session.mount("https://", adapter)
    return session


def _classify(exc: requests.RequestException) -> TransportError:
    """Map a ``requests`` exception onto a :class:`TransportError`."""
    if isinstance(exc, requests.Timeout):
        return TransportError("timeout", str(exc) or "request timed out")
    if isinstance(exc, requests.ConnectionError):
        return TransportError("connection", str(exc) or "connection failed")
    return TransportError("request", str(exc) or exc.__class__.__name__)


class RequestExecutor:
    """
    Issue requests against one :class:`RequestTarget`.

    Args:
        target: Method, URL and headers shared by every request.
        timeout: Seconds before a request is abandoned as a timeout.
        expected_statuses: Status codes that count as success.  Anything
            else, including status ``0``, marks the sample as failed.
    """

    def __init__(
        self,
        target: RequestTarget,
        timeout: float,
        expected_statuses: Iterable[int] = range(200, 400),
    ):
        self.target = target
        self.timeout = timeout
        self.expected_statuses = frozenset(expected_statuses)

    def send(self, session: requests.Session, body: Any = None) -> HttpResult:
        """
        Send one request and capture the outcome.

        Args:
            session: The calling virtual user's session.
            body: JSON-serialisable request body, or ``None``.

        Returns:
            The captured result; ``status`` is ``0`` and ``error`` is set
            when the request failed below HTTP.
        """
        started = time.perf_counter()
        try:
            response = session.request(
                method=self.target.method,
                url=self.target.url,
                headers=self.target.headers,
                json=body,
                allow_redirects=False,
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            elapsed_ms = (time.perf_counter() - started) * 1000.0
            error = _classify(exc)
            logger.debug("%s %s failed: %s", self.target.method, self.target.url, error.describe())
            return HttpResult(
                status=TRANSPORT_ERROR_STATUS,
                latency_ms=elapsed_ms,
                error=error.describe(),
            )

        elapsed_ms = (time.perf_counter() - started) * 1000.0
        return HttpResult(
            status=response.status_code,
            latency_ms=elapsed_ms,
            body=response.content,
            headers=dict(response.headers),
        )

    def is_failure(self, result: HttpResult) -> bool:
        """Return True when ``result`` counts towards the error rate."""
        return result.error is not None or result.status not in self.expected_statuses
