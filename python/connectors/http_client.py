"""
Outbound HTTP client shared by the registry connectors.

Wraps a pooled requests.Session and translates transport failures and
HTTP statuses into connector errors:

- timeouts, connection errors, 429, 5xx and other non-2xx -> SourceUnavailable
- 404 -> RecordNotFound
- undecodable JSON -> SourceUnavailable
"""

import logging
from typing import Any, Dict, Optional

import requests
from requests.adapters import HTTPAdapter

from connectors.errors import RecordNotFound, SourceUnavailable
from text_utils import sanitize_for_logging

logger = logging.getLogger(__name__)


class HttpClient:
    """JSON-over-HTTP GET client with per-call timeouts."""

    def __init__(self, user_agent: str = "IdentityScreening/1.0", timeout: float = 10,
                 pool_size: int = 10, session: Optional[requests.Session] = None):
        self.timeout = timeout
        self.user_agent = user_agent
        self.session = session or requests.Session()
        if session is None:
            adapter = HTTPAdapter(pool_connections=pool_size, pool_maxsize=pool_size)
            self.session.mount("https://", adapter)
            self.session.mount("http://", adapter)

    def get_json(
        self,
        url: str,
        source_id: str,
        params: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
        timeout: Optional[float] = None,
    ) -> Any:
        """GET a URL and decode its JSON body.

        Args:
            url: Absolute URL
            source_id: Connector id used in raised errors
            params: Query string parameters
            headers: Extra headers merged over the defaults
            timeout: Per-call timeout in seconds (client default if None)

        Returns:
            Decoded JSON document

        Raises:
            SourceUnavailable: On timeout, transport error or non-2xx status
            RecordNotFound: On HTTP 404
        """
        request_headers = {"Accept": "application/json", "User-Agent": self.user_agent}
        if headers:
            request_headers.update(headers)
        timeout = timeout or self.timeout

        try:
            response = self.session.get(url, params=params, headers=request_headers, timeout=timeout)
        except requests.Timeout:
            raise SourceUnavailable(source_id, f"timed out after {timeout}s")
        except requests.RequestException as e:
            raise SourceUnavailable(source_id, f"transport error: {sanitize_for_logging(str(e))}")

        status = response.status_code
        if status == 404:
            raise RecordNotFound(source_id, f"no record at {sanitize_for_logging(url)}")
        if status == 429:
            raise SourceUnavailable(source_id, "rate limited (HTTP 429)")
        if not 200 <= status < 300:
            raise SourceUnavailable(source_id, f"HTTP {status}")

        try:
            return response.json()
        except ValueError:
            raise SourceUnavailable(source_id, "response body is not valid JSON")

    def close(self) -> None:
        self.session.close()
