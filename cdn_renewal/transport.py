"""
Authenticated REST transport for the CDN and certificate APIs.

Performs bearer-token requests and classifies each response as success or
failure by the status code expected for its verb.
"""

import json
from typing import Any, Dict, Iterator, Optional

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from .config_loader import ApiSettings, ConfigurationError
from .logger import get_logger


class ApiError(Exception):
    """Base class for provider API failures."""
    pass


class TransportError(ApiError):
    """Raised when the request never produced an HTTP response."""
    pass


class UnexpectedStatusError(ApiError):
    """
    Raised when the server answered with a status other than the one
    expected for the verb.

    The status code is the failure value; the body is kept for diagnostics.
    """

    def __init__(self, method: str, url: str, status_code: int, body: str = ""):
        self.method = method
        self.url = url
        self.status_code = status_code
        self.body = body
        super().__init__(f"{method} {url} returned HTTP {status_code}")


class NotFoundError(UnexpectedStatusError):
    """Raised on HTTP 404, and for lookups that matched nothing."""

    def __init__(self, method: str = "", url: str = "", status_code: int = 404,
                 body: str = "", message: Optional[str] = None):
        super().__init__(method, url, status_code, body)
        if message:
            self.args = (message,)


EXPECTED_STATUS = {
    "GET": 200,
    "PUT": 200,
    "POST": 201,
    "DELETE": 204,
}

# Retried on read errors and retryable statuses. POST uploads are not
# idempotent. A DELETE whose response was lost would come back as 404 on
# retry. Connection errors are retried for every method.
RETRYABLE_METHODS = frozenset(["GET", "PUT"])
RETRYABLE_STATUS = (429, 502, 503, 504)

REDACTED_FIELDS = ("private_key",)


class ApiClient:
    """
    Minimal JSON REST client with bearer authentication.

    Every call carries a bounded (connect, read) timeout. Transient failures
    on idempotent verbs are retried with exponential backoff by urllib3.
    """

    def __init__(self, api: ApiSettings, session: Optional[requests.Session] = None):
        """
        Initialize the client.

        Args:
            api: API settings (token, timeouts, retry policy)
            session: Optional pre-built session, mainly for tests

        Raises:
            ConfigurationError: If no API token is configured
        """
        if not api.token:
            raise ConfigurationError(
                "API token not configured. Set api.token in the configuration file"
            )

        self.api = api
        self.logger = get_logger()
        self.timeout = (api.timeout_connect, api.timeout_read)
        self.session = session or self._build_session()
        self.session.headers.update({
            "Authorization": f"Bearer {api.token}",
            "Content-Type": "application/json",
        })

    def _build_session(self) -> requests.Session:
        """Build a requests session with the retry policy mounted."""
        session = requests.Session()
        retry = Retry(
            total=self.api.max_retries,
            connect=self.api.max_retries,
            read=self.api.max_retries,
            backoff_factor=self.api.backoff_factor,
            status_forcelist=RETRYABLE_STATUS,
            allowed_methods=RETRYABLE_METHODS,
            raise_on_status=False,
            respect_retry_after_header=True,
        )
        adapter = HTTPAdapter(max_retries=retry)
        session.mount("https://", adapter)
        session.mount("http://", adapter)
        return session

    def request(
        self,
        method: str,
        url: str,
        body: Optional[bytes] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """
        Perform a request and return the decoded JSON body.

        Args:
            method: One of GET, PUT, POST, DELETE
            url: Absolute endpoint URL
            body: Optional JSON-encoded request body
            params: Optional query parameters

        Returns:
            Decoded response body, or an empty dict when there is none

        Raises:
            TransportError: On connection failure or timeout
            NotFoundError: On HTTP 404
            UnexpectedStatusError: On any other unexpected status
        """
        method = method.upper()
        if method not in EXPECTED_STATUS:
            raise ValueError(f"Unsupported HTTP method: {method}")

        self.logger.debug(f"HTTP {method} {url} {_describe_body(body)}".rstrip())

        try:
            response = self.session.request(
                method,
                url,
                data=body,
                params=params,
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise TransportError(f"{method} {url} failed: {e}") from e

        status = response.status_code
        self.logger.debug(f"HTTP {method} {url} -> {status}")

        if status != EXPECTED_STATUS[method]:
            text = response.text or ""
            if status == 404:
                raise NotFoundError(method, url, status, text)
            raise UnexpectedStatusError(method, url, status, text)

        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError as e:
            raise UnexpectedStatusError(method, url, status, response.text) from e

    def get(self, url: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        return self.request("GET", url, params=params)

    def put(self, url: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        return self.request("PUT", url, body=encode_body(payload))

    def post(self, url: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        return self.request("POST", url, body=encode_body(payload))

    def delete(self, url: str) -> None:
        self.request("DELETE", url)

    def paginate(self, url: str, key: str, per_page: Optional[int] = None) -> Iterator[Dict[str, Any]]:
        """
        Iterate over every item of a paginated collection in provider order.

        Pages are requested one at a time; iteration ends once meta.total
        items have been yielded or a page comes back empty.

        Args:
            url: Collection URL
            key: Name of the list field in each page (e.g. "endpoints")
            per_page: Page size, defaults to the configured one

        Yields:
            Raw item dicts
        """
        per_page = per_page or self.api.per_page
        page = 1
        seen = 0

        while True:
            data = self.get(url, params={"page": page, "per_page": per_page})
            items = data.get(key) or []
            total = (data.get("meta") or {}).get("total", len(items))

            for item in items:
                yield item
                seen += 1
                if seen >= total:
                    return

            if not items or seen >= total:
                return
            page += 1


def encode_body(payload: Dict[str, Any]) -> bytes:
    """
    JSON-encode a request payload.

    String values that span lines (PEM blobs) come out as single-line JSON
    strings with each newline written as the two characters backslash-n.
    """
    return json.dumps(payload).encode("utf-8")


def _describe_body(body: Optional[bytes]) -> str:
    if not body:
        return ""
    try:
        payload = json.loads(body)
    except ValueError:
        return f"({len(body)} bytes)"
    if isinstance(payload, dict):
        payload = {
            k: ("<REDACTED>" if k in REDACTED_FIELDS else v)
            for k, v in payload.items()
        }
        payload = {
            k: (f"<{len(v)} chars>" if isinstance(v, str) and "\n" in v else v)
            for k, v in payload.items()
        }
    return json.dumps(payload)
