"""
Shared JSON-over-HTTP plumbing for the scheduling, calendar and CRM adapters.

- Structured error mapping (which status codes are worth retrying)
- Bounded retry with exponential backoff on 429/5xx/transport errors
- Request timing in the log line
"""

import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx

logger = logging.getLogger(__name__)


@dataclass
class HttpResponse:
    """Wrapper for adapter responses with structured error info"""
    success: bool
    status_code: int
    data: Optional[Any] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    should_retry: bool = False


@dataclass
class HttpError:
    code: str
    message: str
    status_code: int
    retryable: bool = False


ERROR_MAP = {
    400: HttpError("bad_request", "Invalid request", 400, False),
    401: HttpError("unauthorized", "Invalid or missing credentials", 401, False),
    403: HttpError("forbidden", "Access denied to this resource", 403, False),
    404: HttpError("not_found", "Resource not found", 404, False),
    409: HttpError("conflict", "Resource state conflict", 409, False),
    422: HttpError("validation_error", "Invalid request data", 422, False),
    429: HttpError("rate_limited", "Too many requests", 429, True),
    500: HttpError("server_error", "Upstream server error", 500, True),
    502: HttpError("bad_gateway", "Upstream gateway error", 502, True),
    503: HttpError("service_unavailable", "Upstream service unavailable", 503, True),
    504: HttpError("gateway_timeout", "Upstream timeout", 504, True),
}


def map_error(status_code: int, response_data: Optional[Any]) -> HttpError:
    """Map HTTP status code to structured error"""
    if status_code in ERROR_MAP:
        error = ERROR_MAP[status_code]
        if isinstance(response_data, dict):
            msg = response_data.get("message") or response_data.get("error")
            if isinstance(msg, dict):
                msg = msg.get("message")
            if msg:
                return HttpError(error.code, str(msg), status_code, error.retryable)
        return error

    if status_code >= 500:
        return HttpError("server_error", f"Server error: {status_code}", status_code, True)

    return HttpError("unknown", f"Unknown error: {status_code}", status_code, False)


class JsonHttpClient:
    """Base class: subclasses provide base_url and _headers()."""

    name = "http"

    def __init__(
        self,
        base_url: str,
        timeout: float = 15,
        max_retries: int = 2,
        base_delay: float = 0.5,
        http_client: Optional[httpx.Client] = None
    ):
        self.base_url = base_url.rstrip("/")
        self.max_retries = max(1, max_retries)
        self.base_delay = base_delay
        self.http = http_client or httpx.Client(timeout=timeout)

    def _headers(self) -> Dict[str, str]:
        return {"Content-Type": "application/json", "Accept": "application/json"}

    def _make_request(
        self,
        method: str,
        endpoint: str,
        payload: Optional[Dict] = None,
        params: Optional[Dict] = None
    ) -> HttpResponse:
        url = f"{self.base_url}{endpoint}"
        start_time = time.time()
        last_error = None
        last_status = 0

        for attempt in range(self.max_retries):
            try:
                response = self.http.request(
                    method, url, headers=self._headers(), json=payload, params=params
                )
            except httpx.HTTPError as e:
                last_error = str(e)
                logger.warning(f"{self.name} {method} {endpoint} failed: {e} (attempt {attempt + 1})")
                if attempt + 1 < self.max_retries:
                    self._backoff(attempt)
                continue

            status_code = response.status_code
            last_status = status_code
            try:
                data = response.json() if response.content else None
            except ValueError:
                data = None

            duration_ms = int((time.time() - start_time) * 1000)

            if 200 <= status_code < 300:
                logger.debug(f"{self.name} {method} {endpoint} -> {status_code} ({duration_ms}ms)")
                return HttpResponse(success=True, status_code=status_code, data=data)

            error = map_error(status_code, data)
            if error.retryable and attempt + 1 < self.max_retries:
                logger.warning(
                    f"{self.name} {method} {endpoint} -> {status_code}, retrying (attempt {attempt + 1})"
                )
                self._backoff(attempt)
                continue

            logger.warning(f"{self.name} {method} {endpoint} -> {status_code}: {error.message} ({duration_ms}ms)")
            return HttpResponse(
                success=False,
                status_code=status_code,
                data=data,
                error=error.message,
                error_code=error.code,
                should_retry=error.retryable,
            )

        return HttpResponse(
            success=False,
            status_code=last_status,
            error=f"All retries failed: {last_error}",
            error_code="transport_error",
            should_retry=True,
        )

    def _backoff(self, attempt: int):
        if self.base_delay > 0:
            time.sleep(min(self.base_delay * (2 ** attempt), 10.0))

    def close(self):
        self.http.close()
