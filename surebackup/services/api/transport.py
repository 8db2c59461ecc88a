"""
HTTP transport for the management API.

A single call wrapper around ``requests.Session`` that owns retry/backoff,
correlation ids and TLS handling. It knows nothing about entities, pagination
or API generations beyond the headers an ``ApiRequestContext`` asks for.
"""
import enum
import logging
import random
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Callable, Dict, Optional

import requests
import urllib3
from urllib3.exceptions import InsecureRequestWarning

from surebackup.core.logging_handler import LoggingContext
from surebackup.services.api.errors import (
    ApiError,
    ApiClientError,
    ApiConnectionError,
    ApiRateLimitError,
    ApiResponseError,
    ApiServerError,
    ApiTlsError,
)

logger = logging.getLogger(__name__)

CORRELATION_HEADER = "X-Correlation-Id"
IDEMPOTENCY_HEADER = "NTNX-Request-Id"
CONCURRENCY_HEADER = "If-Match"


class ApiGeneration(str, enum.Enum):
    """Supported management API generations."""
    V4 = "v4"  # query-string pagination, ETag + If-Match, request-id idempotency
    V3 = "v3"  # POST /list pagination, spec_version in body


@dataclass
class ApiRequestContext:
    """Per-call metadata. Reused unchanged across retries of the same call."""
    generation: ApiGeneration
    correlation_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    concurrency_token: Optional[str] = None
    idempotency_key: Optional[str] = None

    @classmethod
    def for_mutation(
        cls,
        generation: ApiGeneration,
        concurrency_token: Optional[str] = None
    ) -> "ApiRequestContext":
        """Context for a new logical mutation: always mints a fresh idempotency key."""
        return cls(
            generation=generation,
            concurrency_token=concurrency_token,
            idempotency_key=str(uuid.uuid4()),
        )

    def headers(self) -> Dict[str, str]:
        headers = {CORRELATION_HEADER: self.correlation_id}
        if self.idempotency_key:
            headers[IDEMPOTENCY_HEADER] = self.idempotency_key
        if self.concurrency_token:
            headers[CONCURRENCY_HEADER] = self.concurrency_token
        return headers


@dataclass
class RetryPolicy:
    """
    Retry budget and backoff for transient API failures.

    The delay before retry ``n`` (1-based) is ``min(2**n, cap)`` plus a random
    jitter in ``[0, that value]``. A server supplied ``Retry-After`` on a 429
    replaces the computed delay. ``sleep`` and ``random_fn`` are injectable so
    the policy can be exercised without real timers.
    """
    retry_count: int = 3
    backoff_cap: float = 30.0
    sleep: Callable[[float], None] = time.sleep
    random_fn: Callable[[float, float], float] = random.uniform

    def __post_init__(self):
        if not 0 <= self.retry_count <= 10:
            raise ValueError(f"retry_count must be between 0 and 10, got {self.retry_count}")
        if self.backoff_cap <= 0:
            raise ValueError(f"backoff_cap must be positive, got {self.backoff_cap}")

    @property
    def max_attempts(self) -> int:
        return self.retry_count + 1

    def backoff(self, attempt: int) -> float:
        base = min(2 ** attempt, self.backoff_cap)
        return base + self.random_fn(0, base)

    def delay_for(self, attempt: int, error: ApiError) -> float:
        if isinstance(error, ApiRateLimitError) and error.retry_after is not None:
            return error.retry_after
        return self.backoff(attempt)

    @staticmethod
    def is_retryable(error: ApiError) -> bool:
        return isinstance(error, (ApiServerError, ApiRateLimitError, ApiConnectionError))


def parse_retry_after(value: Optional[str]) -> Optional[float]:
    """
    Parse a Retry-After header.

    Args:
        value: Either delta-seconds or an HTTP-date

    Returns:
        Seconds to wait (never negative), or None if absent/unparseable
    """
    if not value:
        return None
    value = value.strip()
    try:
        return max(0.0, float(value))
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return max(0.0, (when - datetime.now(timezone.utc)).total_seconds())


def _error_detail(response: requests.Response) -> str:
    """Pull a human readable message out of either generation's error body."""
    try:
        body = response.json()
    except ValueError:
        return (response.text or response.reason or "").strip()[:500]

    if isinstance(body, dict):
        # v3: {"message_list": [{"message": "..."}]}
        messages = body.get("message_list")
        if messages:
            return "; ".join(str(m.get("message", m)) for m in messages)
        # v4: {"data": {"error": [{"message": "..."}]}}
        data = body.get("data")
        if isinstance(data, dict) and data.get("error"):
            errors = data["error"]
            if isinstance(errors, list):
                return "; ".join(str(e.get("message", e)) for e in errors)
            return str(errors)
        if body.get("message"):
            return str(body["message"])
    return str(body)[:500]


class ApiTransport:
    """Service for issuing HTTP calls against the management API."""

    def __init__(
        self,
        base_url: str,
        username: Optional[str] = None,
        password: Optional[str] = None,
        token: Optional[str] = None,
        verify_tls: bool = True,
        timeout: float = 30.0,
        retry_policy: Optional[RetryPolicy] = None,
        session: Optional[requests.Session] = None
    ):
        """
        Initialize the transport.

        Args:
            base_url: Scheme, host and port of the management endpoint
            username: Basic-auth user (ignored when token is set)
            password: Basic-auth password
            token: Bearer token
            verify_tls: Verify the server certificate. Only an explicit False disables it.
            timeout: Per-request timeout in seconds
            retry_policy: Retry budget and backoff; defaults to RetryPolicy()
            session: Pre-built requests session (tests inject one)
        """
        self.base_url = base_url.rstrip("/")
        self.verify_tls = verify_tls
        self.timeout = timeout
        self.retry_policy = retry_policy or RetryPolicy()
        self.session = session or requests.Session()

        self.session.headers.update({
            "Accept": "application/json",
            "Content-Type": "application/json",
        })
        if token:
            self.session.headers["Authorization"] = f"Bearer {token}"
        elif username:
            self.session.auth = (username, password or "")

        if verify_tls is False:
            urllib3.disable_warnings(InsecureRequestWarning)
            logger.warning(f"TLS certificate verification is disabled for {self.base_url}")

    def close(self):
        self.session.close()

    def url_for(self, path: str) -> str:
        if path.startswith("http://") or path.startswith("https://"):
            return path
        return f"{self.base_url}/{path.lstrip('/')}"

    def request(
        self,
        method: str,
        path: str,
        context: ApiRequestContext,
        params: Optional[Dict[str, Any]] = None,
        json_body: Optional[Any] = None
    ) -> requests.Response:
        """
        Issue one logical call, retrying transient failures.

        Args:
            method: HTTP method
            path: Path relative to base_url (or an absolute URL)
            context: Request context; its headers are sent on every attempt
            params: Query string parameters
            json_body: JSON request body

        Returns:
            The successful response

        Raises:
            ApiTlsError: Certificate/TLS failure (never retried)
            ApiClientError: 4xx other than 429 (never retried)
            ApiServerError, ApiRateLimitError, ApiConnectionError: retry budget exhausted
        """
        url = self.url_for(path)
        headers = context.headers()
        policy = self.retry_policy
        last_error: Optional[ApiError] = None

        with LoggingContext(correlation_id=context.correlation_id):
            for attempt in range(1, policy.max_attempts + 1):
                started = time.monotonic()
                try:
                    response = self.session.request(
                        method,
                        url,
                        params=params,
                        json=json_body,
                        headers=headers,
                        timeout=self.timeout,
                        verify=self.verify_tls,
                    )
                except requests.exceptions.SSLError as e:
                    raise ApiTlsError(
                        f"TLS verification failed for {url}: {e}. Install the server's CA "
                        f"certificate, or use the insecure-TLS option (VERIFY_TLS=false) "
                        f"for lab environments with self-signed certificates.",
                        correlation_id=context.correlation_id,
                    ) from e
                except (requests.exceptions.ConnectionError, requests.exceptions.Timeout) as e:
                    error = ApiConnectionError(
                        f"{method} {path} failed to connect: {e}",
                        correlation_id=context.correlation_id,
                    )
                else:
                    elapsed_ms = (time.monotonic() - started) * 1000
                    logger.debug(
                        f"{method} {path} -> HTTP {response.status_code} in {elapsed_ms:.0f} ms "
                        f"(attempt {attempt}/{policy.max_attempts}, correlation_id={context.correlation_id})"
                    )
                    error = self._classify(method, path, response, context)
                    if error is None:
                        return response

                if not policy.is_retryable(error):
                    logger.error(f"{error} (correlation_id={context.correlation_id})")
                    raise error

                last_error = error
                if attempt >= policy.max_attempts:
                    break

                delay = policy.delay_for(attempt, error)
                logger.warning(
                    f"{error}; retrying in {delay:.1f}s "
                    f"(attempt {attempt}/{policy.max_attempts}, correlation_id={context.correlation_id})"
                )
                policy.sleep(delay)

        logger.error(
            f"{method} {path} gave up after {policy.max_attempts} attempt(s): {last_error} "
            f"(correlation_id={context.correlation_id})"
        )
        raise last_error

    @staticmethod
    def _classify(
        method: str,
        path: str,
        response: requests.Response,
        context: ApiRequestContext
    ) -> Optional[ApiError]:
        status = response.status_code
        if status < 400:
            return None

        detail = _error_detail(response)
        message = f"{method} {path} failed with HTTP {status}: {detail}"
        if status == 429:
            return ApiRateLimitError(
                message,
                retry_after=parse_retry_after(response.headers.get("Retry-After")),
                correlation_id=context.correlation_id,
            )
        if status >= 500:
            return ApiServerError(message, status, correlation_id=context.correlation_id)
        return ApiClientError(message, status, correlation_id=context.correlation_id)

    @staticmethod
    def decode_json(response: requests.Response, context: ApiRequestContext) -> Dict[str, Any]:
        """Decode a JSON body, treating an empty body as {}."""
        if not response.content:
            return {}
        try:
            body = response.json()
        except ValueError as e:
            raise ApiResponseError(
                f"Invalid JSON in response from {response.url}: {e}",
                correlation_id=context.correlation_id,
            ) from e
        if not isinstance(body, dict):
            raise ApiResponseError(
                f"Expected a JSON object from {response.url}, got {type(body).__name__}",
                correlation_id=context.correlation_id,
            )
        return body
