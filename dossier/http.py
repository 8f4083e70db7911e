"""A small JSON-over-HTTP client for stage handlers, with rate limiting and error classification.

Errors are split the way the queue backend needs them: 429, 5xx and network failures
raise TransientExternalError (worth retrying), any other non-2xx raises
NonRetryableExternalError (the job fails without further attempts).
"""

from collections.abc import Mapping
import time
from types import TracebackType
from typing import Any

import httpx

from dossier.config import Settings
from dossier.exception import NonRetryableExternalError, TransientExternalError
from dossier.rate_limiter import COMPANIES_HOUSE, RateLimiter, shared_limiter
from dossier.utils.logging_config import get_logger

log = get_logger(__name__)

DEFAULT_TIMEOUT_SECONDS = 10.0

# Longest slice of a response body quoted in an error message
_BODY_EXCERPT = 200


def is_transient_status(status_code: int) -> bool:
    return status_code == 429 or 500 <= status_code < 600


def raise_for_status(response: httpx.Response) -> None:
    """Raise the dossier error matching a non-2xx response."""

    if 200 <= response.status_code < 300:
        return

    if is_transient_status(response.status_code):
        raise TransientExternalError(f"Transient HTTP {response.status_code}", status_code=response.status_code)

    raise NonRetryableExternalError(
        f"HTTP {response.status_code}: {response.text[:_BODY_EXCERPT]}", status_code=response.status_code
    )


class JsonClient:
    """GET JSON from one API, one rate-limiter slot per request."""

    def __init__(
        self,
        base_url: str = "",
        headers: Mapping[str, str] | None = None,
        auth: httpx.Auth | tuple[str, str] | None = None,
        limiter: RateLimiter | None = None,
        retries: int = 0,
        backoff_seconds: float = 0.5,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        """
        @param base_url: Prefix for relative endpoints
        @param limiter: Acquired before every request, retries included
        @param retries: In-call retries of transient failures before giving up
        @param backoff_seconds: Base delay between in-call retries, doubled each time
        @param transport: Override the transport, e.g. httpx.MockTransport in tests
        """

        self.limiter = limiter
        self.retries = retries
        self.backoff_seconds = backoff_seconds
        self._client = httpx.Client(
            base_url=base_url.rstrip("/"),
            headers=dict(headers or {}),
            auth=auth,
            timeout=timeout,
            transport=transport,
        )

    def _get(self, endpoint: str, params: Mapping[str, Any] | None) -> Any:
        try:
            response = self._client.get(endpoint, params=params)
        except httpx.TransportError as err:
            raise TransientExternalError(f"Request to {endpoint} failed: {err}") from err

        raise_for_status(response)
        return response.json()

    def get_json(self, endpoint: str, params: Mapping[str, Any] | None = None) -> Any:
        """GET an endpoint and decode its JSON body.

        @param endpoint: An absolute URL, or a path relative to the base URL
        @param params: Query parameters
        @return: The decoded body
        """

        attempt = 0
        while True:
            try:
                if self.limiter is None:
                    return self._get(endpoint, params)
                return self.limiter.schedule(lambda: self._get(endpoint, params))
            except TransientExternalError as err:
                attempt += 1
                if attempt > self.retries:
                    log.error(f"HTTP GET {endpoint} failed: {err}")
                    raise

                wait = self.backoff_seconds * 2 ** (attempt - 1)
                log.warning(f"HTTP GET {endpoint} attempt {attempt} failed ({err}); retrying in {wait:.2f}s")
                time.sleep(wait)

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> "JsonClient":
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        self.close()


def companies_house_client(
    settings: Settings | None = None,
    transport: httpx.BaseTransport | None = None,
    retries: int = 4,
) -> JsonClient:
    """A client for the Companies House API sharing the process-wide Companies House limiter."""

    settings = settings or Settings.from_env()
    if not settings.ch_api_key:
        raise ValueError("Missing CH_API_KEY")

    return JsonClient(
        base_url=settings.ch_api_base,
        auth=(settings.ch_api_key, ""),
        limiter=shared_limiter(COMPANIES_HOUSE, settings=settings),
        retries=retries,
        transport=transport,
    )
