"""Shared behaviour for remote task-source API clients.

Every source client follows the same rules:
1. Pagination drives a cursor loop to exhaustion and returns all records
2. A fixed delay separates consecutive page requests
3. HTTP 429 is retried using the provider's Retry-After hint, a bounded number of times
4. HTTP 401/403 raise AuthenticationError and are never retried
5. HTTP 404 on single-record fetches returns None instead of raising
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, ClassVar, TypeVar

import httpx

from tasksync.errors import AuthenticationError, RateLimitError, TransportError
from tasksync.settings import Settings, get_settings

logger = logging.getLogger(__name__)

T = TypeVar("T")

SleepFn = Callable[[float], Awaitable[None]]
PageFetcher = Callable[[Any], Awaitable[tuple[list[T], Any]]]

DEFAULT_RETRY_AFTER_SECONDS = 1.0


def parse_retry_after(value: str | None, default: float = DEFAULT_RETRY_AFTER_SECONDS) -> float:
    """Parse a Retry-After header given either as seconds or as an HTTP date."""
    if not value:
        return default
    value = value.strip()
    try:
        return max(0.0, float(value))
    except ValueError:
        pass
    try:
        retry_at = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return default
    if retry_at.tzinfo is None:
        retry_at = retry_at.replace(tzinfo=timezone.utc)
    return max(0.0, (retry_at - datetime.now(timezone.utc)).total_seconds())


class RemoteClient:
    """Pagination and rate-limit handling independent of the transport."""

    system: ClassVar[str] = "remote"

    def __init__(self, settings: Settings | None = None, sleep: SleepFn | None = None) -> None:
        self._settings = settings or get_settings()
        self._sleep = sleep or asyncio.sleep

    @property
    def max_retries(self) -> int:
        return self._settings.max_retries

    async def paginate(self, fetch_page: PageFetcher[T]) -> list[T]:
        """Fetch every page and return all records in page order.

        Args:
            fetch_page: Called with the current cursor (None for the first page);
                returns the page's records and the next cursor, or a falsy
                cursor when there are no more pages.

        Returns:
            All records from all pages
        """
        records: list[T] = []
        cursor: Any = None
        page = 0
        while True:
            items, cursor = await fetch_page(cursor)
            page += 1
            records.extend(items)
            if not cursor:
                break
            await self._sleep(self._settings.page_delay_seconds)

        logger.debug(f"{self.system}: fetched {len(records)} records in {page} page(s)")
        return records

    async def _backoff(self, retry_after: str | None, attempt: int, what: str) -> None:
        delay = parse_retry_after(retry_after)
        logger.warning(
            f"{self.system}: rate limited on {what}, retrying in {delay:.1f}s "
            f"(attempt {attempt + 1}/{self.max_retries})"
        )
        await self._sleep(delay)


class ApiClient(RemoteClient):
    """Bearer-token REST client built on httpx.

    Subclasses set ``system`` and ``base_url`` and add source-specific methods.
    A caller-supplied ``http_client`` is shared and left open on close.
    """

    base_url: ClassVar[str] = ""

    def __init__(
        self,
        token: str,
        *,
        http_client: httpx.AsyncClient | None = None,
        settings: Settings | None = None,
        sleep: SleepFn | None = None,
    ) -> None:
        super().__init__(settings=settings, sleep=sleep)
        self._token = token
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(
            timeout=httpx.Timeout(self._settings.http_timeout_seconds)
        )

    async def __aenter__(self) -> "ApiClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    def _default_headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self._token}",
            "Accept": "application/json",
        }

    def _auth_error_message(self, response: httpx.Response) -> str:
        return f"{self.system} authentication failed ({response.status_code})"

    def _url(self, path: str) -> str:
        if path.startswith(("http://", "https://")):
            return path
        return f"{self.base_url}{path}"

    async def request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json: Any = None,
        headers: dict[str, str] | None = None,
        allow_not_found: bool = False,
        authenticated: bool = True,
    ) -> httpx.Response | None:
        """Send a request, retrying on rate limits.

        Args:
            method: HTTP method
            path: Path relative to base_url, or an absolute URL
            params: Query parameters
            json: JSON body
            headers: Extra headers
            allow_not_found: Return None on 404 instead of raising
            authenticated: Send the bearer token (disable for signed URLs)

        Returns:
            The response, or None for an allowed 404

        Raises:
            AuthenticationError: On 401/403
            RateLimitError: When 429 persists past the retry budget
            TransportError: On network failures and other error statuses
        """
        request_headers = self._default_headers() if authenticated else {}
        if headers:
            request_headers.update(headers)
        url = self._url(path)

        for attempt in range(self.max_retries + 1):
            try:
                response = await self._client.request(
                    method, url, params=params, json=json, headers=request_headers
                )
            except httpx.TimeoutException as e:
                raise TransportError(
                    f"{self.system} request timed out: {method} {path}", system=self.system
                ) from e
            except httpx.HTTPError as e:
                raise TransportError(
                    f"{self.system} request failed: {e}", system=self.system
                ) from e

            status = response.status_code
            if status in (401, 403):
                raise AuthenticationError(self._auth_error_message(response), system=self.system)
            if status == 404 and allow_not_found:
                return None
            if status == 429:
                retry_after = response.headers.get("Retry-After")
                if attempt < self.max_retries:
                    await self._backoff(retry_after, attempt, f"{method} {path}")
                    continue
                raise RateLimitError(
                    f"{self.system} rate limit exceeded after {self.max_retries} retries",
                    retry_after=parse_retry_after(retry_after),
                    system=self.system,
                )
            if status >= 400:
                raise TransportError(
                    f"{self.system} API error {status}: {response.text[:500]}",
                    status_code=status,
                    system=self.system,
                )
            return response

        # Unreachable: the loop either returns or raises
        raise TransportError(f"{self.system} request failed: {method} {path}", system=self.system)

    async def request_response(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        """Send a request that must yield a response; a 404 raises TransportError."""
        response = await self.request(method, path, **kwargs)
        if response is None:
            raise TransportError(
                f"{self.system} returned no response for {method} {path}",
                status_code=404,
                system=self.system,
            )
        return response

    async def request_json(self, method: str, path: str, **kwargs: Any) -> Any:
        """Send a request and decode the JSON body (None for an allowed 404 or empty body)."""
        response = await self.request(method, path, **kwargs)
        if response is None or not response.content:
            return None
        return response.json()
