"""
Async client for the delivery platform's vendor listing API.

Keeps every HTTP detail here: URL and query building, status classification, retries
and the rate limiter. The rest of the pipeline only sees PageResult objects holding the
raw vendor JSON.

Listing envelope:

    {"data": {"items": [...], "returned_count": 48, "available_count": 311}}

The page cursor is the listing offset. A response may also carry an explicit
``data.next_cursor`` which then wins over the offset arithmetic.

Per-vendor documents (details, rating distribution, reviews) go through
``fetch_document`` and share the same limiter and retry policy.
"""
from __future__ import annotations

import asyncio
import itertools
import logging
import random
from dataclasses import replace
from typing import Any, AsyncIterator, Awaitable, Callable, Mapping, TypeVar

import httpx

from vendor_ingestion.backoff import BackoffPolicy, build_retrying
from vendor_ingestion.domain import DocumentResult, PageResult
from vendor_ingestion.errors import (
    FetchError,
    PermanentFetchError,
    RateLimitedError,
    TransientFetchError,
)
from vendor_ingestion.pipeline_config import ApiSpec
from vendor_ingestion.rate_limiter import RateLimiter

logger = logging.getLogger(__name__)

FIRST_CURSOR = 0

T = TypeVar("T")


def classify_status(status_code: int, city_id: str) -> FetchError | None:
    """Map a non-200 status to the fetch error taxonomy. 2xx maps to None."""
    if 200 <= status_code < 300:
        return None
    if status_code == 429:
        return RateLimitedError(f"City {city_id}: rate limited (HTTP 429)", status_code=status_code)
    if status_code >= 500:
        return TransientFetchError(f"City {city_id}: server error (HTTP {status_code})", status_code=status_code)
    # 401/403 included: token refresh is not supported, so auth failures are final
    return PermanentFetchError(f"City {city_id}: request rejected (HTTP {status_code})", status_code=status_code)


def _as_int(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    return None


def parse_listing_page(payload: Any, city_id: str, cursor: int) -> PageResult:
    """Turn a decoded listing response into a PageResult; shape problems are transient."""
    data = payload.get("data") if isinstance(payload, dict) else None
    if not isinstance(data, dict):
        raise TransientFetchError(f"City {city_id}: response has no 'data' object")

    items = data.get("items")
    if items is None:
        items = []
    if not isinstance(items, list):
        raise TransientFetchError(f"City {city_id}: 'data.items' is not a list")

    returned = _as_int(data.get("returned_count"))
    if returned is None:
        returned = len(items)
    available = _as_int(data.get("available_count"))

    if "next_cursor" in data:
        next_cursor = _as_int(data.get("next_cursor"))
    elif returned > 0 and available is not None and cursor + returned < available:
        next_cursor = cursor + returned
    else:
        next_cursor = None

    if next_cursor is not None and next_cursor <= cursor:
        # A cursor that does not move forward would page forever
        raise TransientFetchError(f"City {city_id}: non-advancing cursor {next_cursor} after {cursor}")

    return PageResult(
        city_id=city_id,
        cursor=cursor,
        vendors=items,
        next_cursor=next_cursor,
        available_count=available,
    )


class VendorApiClient:
    """
    One page fetch = up to ``policy.max_retries`` attempts. Each attempt holds a rate
    limiter permit only while the request is on the wire; backoff sleeps happen
    without a permit.
    """

    def __init__(
        self,
        spec: ApiSpec,
        limiter: RateLimiter,
        policy: BackoffPolicy,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        rng: random.Random | None = None,
    ):
        self.spec = spec
        self.limiter = limiter
        self.policy = policy
        self._sleep = sleep
        self._rng = rng
        self._user_agents = itertools.cycle(spec.user_agents or [None])

        self._client = httpx.AsyncClient(
            headers=spec.headers,
            timeout=spec.attempt_timeout_seconds,
            transport=transport,
        )

    async def __aenter__(self) -> "VendorApiClient":
        return self

    async def __aexit__(self, exc_type, exc_value, tb) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    def _params(self, city_id: str, cursor: int) -> dict[str, str]:
        params = dict(self.spec.base_params)
        params.update({
            "city_id": city_id,
            "offset": str(cursor),
            "limit": str(self.spec.page_size),
        })
        return params

    def _next_headers(self) -> dict[str, str]:
        user_agent = next(self._user_agents)
        return {"User-Agent": user_agent} if user_agent else {}

    async def _request_json(self, city_id: str, url: str, params: dict[str, str], what: str) -> Any:
        """One attempt: a single GET under a limiter permit, decoded as JSON."""
        async with self.limiter.acquire(city_id) as permit:
            logger.debug("City %s: GET %s (in flight=%s)", city_id, what, permit.in_flight)
            try:
                response = await asyncio.wait_for(
                    self._client.get(url, params=params, headers=self._next_headers()),
                    timeout=self.spec.attempt_timeout_seconds,
                )
            except (httpx.TimeoutException, asyncio.TimeoutError) as e:
                raise TransientFetchError(f"City {city_id}: request timed out for {what}") from e
            except httpx.TransportError as e:
                raise TransientFetchError(f"City {city_id}: transport error for {what}: {e}") from e

        error = classify_status(response.status_code, city_id)
        if error is not None:
            logger.debug("City %s: HTTP %s body=%s", city_id, response.status_code, response.text[:500])
            raise error

        try:
            return response.json()
        except ValueError as e:
            # JSONDecodeError, UnicodeDecodeError and int() digit-limit errors all land here
            logger.error("City %s: invalid JSON response for %s body=%s", city_id, what, response.text[:500])
            raise TransientFetchError(f"City {city_id}: invalid JSON for {what}") from e

    async def _with_retries(self, operation: str, call: Callable[[], Awaitable[T]]) -> tuple[T, int]:
        attempts = 0
        retrying = build_retrying(self.policy, operation, sleep=self._sleep, rng=self._rng)
        try:
            async for attempt in retrying:
                with attempt:
                    attempts = attempt.retry_state.attempt_number
                    result = await call()
        except FetchError as e:
            e.attempts = attempts
            raise
        return result, attempts

    async def fetch_city_vendors(self, city_id: str, page_cursor: int = FIRST_CURSOR) -> PageResult:
        """Fetch one page with retries. Raises the last FetchError when retries run out."""
        async def fetch_page() -> PageResult:
            payload = await self._request_json(
                city_id, self.spec.vendors_url, self._params(city_id, page_cursor), f"offset {page_cursor}"
            )
            return parse_listing_page(payload, city_id, page_cursor)

        page, attempts = await self._with_retries(f"Fetch city {city_id} offset {page_cursor}", fetch_page)
        return replace(page, attempts=attempts)

    async def iter_city_pages(self, city_id: str) -> AsyncIterator[PageResult]:
        """Yield pages in cursor order until the listing has no next cursor."""
        cursor: int | None = FIRST_CURSOR
        while cursor is not None:
            page = await self.fetch_city_vendors(city_id, cursor)
            yield page
            cursor = page.next_cursor

    async def fetch_document(
        self,
        city_id: str,
        url: str,
        params: Mapping[str, str],
        what: str,
        parse: Callable[[Any], Any] | None = None,
    ) -> DocumentResult:
        """
        Fetch any JSON document (vendor details, ratings, reviews) with the same
        limiter, status classification and retries as a listing page.

        ``parse`` runs inside each attempt, so a shape error it raises as
        TransientFetchError is retried like a bad status.
        """
        async def fetch() -> Any:
            payload = await self._request_json(city_id, url, dict(params), what)
            return parse(payload) if parse is not None else payload

        payload, attempts = await self._with_retries(f"Fetch {what} (city {city_id})", fetch)
        return DocumentResult(payload=payload, attempts=attempts)
