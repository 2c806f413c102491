"""
Optional per-vendor enrichment: detail document, rating distribution and reviews.

Each listing record comes back as a new dict with an ``enrichment`` object added:

    {"code": "a1b2", "name": ..., "enrichment": {"details": {...}, "ratings": {...}, "reviews": [...]}}

Requests go through the shared VendorApiClient, so the rate limiter and the retry
policy cover enrichment traffic too. Enrichment never fails a city: a vendor whose
details answer HTTP 400 is kept as listed, and any other failure is logged and counted.
Rating and review lookups only run after details succeeded; their failures leave the
key out.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable, Mapping, Protocol, Sequence
from urllib.parse import quote

from vendor_ingestion.domain import DocumentResult
from vendor_ingestion.errors import FetchError, PermanentFetchError, TransformError, TransientFetchError
from vendor_ingestion.pipeline_config import VENDOR_CODE_PLACEHOLDER, EnrichmentSpec
from vendor_ingestion.transform import VENDOR_FIELDS, read_field

logger = logging.getLogger(__name__)

# Listed vendors that are closed or delisted answer 400 on the details endpoint
DETAILS_UNAVAILABLE_STATUS = 400


class DocumentFetcher(Protocol):
    async def fetch_document(
        self,
        city_id: str,
        url: str,
        params: Mapping[str, str],
        what: str,
        parse: Callable[[Any], Any] | None = None,
    ) -> DocumentResult:
        ...


def vendor_code_of(raw: Any) -> str | None:
    if not isinstance(raw, dict):
        return None
    try:
        return read_field(raw, "vendor_id", VENDOR_FIELDS["vendor_id"])
    except TransformError:
        return None


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def ratings_average(distribution: Mapping[str, Any]) -> float | None:
    """Count-weighted mean score of a rating distribution; None when nobody rated."""
    total = 0
    weighted = 0.0
    for bucket in distribution.get("ratings") or []:
        if not isinstance(bucket, dict):
            continue
        score, count = bucket.get("score"), bucket.get("count")
        if not _is_number(score) or not _is_number(count) or count <= 0:
            continue
        total += count
        weighted += score * count
    return round(weighted / total, 2) if total else None


# ----------------------------
# Response shapes
# ----------------------------
def parse_details(payload: Any) -> dict[str, Any]:
    data = payload.get("data") if isinstance(payload, dict) else None
    if not isinstance(data, dict):
        raise TransientFetchError("vendor details response has no 'data' object")
    return data


def parse_ratings(payload: Any) -> dict[str, Any]:
    if not isinstance(payload, dict) or not isinstance(payload.get("ratings"), list):
        raise TransientFetchError("ratings response has no 'ratings' list")
    return {**payload, "average": ratings_average(payload)}


def parse_reviews(payload: Any) -> list[Any]:
    data = payload.get("data") if isinstance(payload, dict) else None
    if not isinstance(data, list):
        raise TransientFetchError("reviews response has no 'data' list")
    return data


@dataclass
class EnrichmentResult:
    """Records in input order plus per-call counters for the city job."""
    vendors: list[Any]
    enriched: int = 0
    skipped: int = 0
    failed: int = 0
    attempts: int = 0


class VendorEnricher:
    def __init__(self, client: DocumentFetcher, spec: EnrichmentSpec):
        self.client = client
        self.spec = spec

    @staticmethod
    def _url(template: str, vendor_code: str) -> str:
        return template.replace(VENDOR_CODE_PLACEHOLDER, quote(vendor_code, safe=""))

    async def enrich_vendors(self, city_id: str, vendors: Sequence[Any]) -> EnrichmentResult:
        """At most ``max_concurrent_vendors`` vendors are looked up at once per call."""
        result = EnrichmentResult(vendors=list(vendors))
        semaphore = asyncio.Semaphore(self.spec.max_concurrent_vendors)

        async def enrich_at(index: int, raw: Any) -> None:
            async with semaphore:
                result.vendors[index] = await self._enrich_one(city_id, raw, result)

        async with asyncio.TaskGroup() as group:
            for index, raw in enumerate(vendors):
                group.create_task(enrich_at(index, raw))

        logger.debug(
            "City %s: enriched %s of %s vendors (%s skipped, %s failed)",
            city_id,
            result.enriched,
            len(result.vendors),
            result.skipped,
            result.failed,
        )
        return result

    async def _enrich_one(self, city_id: str, raw: Any, result: EnrichmentResult) -> Any:
        code = vendor_code_of(raw)
        if code is None:
            # the transform drops it anyway
            result.skipped += 1
            return raw

        try:
            details = await self.client.fetch_document(
                city_id,
                self._url(self.spec.details_url, code),
                self.spec.details_params,
                f"details of vendor {code}",
                parse=parse_details,
            )
        except FetchError as e:
            result.attempts += e.attempts
            if isinstance(e, PermanentFetchError) and e.status_code == DETAILS_UNAVAILABLE_STATUS:
                logger.debug("City %s: vendor %s has no details (HTTP 400); kept as listed", city_id, code)
                result.skipped += 1
            else:
                logger.warning("City %s: enrichment of vendor %s failed (%s): %s", city_id, code, e.kind, e)
                result.failed += 1
            return raw
        result.attempts += details.attempts

        enrichment: dict[str, Any] = {"details": details.payload}
        lookups: dict[str, Any] = {}
        if self.spec.fetch_ratings:
            lookups["ratings"] = self._optional_document(
                city_id, code, self.spec.ratings_url, self.spec.ratings_params, "ratings", parse_ratings, result
            )
        if self.spec.fetch_reviews:
            lookups["reviews"] = self._optional_document(
                city_id, code, self.spec.reviews_url, self.spec.reviews_params, "reviews", parse_reviews, result
            )
        for key, payload in zip(lookups, await asyncio.gather(*lookups.values())):
            if payload is not None:
                enrichment[key] = payload

        result.enriched += 1
        return {**raw, "enrichment": enrichment}

    async def _optional_document(
        self,
        city_id: str,
        code: str,
        template: str,
        params: Mapping[str, str],
        what: str,
        parse: Callable[[Any], Any],
        result: EnrichmentResult,
    ) -> Any | None:
        try:
            document = await self.client.fetch_document(
                city_id, self._url(template, code), params, f"{what} of vendor {code}", parse=parse
            )
        except FetchError as e:
            result.attempts += e.attempts
            logger.debug("City %s: no %s for vendor %s (%s): %s", city_id, what, code, e.kind, e)
            return None
        result.attempts += document.attempts
        return document.payload
