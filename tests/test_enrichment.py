import asyncio
from dataclasses import dataclass, field
from typing import Any

import httpx
import pytest

from conftest import vendor
from vendor_ingestion.api_client import VendorApiClient
from vendor_ingestion.backoff import BackoffPolicy
from vendor_ingestion.domain import DocumentResult
from vendor_ingestion.enrichment import VendorEnricher, ratings_average, vendor_code_of
from vendor_ingestion.errors import FetchError, PermanentFetchError, TransientFetchError
from vendor_ingestion.pipeline_config import ApiSpec, EnrichmentSpec
from vendor_ingestion.rate_limiter import RateLimiter

SPEC = EnrichmentSpec(
    enabled=True,
    details_url="https://details.test/vendors/{vendor_code}",
    ratings_url="https://reviews.test/ratings/{vendor_code}",
    reviews_url="https://reviews.test/reviews/{vendor_code}",
)

DISTRIBUTION = {
    "totalCount": 10,
    "ratings": [
        {"score": 5, "count": 6, "percentage": 60},
        {"score": 4, "count": 3, "percentage": 30},
        {"score": 1, "count": 1, "percentage": 10},
    ],
}


@dataclass
class FakeDocuments:
    """Serves prepared payloads by URL; a FetchError in place of a payload is raised."""
    documents: dict[str, Any]
    attempts: int = 1
    delay: float = 0.0
    calls: list[str] = field(default_factory=list)
    in_flight: int = 0
    peak: int = 0

    async def fetch_document(self, city_id, url, params, what, parse=None):
        self.calls.append(url)
        self.in_flight += 1
        self.peak = max(self.peak, self.in_flight)
        try:
            await asyncio.sleep(self.delay)
        finally:
            self.in_flight -= 1
        document = self.documents.get(url, PermanentFetchError("not found", status_code=404))
        if isinstance(document, FetchError):
            document.attempts = self.attempts
            raise document
        return DocumentResult(payload=parse(document) if parse else document, attempts=self.attempts)


def enrich(documents, vendors, spec=SPEC):
    return asyncio.run(VendorEnricher(documents, spec).enrich_vendors("69036", vendors))


def test_details_and_ratings_are_attached():
    documents = FakeDocuments({
        "https://details.test/vendors/a1": {"data": {"code": "a1", "rating": 4.4}},
        "https://reviews.test/ratings/a1": DISTRIBUTION,
    })
    listed = vendor("a1", "Burger Lab")

    result = enrich(documents, [listed])

    [record] = result.vendors
    assert record["enrichment"]["details"] == {"code": "a1", "rating": 4.4}
    assert record["enrichment"]["ratings"]["average"] == 4.3
    assert record["enrichment"]["ratings"]["totalCount"] == 10
    assert "reviews" not in record["enrichment"]
    assert "enrichment" not in listed
    assert (result.enriched, result.skipped, result.failed, result.attempts) == (1, 0, 0, 2)


def test_reviews_are_fetched_when_enabled():
    documents = FakeDocuments({
        "https://details.test/vendors/a1": {"data": {"code": "a1"}},
        "https://reviews.test/reviews/a1": {"data": [{"text": "great"}]},
    })
    spec = SPEC.model_copy(update={"fetch_ratings": False, "fetch_reviews": True})

    result = enrich(documents, [vendor("a1")], spec=spec)

    assert result.vendors[0]["enrichment"] == {"details": {"code": "a1"}, "reviews": [{"text": "great"}]}
    assert documents.calls == ["https://details.test/vendors/a1", "https://reviews.test/reviews/a1"]


def test_details_rejected_with_400_keeps_the_vendor_as_listed():
    documents = FakeDocuments({
        "https://details.test/vendors/gone": PermanentFetchError("bad request", status_code=400),
    })
    listed = vendor("gone", "Closed Cafe")

    result = enrich(documents, [listed])

    assert result.vendors == [listed]
    assert (result.enriched, result.skipped, result.failed) == (0, 1, 0)
    # no ratings lookup without details
    assert documents.calls == ["https://details.test/vendors/gone"]


def test_other_detail_failures_are_counted_not_raised():
    documents = FakeDocuments(
        {"https://details.test/vendors/a1": TransientFetchError("server error", status_code=503)},
        attempts=3,
    )

    result = enrich(documents, [vendor("a1"), vendor("b2")])

    assert [v["code"] for v in result.vendors] == ["a1", "b2"]
    assert all("enrichment" not in v for v in result.vendors)
    assert result.failed == 2
    assert result.attempts == 6


def test_rating_failure_leaves_details_in_place():
    documents = FakeDocuments({
        "https://details.test/vendors/a1": {"data": {"code": "a1"}},
        "https://reviews.test/ratings/a1": TransientFetchError("server error", status_code=502),
    })

    result = enrich(documents, [vendor("a1")])

    assert result.vendors[0]["enrichment"] == {"details": {"code": "a1"}}
    assert result.enriched == 1
    assert result.failed == 0


def test_records_without_a_code_are_passed_through():
    documents = FakeDocuments({})

    result = enrich(documents, [{"name": "No code"}, "not an object"])

    assert result.vendors == [{"name": "No code"}, "not an object"]
    assert result.skipped == 2
    assert documents.calls == []


def test_vendor_lookups_are_bounded_and_keep_order():
    codes = [f"v{i}" for i in range(7)]
    documents = FakeDocuments(
        {f"https://details.test/vendors/{code}": {"data": {"code": code}} for code in codes},
        delay=0.01,
    )
    spec = SPEC.model_copy(update={"fetch_ratings": False, "max_concurrent_vendors": 2})

    result = enrich(documents, [vendor(code) for code in codes], spec=spec)

    assert [v["enrichment"]["details"]["code"] for v in result.vendors] == codes
    assert documents.peak == 2


def test_vendor_code_is_escaped_in_urls():
    documents = FakeDocuments({})

    enrich(documents, [vendor("a/b c")], spec=SPEC.model_copy(update={"fetch_ratings": False}))

    assert documents.calls == ["https://details.test/vendors/a%2Fb%20c"]


@pytest.mark.parametrize(("distribution", "expected"), [
    (DISTRIBUTION, 4.3),
    ({"ratings": []}, None),
    ({"ratings": [{"score": 5, "count": 0}]}, None),
    ({"ratings": [{"score": "5", "count": 2}, {"score": 3, "count": 2}, "junk"]}, 3.0),
    ({}, None),
])
def test_ratings_average(distribution, expected):
    assert ratings_average(distribution) == expected


def test_vendor_code_of_uses_listing_id_keys():
    assert vendor_code_of({"code": "a1"}) == "a1"
    assert vendor_code_of({"id": 42}) == "42"
    assert vendor_code_of({"code": "  "}) is None
    assert vendor_code_of(["a1"]) is None


def test_enrichment_requests_share_retries_with_the_listing_client():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request.url.path)
        if request.url.path == "/vendors/a1" and calls.count("/vendors/a1") == 1:
            return httpx.Response(503)
        if request.url.path == "/vendors/a1":
            return httpx.Response(200, json={"data": {"code": "a1", "rating": 4.8}})
        return httpx.Response(200, json={"unexpected": "shape"})

    async def no_sleep(delay):
        pass

    async def main():
        limiter = RateLimiter(max_concurrent=1, max_requests_per_window=1000, window_seconds=60)
        async with VendorApiClient(
            ApiSpec(vendors_url="https://listing.test/vendors"),
            limiter,
            BackoffPolicy(max_retries=2, base_delay=0.1, max_delay=0.1),
            transport=httpx.MockTransport(handler),
            sleep=no_sleep,
        ) as client:
            result = await VendorEnricher(client, SPEC).enrich_vendors("69036", [vendor("a1")])
            return result, limiter.peak_in_flight

    result, peak = asyncio.run(main())

    assert result.vendors[0]["enrichment"] == {"details": {"code": "a1", "rating": 4.8}}
    # details: 503 then 200; ratings: two malformed bodies
    assert calls == ["/vendors/a1", "/vendors/a1", "/ratings/a1", "/ratings/a1"]
    assert result.attempts == 4
    assert peak == 1
