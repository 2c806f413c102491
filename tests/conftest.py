from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, AsyncIterator, Callable

import pytest

from vendor_ingestion.domain import ObjectLocation, PageResult, PartitionKey, RunContext, WrittenFile
from vendor_ingestion.errors import PipelineError
from vendor_ingestion.scratch_layout import ScratchLayout


def vendor(code: Any = "v1", name: Any = "Pizza Place", **extra: Any) -> dict[str, Any]:
    record: dict[str, Any] = {"code": code, "name": name}
    record.update(extra)
    return record


def listing_payload(items: list[Any], available: int) -> dict[str, Any]:
    return {
        "status_code": 200,
        "data": {
            "items": items,
            "returned_count": len(items),
            "available_count": available,
        },
    }


@dataclass
class FakeSource:
    """Serves prepared pages per city; a PipelineError in place of a page is raised."""
    pages: dict[str, list[PageResult | PipelineError]]
    delay: float = 0.0

    async def iter_city_pages(self, city_id: str) -> AsyncIterator[PageResult]:
        for item in self.pages.get(city_id, []):
            await asyncio.sleep(self.delay)
            if isinstance(item, PipelineError):
                raise item
            yield item


@dataclass
class FakeUploader:
    bucket: str = "test-bucket"
    fail_for: dict[str, PipelineError] = field(default_factory=dict)
    uploads: list[tuple[WrittenFile, ObjectLocation]] = field(default_factory=list)

    async def upload(self, file: WrittenFile, partition: PartitionKey, run_timestamp: str) -> ObjectLocation:
        if partition.city_id in self.fail_for:
            raise self.fail_for[partition.city_id]
        location = ObjectLocation(bucket=self.bucket, key=partition.object_key(run_timestamp), etag='"etag"')
        self.uploads.append((file, location))
        return location


def pages_for(city_id: str, *batches: list[Any]) -> list[PageResult]:
    """Chain batches of raw vendors into pages linked by offset cursors."""
    pages = []
    offset = 0
    for index, batch in enumerate(batches):
        is_last = index == len(batches) - 1
        pages.append(PageResult(
            city_id=city_id,
            cursor=offset,
            vendors=batch,
            next_cursor=None if is_last else offset + len(batch),
        ))
        offset += len(batch)
    return pages


@pytest.fixture
def run_ctx() -> RunContext:
    return RunContext(run_id="run0001", started_at=datetime(2024, 5, 17, 13, 30, tzinfo=timezone.utc))


@pytest.fixture
def layout(tmp_path: Path) -> ScratchLayout:
    return ScratchLayout(scratch_root=tmp_path / "scratch")


@pytest.fixture
def recorded_sleeps() -> tuple[list[float], Callable[[float], Any]]:
    delays: list[float] = []

    async def fake_sleep(delay: float) -> None:
        delays.append(delay)

    return delays, fake_sleep
