from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any, AsyncIterator, Callable, Protocol, Sequence

from vendor_ingestion.domain import (
    CityJob,
    JobStatus,
    ObjectLocation,
    PageResult,
    PartitionKey,
    RunContext,
    RunSummary,
    TransformedRow,
    WrittenFile,
    utc_now,
)
from vendor_ingestion.enrichment import EnrichmentResult
from vendor_ingestion.errors import PipelineError, RunCancelledError, SystemicTransformError
from vendor_ingestion.pipeline_config import PipelineConfig
from vendor_ingestion.scratch_layout import ScratchLayout
from vendor_ingestion.transform import transform_page

logger = logging.getLogger(__name__)


class VendorSource(Protocol):
    def iter_city_pages(self, city_id: str) -> AsyncIterator[PageResult]:
        ...


class VendorEnrichment(Protocol):
    async def enrich_vendors(self, city_id: str, vendors: Sequence[Any]) -> EnrichmentResult:
        ...


class VendorWriter(Protocol):
    def write(
        self,
        rows: Sequence[TransformedRow],
        ctx: RunContext,
        city_id: str,
        *,
        raw_vendors: list[Any] | None = None,
    ) -> WrittenFile:
        ...


class PartitionUploader(Protocol):
    async def upload(self, file: WrittenFile, partition: PartitionKey, run_timestamp: str) -> ObjectLocation:
        ...


@dataclass(frozen=True)
class OrchestrationConfig:
    max_parallel_cities: int = 4
    max_drop_fraction: float = 0.5
    keep_raw_json: bool = False
    cleanup_on_success: bool = True

    @classmethod
    def from_pipeline_config(cls, config: PipelineConfig) -> "OrchestrationConfig":
        return cls(
            max_parallel_cities=config.max_parallel_cities,
            max_drop_fraction=config.transform.max_drop_fraction,
            keep_raw_json=config.keep_raw_json,
            cleanup_on_success=config.cleanup_on_success,
        )


class Orchestrator:
    """
    Coordinates: fetch -> (enrich) -> transform -> write -> upload, one job per city.

    City jobs run concurrently (at most max_parallel_cities at once) and never share
    mutable state; the only shared resources are the API client's rate limiter and the
    uploader's connection pool. A failed city never stops its siblings.

    Nothing is persisted between runs: every run starts every configured city from the
    first page.
    """

    def __init__(
        self,
        *,
        cities: Sequence[str],
        source: VendorSource,
        writer: VendorWriter,
        uploader: PartitionUploader,
        layout: ScratchLayout,
        config: OrchestrationConfig,
        enricher: VendorEnrichment | None = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.cities = list(cities)
        self.source = source
        self.enricher = enricher
        self.writer = writer
        self.uploader = uploader
        self.layout = layout
        self.config = config
        self._clock = clock
        self._tasks: list[asyncio.Task[None]] = []
        self._cancel_requested = False

    def cancel(self) -> None:
        """Stop the run: in-flight city jobs are cancelled and recorded as Failed."""
        if self._cancel_requested:
            return
        self._cancel_requested = True
        logger.warning("Cancellation requested; stopping %s city jobs", sum(not t.done() for t in self._tasks))
        for task in self._tasks:
            task.cancel()

    async def run(self, ctx: RunContext) -> RunSummary:
        jobs = [CityJob(city_id=city_id) for city_id in self.cities]
        logger.info(
            "Run %s started at %s for %s cities (max %s in parallel)",
            ctx.run_id,
            ctx.started_at.isoformat(),
            len(jobs),
            self.config.max_parallel_cities,
        )

        semaphore = asyncio.Semaphore(self.config.max_parallel_cities)
        self._tasks = [
            asyncio.create_task(self._run_city_job(job, ctx, semaphore), name=f"city-{job.city_id}")
            for job in jobs
        ]
        if self._cancel_requested:
            for task in self._tasks:
                task.cancel()

        try:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        except asyncio.CancelledError:
            # the run itself was cancelled: let every job record its failure first
            for task in self._tasks:
                task.cancel()
            await asyncio.gather(*self._tasks, return_exceptions=True)
            self._fail_unfinished(jobs)
            self._log_summary(RunSummary(run_id=ctx.run_id, jobs=tuple(jobs), cancelled=True))
            raise

        self._fail_unfinished(jobs)
        summary = RunSummary(run_id=ctx.run_id, jobs=tuple(jobs), cancelled=self._cancel_requested)
        self._log_summary(summary)
        return summary

    def _fail_unfinished(self, jobs: list[CityJob]) -> None:
        # tasks cancelled before their first step never reach their own handler
        for job in jobs:
            if not job.status.is_terminal:
                job.fail(RunCancelledError(f"City {job.city_id}: run cancelled during {job.status.value}"))

    async def _run_city_job(self, job: CityJob, ctx: RunContext, semaphore: asyncio.Semaphore) -> None:
        try:
            async with semaphore:
                await self._process_city(job, ctx)
        except asyncio.CancelledError:
            if not job.status.is_terminal:
                job.fail(RunCancelledError(f"City {job.city_id}: run cancelled during {job.status.value}"))
                logger.warning("City %s cancelled", job.city_id)
        except PipelineError as e:
            job.attempt_count += e.attempts
            stage = job.status.value
            job.fail(e)
            logger.error("City %s failed during %s (%s): %s", job.city_id, stage, e.kind, e)
        except Exception as e:
            logger.exception("Unexpected failure for city %s", job.city_id)
            if not job.status.is_terminal:
                job.fail(e)

    async def _process_city(self, job: CityJob, ctx: RunContext) -> None:
        # Fetch every page before transforming so a fetch failure writes nothing
        job.advance(JobStatus.FETCHING)
        pages: list[tuple[PageResult, datetime]] = []
        async for page in self.source.iter_city_pages(job.city_id):
            pages.append((page, self._clock()))
            job.attempt_count += page.attempts
            job.pages_fetched += 1
            job.vendors_fetched += len(page.vendors)
        logger.info("City %s: fetched %s vendors in %s pages", job.city_id, job.vendors_fetched, job.pages_fetched)

        if self.enricher is not None:
            pages = [(await self._enrich_page(job, page), fetched_at) for page, fetched_at in pages]
            logger.info(
                "City %s: enriched %s vendors (%s failed)", job.city_id, job.vendors_enriched, job.enrichment_failures
            )

        job.advance(JobStatus.TRANSFORMING)
        rows: list[TransformedRow] = []
        for page, fetched_at in pages:
            try:
                result = transform_page(page.vendors, job.city_id, fetched_at, self.config.max_drop_fraction)
            except SystemicTransformError as e:
                job.record_drops(e.drop_reasons)
                raise
            job.record_drops(result.drop_reasons)
            rows.extend(result.rows)

        if job.dropped_records:
            logger.warning(
                "City %s: dropped %s of %s records %s",
                job.city_id,
                job.dropped_records,
                job.vendors_fetched,
                job.drop_reasons,
            )

        raw_vendors = [v for page, _ in pages for v in page.vendors] if self.config.keep_raw_json else None
        written = await asyncio.to_thread(self.writer.write, rows, ctx, job.city_id, raw_vendors=raw_vendors)
        job.local_file = written.path
        job.rows_written = written.row_count

        job.advance(JobStatus.UPLOADING)
        partition = PartitionKey.for_run(job.city_id, ctx)
        location = await self.uploader.upload(written, partition, ctx.run_timestamp)
        job.attempt_count += location.attempts
        job.object_location = location
        job.advance(JobStatus.DONE)

        if self.config.cleanup_on_success:
            self.layout.delete_city_directory(ctx, job.city_id)
            job.local_file = None

    async def _enrich_page(self, job: CityJob, page: PageResult) -> PageResult:
        result = await self.enricher.enrich_vendors(job.city_id, page.vendors)
        job.attempt_count += result.attempts
        job.vendors_enriched += result.enriched
        job.enrichment_failures += result.failed
        return replace(page, vendors=result.vendors)

    def _log_summary(self, summary: RunSummary) -> None:
        logger.info(
            "Run %s finished%s: %s succeeded, %s failed, %s records dropped",
            summary.run_id,
            " (cancelled)" if summary.cancelled else "",
            len(summary.succeeded),
            len(summary.failed),
            summary.dropped_records,
        )
        for job in summary.succeeded:
            logger.info(
                "City %s: %s rows -> %s (%s attempts)",
                job.city_id,
                job.rows_written,
                job.object_location.uri if job.object_location else "-",
                job.attempt_count,
            )
        for job in summary.failed:
            error = job.last_error
            logger.error(
                "City %s failed in %s: %s: %s%s",
                job.city_id,
                job.failed_stage.value if job.failed_stage else "-",
                error.kind if error else "Unknown",
                error.message if error else "",
                f" (local file kept at {job.local_file})" if job.local_file else "",
            )
