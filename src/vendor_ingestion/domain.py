from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from pathlib import Path
from typing import Any
import uuid

from core.settings import PARQUET_FILE_EXTENSION, PARQUET_FILE_PREFIX


_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class JobStatus(str, Enum):
    PENDING = "Pending"
    FETCHING = "Fetching"
    TRANSFORMING = "Transforming"
    UPLOADING = "Uploading"
    DONE = "Done"
    FAILED = "Failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.DONE, JobStatus.FAILED)


_ALLOWED_TRANSITIONS: dict[JobStatus, set[JobStatus]] = {
    JobStatus.PENDING: {JobStatus.FETCHING},
    JobStatus.FETCHING: {JobStatus.TRANSFORMING},
    JobStatus.TRANSFORMING: {JobStatus.UPLOADING},
    JobStatus.UPLOADING: {JobStatus.DONE},
    JobStatus.DONE: set(),
    JobStatus.FAILED: set(),
}


@dataclass(frozen=True)
class JobError:
    """Error recorded on a city job: a stable kind plus the human readable message."""
    kind: str
    message: str

    @classmethod
    def from_exception(cls, exc: BaseException) -> "JobError":
        kind = getattr(exc, "kind", None) or "Unexpected"
        return cls(kind=kind, message=str(exc) or exc.__class__.__name__)

    def __str__(self) -> str:
        return f"{self.kind}: {self.message}"


@dataclass
class CityJob:
    """
    Unit of pipeline work for one configured city in one run.

    Owned by the orchestrator; the stage currently processing the job mutates it.
    Nothing here outlives the process.
    """
    city_id: str
    status: JobStatus = JobStatus.PENDING
    attempt_count: int = 0
    last_error: JobError | None = None
    failed_stage: JobStatus | None = None

    pages_fetched: int = 0
    vendors_fetched: int = 0
    rows_written: int = 0
    vendors_enriched: int = 0
    enrichment_failures: int = 0
    dropped_records: int = 0
    drop_reasons: dict[str, int] = field(default_factory=dict)
    local_file: Path | None = None
    object_location: ObjectLocation | None = None

    def advance(self, status: JobStatus) -> None:
        if status not in _ALLOWED_TRANSITIONS[self.status]:
            raise ValueError(f"City {self.city_id}: illegal transition {self.status.value} -> {status.value}")
        self.status = status

    def fail(self, exc: BaseException) -> None:
        if self.status.is_terminal:
            raise ValueError(f"City {self.city_id}: job already terminal ({self.status.value})")
        self.failed_stage = self.status
        self.last_error = JobError.from_exception(exc)
        self.status = JobStatus.FAILED

    def record_drops(self, reasons: dict[str, int]) -> None:
        for reason, count in reasons.items():
            self.drop_reasons[reason] = self.drop_reasons.get(reason, 0) + count
            self.dropped_records += count

    @property
    def succeeded(self) -> bool:
        return self.status is JobStatus.DONE


@dataclass(frozen=True)
class RunContext:
    """Per-run context. started_at is tz-aware UTC and fixes every partition of the run."""
    run_id: str
    started_at: datetime

    @classmethod
    def start(cls, now: datetime | None = None) -> "RunContext":
        started_at = now or utc_now()
        if started_at.tzinfo is None:
            raise ValueError("Run start time must be timezone-aware")
        return cls(run_id=uuid.uuid4().hex[:12], started_at=started_at.astimezone(timezone.utc))

    @property
    def run_timestamp(self) -> str:
        """Unix epoch milliseconds of the run start; used in object names."""
        return str((self.started_at - _EPOCH) // timedelta(milliseconds=1))


@dataclass(frozen=True)
class PageResult:
    """One page of the vendor listing for a city, plus the cursor of the next page."""
    city_id: str
    cursor: int
    vendors: list[dict[str, Any]]
    next_cursor: int | None
    available_count: int | None = None
    attempts: int = 1


@dataclass(frozen=True)
class DocumentResult:
    """A decoded JSON document fetched for one vendor, plus the attempts it took."""
    payload: Any
    attempts: int = 1


@dataclass(frozen=True)
class TransformedRow:
    vendor_id: str
    name: str
    city_id: str
    fetched_at: datetime
    rating: float | None = None
    delivery_fee: float | None = None
    categories: list[str] | None = None
    latitude: float | None = None
    longitude: float | None = None


@dataclass(frozen=True)
class PartitionKey:
    """Identity of a logical partition: one city on one calendar day (UTC)."""
    city_id: str
    year: int
    month: int
    day: int

    @classmethod
    def for_run(cls, city_id: str, ctx: RunContext) -> "PartitionKey":
        started = ctx.started_at.astimezone(timezone.utc)
        return cls(city_id=city_id, year=started.year, month=started.month, day=started.day)

    @property
    def prefix(self) -> str:
        return f"city_id={self.city_id}/year={self.year:04d}/month={self.month:02d}/day={self.day:02d}"

    def object_key(self, run_timestamp: str, extension: str = PARQUET_FILE_EXTENSION) -> str:
        return f"{self.prefix}/{PARQUET_FILE_PREFIX}{run_timestamp}.{extension}"


@dataclass(frozen=True)
class WrittenFile:
    """A finished local Parquet file for one city."""
    path: Path
    row_count: int
    size_bytes: int
    raw_json_path: Path | None = None


@dataclass(frozen=True)
class ObjectLocation:
    bucket: str
    key: str
    etag: str | None = None
    version_id: str | None = None
    attempts: int = field(default=1, compare=False)

    @property
    def uri(self) -> str:
        return f"s3://{self.bucket}/{self.key}"


@dataclass(frozen=True)
class RunSummary:
    """Terminal state of every city job of a run."""
    run_id: str
    jobs: tuple[CityJob, ...]
    cancelled: bool = False

    @property
    def succeeded(self) -> list[CityJob]:
        return [j for j in self.jobs if j.succeeded]

    @property
    def failed(self) -> list[CityJob]:
        return [j for j in self.jobs if not j.succeeded]

    @property
    def dropped_records(self) -> int:
        return sum(j.dropped_records for j in self.jobs)

    @property
    def exit_code(self) -> int:
        return 0 if not self.failed and not self.cancelled else 1
