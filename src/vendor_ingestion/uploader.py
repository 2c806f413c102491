"""
Partition-aware uploads of city Parquet files to S3-compatible storage (AWS S3, MinIO).

Object keys:

    [<key_prefix>/]city_id=<city_id>/year=<YYYY>/month=<MM>/day=<DD>/vendors_<run_ts>.parquet

Keys are unique per city, day and run timestamp, so uploads never overwrite another
run's object. A write only counts once the store acknowledged it with an ETag.
"""
from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import replace
from typing import Any, Awaitable, Callable

import boto3
from boto3.exceptions import S3UploadFailedError
from boto3.s3.transfer import TransferConfig
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError, HTTPClientError
from botocore.exceptions import ConnectionError as BotoConnectionError

from vendor_ingestion.backoff import BackoffPolicy, build_retrying
from vendor_ingestion.domain import ObjectLocation, PartitionKey, WrittenFile
from vendor_ingestion.errors import (
    PermanentUploadError,
    TransientUploadError,
    UnacknowledgedUploadError,
    UploadError,
)
from vendor_ingestion.pipeline_config import StorageSpec

logger = logging.getLogger(__name__)

PARQUET_CONTENT_TYPE = "application/vnd.apache.parquet"

TRANSIENT_ERROR_CODES = {
    "InternalError",
    "ServiceUnavailable",
    "SlowDown",
    "RequestTimeout",
    "RequestTimeoutException",
    "Throttling",
    "ThrottlingException",
    "TooManyRequestsException",
}


def s3_client(spec: StorageSpec) -> Any:
    """boto3 S3 client for the configured endpoint. botocore's own retries are off; we retry."""
    return boto3.client(
        "s3",
        endpoint_url=spec.endpoint_url,
        region_name=spec.region,
        aws_access_key_id=spec.access_key,
        aws_secret_access_key=spec.secret_key,
        config=BotoConfig(
            s3={"addressing_style": spec.addressing_style},
            connect_timeout=spec.connect_timeout_seconds,
            read_timeout=spec.read_timeout_seconds,
            retries={"max_attempts": 1, "mode": "standard"},
        ),
    )


def classify_storage_error(exc: Exception, key: str) -> UploadError:
    if isinstance(exc, ClientError):
        error = exc.response.get("Error", {})
        code = str(error.get("Code", ""))
        status = exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode") or 0
        message = f"{key}: {code or 'error'} (HTTP {status}) {error.get('Message', '')}".strip()
        if code in TRANSIENT_ERROR_CODES or status >= 500 or status == 429:
            return TransientUploadError(message)
        return PermanentUploadError(message)
    if isinstance(exc, (BotoConnectionError, HTTPClientError, S3UploadFailedError)):
        return TransientUploadError(f"{key}: {exc}")
    if isinstance(exc, BotoCoreError):
        # credentials, parameter validation and the like
        return PermanentUploadError(f"{key}: {exc}")
    if isinstance(exc, OSError):
        return PermanentUploadError(f"{key}: cannot read local file: {exc}")
    return PermanentUploadError(f"{key}: {exc}")


class S3PartitionUploader:
    def __init__(
        self,
        spec: StorageSpec,
        policy: BackoffPolicy,
        *,
        client: Any | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        rng: random.Random | None = None,
    ):
        self.spec = spec
        self.policy = policy
        self.client = client if client is not None else s3_client(spec)
        self._sleep = sleep
        self._rng = rng

    @property
    def bucket(self) -> str:
        return self.spec.bucket

    def object_key(self, partition: PartitionKey, run_timestamp: str) -> str:
        key = partition.object_key(run_timestamp)
        prefix = self.spec.key_prefix.strip("/")
        return f"{prefix}/{key}" if prefix else key

    def ensure_bucket(self) -> None:
        """Verify the bucket is reachable, creating it when configured to."""
        try:
            self.client.head_bucket(Bucket=self.bucket)
            logger.debug("Bucket %s is accessible", self.bucket)
            return
        except ClientError as e:
            status = e.response.get("ResponseMetadata", {}).get("HTTPStatusCode")
            code = str(e.response.get("Error", {}).get("Code", ""))
            if not (self.spec.create_bucket and (status == 404 or code in {"404", "NoSuchBucket", "NotFound"})):
                raise PermanentUploadError(f"Cannot access bucket '{self.bucket}': {e}") from e
        except BotoCoreError as e:
            raise classify_storage_error(e, self.bucket) from e

        logger.info("Creating bucket %s", self.bucket)
        params: dict[str, Any] = {"Bucket": self.bucket}
        if self.spec.region != "us-east-1":
            params["CreateBucketConfiguration"] = {"LocationConstraint": self.spec.region}
        try:
            self.client.create_bucket(**params)
        except (ClientError, BotoCoreError) as e:
            raise PermanentUploadError(f"Cannot create bucket '{self.bucket}': {e}") from e

    def _put_small(self, file: WrittenFile, key: str) -> ObjectLocation:
        with open(file.path, "rb") as body:
            response = self.client.put_object(
                Bucket=self.bucket,
                Key=key,
                Body=body,
                ContentType=PARQUET_CONTENT_TYPE,
            )

        status = response.get("ResponseMetadata", {}).get("HTTPStatusCode", 200)
        etag = response.get("ETag")
        if status != 200 or not etag:
            raise UnacknowledgedUploadError(f"{key}: store returned HTTP {status} without an ETag")
        return ObjectLocation(bucket=self.bucket, key=key, etag=etag, version_id=response.get("VersionId"))

    def _put_multipart(self, file: WrittenFile, key: str) -> ObjectLocation:
        logger.info("Using multipart upload for %s (%s bytes)", key, file.size_bytes)
        self.client.upload_file(
            str(file.path),
            self.bucket,
            key,
            ExtraArgs={"ContentType": PARQUET_CONTENT_TYPE},
            Config=TransferConfig(multipart_threshold=self.spec.multipart_threshold_bytes, use_threads=False),
        )
        # upload_file returns nothing; ask the store what it now holds
        head = self.client.head_object(Bucket=self.bucket, Key=key)
        if head.get("ContentLength") != file.size_bytes or not head.get("ETag"):
            raise UnacknowledgedUploadError(
                f"{key}: stored size {head.get('ContentLength')} does not match local size {file.size_bytes}"
            )
        return ObjectLocation(bucket=self.bucket, key=key, etag=head.get("ETag"), version_id=head.get("VersionId"))

    def _upload_once(self, file: WrittenFile, key: str) -> ObjectLocation:
        try:
            if file.size_bytes > self.spec.multipart_threshold_bytes:
                return self._put_multipart(file, key)
            return self._put_small(file, key)
        except UploadError:
            raise
        except (ClientError, BotoCoreError, S3UploadFailedError, OSError) as e:
            raise classify_storage_error(e, key) from e

    async def upload(self, file: WrittenFile, partition: PartitionKey, run_timestamp: str) -> ObjectLocation:
        """
        Upload with the shared backoff policy (own attempt counter). Raises the last
        UploadError once retries run out; the local file is left untouched either way.

        Cancelling this coroutine only stops waiting on the worker thread: a boto3 call
        already started runs to completion and may still store the object. The key is
        unique to this run, so such a late object never replaces another run's snapshot,
        but it can exist under a city that the summary reports as cancelled.
        """
        key = self.object_key(partition, run_timestamp)
        attempts = 0
        retrying = build_retrying(self.policy, f"Upload {key}", sleep=self._sleep, rng=self._rng)
        try:
            async for attempt in retrying:
                with attempt:
                    attempts = attempt.retry_state.attempt_number
                    location = await asyncio.to_thread(self._upload_once, file, key)
        except UploadError as e:
            e.attempts = attempts
            raise
        except asyncio.CancelledError:
            logger.warning(
                "Upload of %s cancelled after %s attempt(s); s3://%s/%s may still be written",
                file.path.name,
                attempts,
                self.bucket,
                key,
            )
            raise

        logger.info("Uploaded %s (%s rows) to %s", file.path.name, file.row_count, location.uri)
        return replace(location, attempts=attempts)
