import argparse
import asyncio
import logging
import signal
import sys
from logging.config import dictConfig
from pathlib import Path

from core.settings import DEFAULT_CONFIG_PATH, LOGGING_CONFIG, ensure_directories
from vendor_ingestion.api_client import VendorApiClient
from vendor_ingestion.backoff import BackoffPolicy
from vendor_ingestion.domain import RunContext, RunSummary
from vendor_ingestion.enrichment import VendorEnricher
from vendor_ingestion.errors import ConfigError, UploadError
from vendor_ingestion.orchestrator import OrchestrationConfig, Orchestrator
from vendor_ingestion.parquet_writer import ParquetVendorWriter
from vendor_ingestion.pipeline_config import PipelineConfig, load_pipeline_config
from vendor_ingestion.rate_limiter import RateLimiter
from vendor_ingestion.scratch_layout import ScratchLayout
from vendor_ingestion.uploader import S3PartitionUploader

logger = logging.getLogger(__name__)

EXIT_CONFIG_ERROR = 2


def _install_signal_handlers(orchestrator: Orchestrator) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, orchestrator.cancel)
        except (NotImplementedError, RuntimeError):
            # Windows event loops have no add_signal_handler; Ctrl+C still raises KeyboardInterrupt
            logger.debug("Signal handler for %s not installed", sig)


async def run_pipeline(config: PipelineConfig, ctx: RunContext | None = None) -> RunSummary:
    """Wire the pipeline from config and run every configured city once."""
    ctx = ctx or RunContext.start()
    policy = BackoffPolicy.from_spec(config.retry)
    layout = ScratchLayout(scratch_root=Path(config.scratch_dir))
    uploader = S3PartitionUploader(config.storage, policy)

    await asyncio.to_thread(uploader.ensure_bucket)

    async with VendorApiClient(config.api, RateLimiter.from_spec(config.rate_limit), policy) as api_client:
        orchestrator = Orchestrator(
            cities=config.cities,
            source=api_client,
            enricher=VendorEnricher(api_client, config.enrichment) if config.enrichment.enabled else None,
            writer=ParquetVendorWriter(layout),
            uploader=uploader,
            layout=layout,
            config=OrchestrationConfig.from_pipeline_config(config),
        )
        _install_signal_handlers(orchestrator)
        return await orchestrator.run(ctx)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Fetch vendor listings per city and upload them as Parquet.")
    parser.add_argument(
        "--config",
        default=str(DEFAULT_CONFIG_PATH),
        help="Path to the pipeline YAML config (APP_* environment variables override it).",
    )
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> None:
    ensure_directories()
    dictConfig(LOGGING_CONFIG)
    args = parse_args(argv)

    try:
        config = load_pipeline_config(args.config)
    except ConfigError as e:
        logger.error("%s", e)
        sys.exit(EXIT_CONFIG_ERROR)

    try:
        summary = asyncio.run(run_pipeline(config))
    except UploadError as e:
        # the bucket check failed before any city started
        logger.error("Object storage unavailable: %s", e)
        sys.exit(1)

    sys.exit(summary.exit_code)
