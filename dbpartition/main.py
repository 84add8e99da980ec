"""
db-partition - Main entry point.

Runs one partition pass and exits. Scheduling (cron, systemd timers, k8s
CronJobs) is left to the deployment, which must not start overlapping runs
against the same live store.

Usage:
    db-partition [--analyse] [--delete-originals] [--retention-days N] [-v]

Configuration is via environment variables, see config.py. Flags override
the matching variables for a single run.

SIGTERM and SIGINT abandon remaining write retries. The run still commits
metadata and cleans up for the archive files already written.

Exit codes:
    0  completed, or analyse-only run finished
    2  configuration error
    3  live store unavailable or records collection missing
    4  archive location unavailable or not writable
    5  streaming the aged records failed, nothing archived
    6  completed, but some archive files could not be written
    7  archive written, cleanup of the live store failed
"""

from __future__ import annotations

import argparse
import asyncio
import dataclasses
import logging
import signal
import sys

import json_log_formatter

from ._version import __version__
from .config import PartitionConfig
from .partition.pipeline import PartitionPipeline, PipelineOutcome, PipelineResult

logger = logging.getLogger(__name__)


def setup_logging(config: PartitionConfig, verbose: bool = False) -> None:
    """Configure logging based on configuration.

    Args:
        config: Partition configuration
        verbose: Force DEBUG level
    """
    level = getattr(logging, config.observability.log_level.upper(), logging.INFO)
    if verbose:
        level = logging.DEBUG

    if config.observability.log_format == "json":
        formatter: logging.Formatter = json_log_formatter.JSONFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = [handler]

    # Reduce noise from libraries
    logging.getLogger("botocore").setLevel(logging.WARNING)
    logging.getLogger("aiobotocore").setLevel(logging.WARNING)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="db-partition",
        description="Archive aged buffer records and reconcile them against the live store",
    )
    parser.add_argument(
        "--analyse",
        action="store_true",
        help="Only report how many records would be archived",
    )
    parser.add_argument(
        "--delete-originals",
        action="store_true",
        help="Remove archived records from the live store",
    )
    parser.add_argument("--retention-days", type=int, help="Override PARTITION_RETENTION_DAYS")
    parser.add_argument("-v", "--verbose", action="store_true", help="Verbose output")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def apply_overrides(config: PartitionConfig, args: argparse.Namespace) -> PartitionConfig:
    """Return config with command-line overrides applied and validated.

    Raises:
        ValueError: If the resulting configuration is invalid
    """
    retention = config.retention
    if args.analyse:
        retention = dataclasses.replace(retention, analyse_only=True)
    if args.delete_originals:
        retention = dataclasses.replace(retention, delete_originals=True)
    if args.retention_days is not None:
        retention = dataclasses.replace(retention, days=args.retention_days)

    config = dataclasses.replace(config, retention=retention)
    config.validate()
    return config


def report(result: PipelineResult) -> None:
    """Print a short summary of the run for the operator."""
    print(f"Partition run: {result.outcome.value} (exit {result.exit_code})")
    if result.analysis:
        a = result.analysis
        print(f"  Cutoff: {a.cutoff.isoformat()}")
        print(f"  Eligible: {a.eligible} of {a.total} ({a.percentage}%)")
    if result.retry:
        print(f"  Archive files written: {len(result.retry.succeeded)} of {result.groups}")
        print(f"  Write attempts: {result.retry.attempts}")
        for failure in result.retry.failed:
            print(f"  FAILED: {failure.blob.relative_path}: {failure.error}")
    if result.commit:
        print(f"  Metadata: {result.commit.status.value}")
        if result.commit.recovery_path:
            print(f"  Recovery file: {result.commit.recovery_path}")
    if result.cleanup:
        print(f"  Archived originals matched: {result.cleanup.matched}")
        print(f"  Archived originals deleted: {result.cleanup.deleted}")
    if result.error:
        print(f"  Error: {result.error}")


def main(argv: list[str] | None = None) -> None:
    """Main entry point."""
    args = build_parser().parse_args(argv)

    try:
        config = apply_overrides(PartitionConfig.from_env(), args)
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(PipelineOutcome.CONFIG_ERROR.exit_code)

    setup_logging(config, verbose=args.verbose)
    logger.info(f"db-partition v{__version__} starting")
    config.log_config()

    pipeline = PartitionPipeline.from_config(config)

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)

    def handle_signal(sig: int) -> None:
        logger.info(f"Received signal {sig}, abandoning remaining retries")
        pipeline.request_shutdown()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, handle_signal, sig)

    try:
        result = loop.run_until_complete(pipeline.run())
    finally:
        loop.close()
        asyncio.set_event_loop(None)

    report(result)
    sys.exit(result.exit_code)


if __name__ == "__main__":
    main()
