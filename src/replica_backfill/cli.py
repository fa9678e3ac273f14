# src/replica_backfill/cli.py
"""Command-line interface for the replica-backfill tool."""

import asyncio
import dataclasses
import logging
import sys
from pathlib import Path
from typing import TYPE_CHECKING, Any

import click
from aiobotocore.session import AioSession, get_session
from botocore.config import Config as BotoConfig
from dotenv import load_dotenv
from rich.logging import RichHandler

from replica_backfill.config import DEFAULT_CONCURRENCY, AppConfig, Config
from replica_backfill.exceptions import ReplicaBackfillError
from replica_backfill.signals import GracefulShutdown

if TYPE_CHECKING:
    from replica_backfill.engine import RunSummary

logger: logging.Logger = logging.getLogger(__name__)


def setup_logging(level: str) -> None:
    """Configure rich-based logging for the application."""
    logging.basicConfig(
        level=level.upper(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(rich_tracebacks=True, show_path=False)],
    )
    # Silence noisy loggers
    for logger_name in ["botocore", "aiobotocore", "urllib3"]:
        logging.getLogger(logger_name).setLevel(logging.WARNING)


def boto_config(app_config: AppConfig) -> BotoConfig:
    """
    Client configuration shared by the source and destination clients.

    Retries are disabled: every object gets a single attempt per run and
    failures are re-driven from the failure log.
    """
    return BotoConfig(
        signature_version="s3v4",
        max_pool_connections=app_config.workers + 50,
        retries={"max_attempts": 1, "mode": "standard"},
        s3={"payload_signing_enabled": False},
    )


async def main_async(config: Config) -> "RunSummary":
    """
    Asynchronously build the store clients and run the copy engine.

    Args:
        config (Config): The application configuration.

    Returns:
        RunSummary: The outcome counts of the run.
    """
    # Lazily import to keep CLI startup fast
    from replica_backfill.engine import CopyEngine
    from replica_backfill.store import S3ObjectStore

    session: AioSession = get_session()
    client_config: BotoConfig = boto_config(config.app)
    shutdown_manager: GracefulShutdown = GracefulShutdown()
    async with (
        shutdown_manager as shutdown_event,
        session.create_client(
            "s3", **config.source.as_boto_dict(), config=client_config
        ) as source_client,
        session.create_client(
            "s3", **config.destination.as_boto_dict(), config=client_config
        ) as dest_client,
    ):
        engine: CopyEngine = CopyEngine(
            S3ObjectStore(source_client, config.source.bucket),
            S3ObjectStore(dest_client, config.destination.bucket),
            config.app,
            shutdown_event,
        )
        summary: RunSummary = await engine.run()

    logger.info(f"Successes logged to '{summary.success_log}'.")
    logger.info(f"Failures logged to '{summary.failure_log}'.")
    return summary


@click.group(context_settings=dict(help_option_names=["-h", "--help"]))
def cli() -> None:
    """Tool to copy unreplicated objects to MinIO."""


@cli.command("copy")
@click.option(
    "--data-dir",
    type=click.Path(
        exists=True, file_okay=False, dir_okay=True, writable=True, resolve_path=True
    ),
    required=True,
    help="Working directory holding srcdiff.json and the result logs.",
)
@click.option(
    "--skip",
    "-s",
    type=click.IntRange(min=0),
    default=0,
    help="Number of entries to skip from the input file.",
    show_default=True,
)
@click.option(
    "--fake",
    "dry_run",
    is_flag=True,
    default=False,
    help="Perform a dry run: probe and fetch, but never modify the destination.",
)
@click.option(
    "--concurrency",
    type=click.IntRange(min=1),
    default=DEFAULT_CONCURRENCY,
    help="Number of concurrent copies (raised to the CPU count).",
    show_default=True,
)
@click.option(
    "--strict-fetch",
    is_flag=True,
    default=False,
    help="Record source fetch errors as failures instead of skipping them.",
)
@click.option(
    "--insecure",
    "-i",
    is_flag=True,
    default=False,
    help="Disable TLS certificate verification.",
)
@click.option(
    "--no-progress",
    is_flag=True,
    default=False,
    help="Do not render a progress bar.",
)
@click.option(
    "--log-level",
    default="INFO",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    help="Set the logging level.",
    show_default=True,
)
def copy(**kwargs: Any) -> None:
    """
    Copy unreplicated objects from the source to the destination bucket.

    Reads the difference list "srcdiff.json" from the data directory and
    replicates every entry, preserving versions, delete markers and object
    metadata. Outcomes are appended to time-stamped copy_success.txt and
    copy_fails.txt files in the same directory; the failure log can be
    renamed to srcdiff.json to retry failed entries.

    Credentials and buckets must be set via environment variables
    (MINIO_SOURCE_ENDPOINT, MINIO_SOURCE_ACCESS_KEY, MINIO_SOURCE_SECRET_KEY,
    MINIO_SOURCE_BUCKET, MINIO_ENDPOINT, MINIO_ACCESS_KEY, MINIO_SECRET_KEY,
    MINIO_BUCKET).
    """
    load_dotenv()
    setup_logging(kwargs["log_level"])

    try:
        app_config: AppConfig = AppConfig(
            data_dir=Path(kwargs["data_dir"]),
            skip=kwargs["skip"],
            dry_run=kwargs["dry_run"],
            concurrency=kwargs["concurrency"],
            strict_fetch=kwargs["strict_fetch"],
            show_progress=not kwargs["no_progress"],
        )
        config: Config = Config(app=app_config)
        if kwargs["insecure"]:
            config = dataclasses.replace(
                config,
                source=dataclasses.replace(config.source, insecure=True),
                destination=dataclasses.replace(config.destination, insecure=True),
            )

        summary: RunSummary = asyncio.run(main_async(config))
        if summary.cancelled:
            logger.warning("Copy interrupted; in-flight objects were not logged.")
        else:
            logger.info("✅ Successfully completed copy.")
    except ReplicaBackfillError as e:
        logger.critical(f"A critical application error occurred: {e}")
        sys.exit(1)
    except asyncio.CancelledError:
        logger.warning("Shutdown signal received. Exiting.")
    except Exception:
        logger.critical(
            "An unexpected error caused the application to fail:", exc_info=True
        )
        sys.exit(1)


if __name__ == "__main__":
    cli()
