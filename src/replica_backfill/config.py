# src/replica_backfill/config.py
"""
Configuration for the replica-backfill engine.

This module centralizes all configuration, loading endpoint credentials from
environment variables and providing typed dataclasses for the run options
used throughout the application.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

from replica_backfill.exceptions import ConfigError

DEFAULT_CONCURRENCY: int = 100


def _get_env_var(name: str, default: Optional[str] = None) -> str:
    """
    Retrieves a required environment variable.

    Args:
        name (str): The name of the environment variable.
        default (str, optional): The default value if the variable is not set.

    Returns:
        str: The value of the environment variable.
    """
    value: Optional[str] = os.environ.get(name, default)
    if not value:
        raise ConfigError(f"Environment variable '{name}' must be set.")
    return value


def worker_count(concurrency: int = DEFAULT_CONCURRENCY) -> int:
    """
    Size of the worker pool: the configured concurrency or the CPU count,
    whichever is larger.
    """
    return max(concurrency, os.cpu_count() or 1)


@dataclass(frozen=True)
class S3Config:
    """
    Represents the configuration for an S3-compatible endpoint.

    Attributes:
        endpoint_url (str): The S3 endpoint URL.
        access_key_id (str): The access key ID.
        secret_access_key (str): The secret access key.
        bucket (str): The bucket name.
        region (str): The region name.
        insecure (bool): Disable TLS certificate verification.
    """

    endpoint_url: str
    access_key_id: str
    secret_access_key: str
    bucket: str
    region: str = "us-east-1"
    insecure: bool = False

    def as_boto_dict(self) -> Dict[str, Any]:
        """
        Returns the configuration as keyword arguments for aiobotocore's
        `create_client`.

        Returns:
            Dict[str, Any]: A dictionary of client parameters.
        """
        params: Dict[str, Any] = {
            "endpoint_url": self.endpoint_url,
            "aws_access_key_id": self.access_key_id,
            "aws_secret_access_key": self.secret_access_key,
            "region_name": self.region,
        }
        if self.insecure:
            params["verify"] = False
        return params


def _source_from_env() -> S3Config:
    return S3Config(
        endpoint_url=_get_env_var("MINIO_SOURCE_ENDPOINT"),
        access_key_id=_get_env_var("MINIO_SOURCE_ACCESS_KEY"),
        secret_access_key=_get_env_var("MINIO_SOURCE_SECRET_KEY"),
        bucket=_get_env_var("MINIO_SOURCE_BUCKET"),
        region=_get_env_var("MINIO_SOURCE_REGION", "us-east-1"),
    )


def _destination_from_env() -> S3Config:
    return S3Config(
        endpoint_url=_get_env_var("MINIO_ENDPOINT"),
        access_key_id=_get_env_var("MINIO_ACCESS_KEY"),
        secret_access_key=_get_env_var("MINIO_SECRET_KEY"),
        bucket=_get_env_var("MINIO_BUCKET"),
        region=_get_env_var("MINIO_REGION", "us-east-1"),
    )


@dataclass(frozen=True)
class AppConfig:
    """
    Defines the options of one copy run.

    Attributes:
        data_dir (Path): Working directory holding the difference list and
            the result logs.
        skip (int): Number of leading input lines to ignore.
        dry_run (bool): Probe and fetch only, never mutate the destination.
        concurrency (int): Default worker count, raised to the CPU count.
        strict_fetch (bool): Record source fetch errors as failures instead
            of counting them as successes.
        feeder_grace_s (float): Delay before the task queue is closed.
        show_progress (bool): Render a rich progress bar while copying.
    """

    data_dir: Path = field(default_factory=lambda: Path("."))
    skip: int = 0
    dry_run: bool = False
    concurrency: int = DEFAULT_CONCURRENCY
    strict_fetch: bool = False
    feeder_grace_s: float = 0.1
    show_progress: bool = False

    @property
    def workers(self) -> int:
        return worker_count(self.concurrency)


@dataclass(frozen=True)
class Config:
    """
    Top-level configuration container for the entire application.

    Attributes:
        source (S3Config): Configuration for the source S3-compatible service.
        destination (S3Config): Configuration for the destination service.
        app (AppConfig): Run options.
    """

    source: S3Config = field(default_factory=_source_from_env)
    destination: S3Config = field(default_factory=_destination_from_env)
    app: AppConfig = field(default_factory=AppConfig)
