# src/replica_backfill/__init__.py
"""
replica-backfill: copy unreplicated objects between S3-compatible stores.

This package replays a pre-computed difference list against a destination
bucket, copying every listed object version (or delete marker) from the
source with its metadata and replication markers, and records the outcome
of each entry in durable success and failure logs.

The primary entry point for programmatic use is the `CopyEngine` class.
"""

from typing import List

from replica_backfill.engine import CopyEngine, RunSummary
from replica_backfill.models import DiffRecord

__all__: List[str] = ["CopyEngine", "DiffRecord", "RunSummary"]
