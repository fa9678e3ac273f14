# src/replica_backfill/copier.py
"""
The per-object replication decision.

For every record the destination is probed first. Objects already present
are left alone; delete markers are replayed as replicated deletes; all
other versions are streamed from the source, pinned to the recorded ETag,
and written to the destination with their metadata and replication
markers intact. Each record gets exactly one attempt.
"""

import logging
from enum import Enum
from typing import Mapping, Optional, Tuple

from replica_backfill.exceptions import CopyError, StoreError
from replica_backfill.models import DiffRecord
from replica_backfill.store import (
    REPLICA,
    ObjectInfo,
    ObjectStore,
    ObjectStream,
    PutOptions,
    RemoveOptions,
    ReplicationMarkers,
    encode_tags,
)

logger: logging.Logger = logging.getLogger(__name__)

CONTENT_ENCODING: str = "Content-Encoding"


class CopyAction(Enum):
    """What the decision did for a record that ended in the success log."""

    ALREADY_REPLICATED = "already replicated"
    DELETE_MARKER_PRESENT = "delete marker already present"
    DELETE_MARKER_REPLICATED = "delete marker replicated"
    COPIED = "copied"
    FETCH_SKIPPED = "source fetch failed, skipped"
    WOULD_DELETE = "would replicate delete marker"
    WOULD_COPY = "would copy"


def content_encoding(metadata: Mapping[str, str]) -> str:
    """
    Read Content-Encoding from response headers.

    The exact header name is tried first; providers that normalize header
    case are matched case-insensitively.
    """
    value: Optional[str] = metadata.get(CONTENT_ENCODING)
    if value is None:
        value = next(
            (v for k, v in metadata.items() if k.lower() == CONTENT_ENCODING.lower()),
            "",
        )
    return value


def replication_put_options(info: ObjectInfo) -> PutOptions:
    """
    Build the upload options that reproduce a source object as a replica.

    Args:
        info (ObjectInfo): Metadata of the fetched source object.

    Returns:
        PutOptions: Options carrying the source metadata and replication
            markers.
    """
    return PutOptions(
        user_metadata=dict(info.user_metadata),
        content_type=info.content_type,
        content_encoding=content_encoding(info.metadata),
        storage_class=info.storage_class,
        user_tags=encode_tags(info.user_tags),
        internal=ReplicationMarkers(
            source_version_id=info.version_id,
            replication_status=REPLICA,
            source_mtime=info.last_modified,
            source_etag=info.etag,
            replication_request=True,
        ),
    )


def replication_remove_options(record: DiffRecord) -> RemoveOptions:
    """Build the delete options that replay a delete marker as a replica."""
    return RemoveOptions(
        delete_marker=record.is_delete_marker,
        replication_mtime=record.last_modified,
        replication_status=REPLICA,
        replication_request=True,
    )


class ObjectCopier:
    """Replicates single records from a source store to a destination store."""

    def __init__(
        self,
        source: ObjectStore,
        destination: ObjectStore,
        dry_run: bool = False,
        strict_fetch: bool = False,
    ) -> None:
        """
        Args:
            source (ObjectStore): The store objects are read from.
            destination (ObjectStore): The store objects are written to.
            dry_run (bool): Probe and fetch only; never delete or upload.
            strict_fetch (bool): Raise on source fetch errors instead of
                treating the record as done.
        """
        self._source: ObjectStore = source
        self._destination: ObjectStore = destination
        self._dry_run: bool = dry_run
        self._strict_fetch: bool = strict_fetch

    async def copy(self, record: DiffRecord) -> CopyAction:
        """
        Replicate one record.

        Args:
            record (DiffRecord): The object version to replicate.

        Returns:
            CopyAction: What was done. Any return value is a success.

        Raises:
            StoreError: If a destination operation fails.
            CopyError: If the source fetch fails and `strict_fetch` is set.
        """
        probe_error: StoreError
        try:
            await self._destination.probe(
                record.key, record.version_id, proxy_request=False
            )
            return CopyAction.ALREADY_REPLICATED
        except StoreError as e:
            probe_error = e

        if record.is_delete_marker:
            return await self._replicate_delete_marker(record, probe_error)
        return await self._replicate_object(record)

    async def _replicate_delete_marker(
        self, record: DiffRecord, probe_error: StoreError
    ) -> CopyAction:
        if probe_error.not_allowed:
            logger.info(
                f"Destination already has delete marker {record.describe()}."
            )
            return CopyAction.DELETE_MARKER_PRESENT
        if self._dry_run:
            return CopyAction.WOULD_DELETE

        await self._destination.delete(
            record.key, record.version_id, replication_remove_options(record)
        )
        return CopyAction.DELETE_MARKER_REPLICATED

    async def _replicate_object(self, record: DiffRecord) -> CopyAction:
        fetched: Tuple[ObjectStream, ObjectInfo]
        try:
            fetched = await self._source.fetch(
                record.key, record.version_id, record.etag, proxy_request=True
            )
        except StoreError as e:
            if self._strict_fetch:
                raise CopyError(
                    f"Could not fetch {record.describe()} from source: {e}"
                ) from e
            logger.warning(f"Skipping {record.describe()}: source fetch failed: {e}")
            return CopyAction.FETCH_SKIPPED

        stream, info = fetched
        try:
            if self._dry_run:
                return CopyAction.WOULD_COPY
            await self._destination.upload(
                record.key, stream, info.size, replication_put_options(info)
            )
        finally:
            stream.close()
        logger.debug(f"Uploaded {record.describe()} ({info.size} bytes).")
        return CopyAction.COPIED
