# src/replica_backfill/store.py
"""
Object store contract and its S3-compatible implementation.

The copy engine talks to both ends of a replication through the
`ObjectStore` protocol, so that it can be driven by real clients or by
in-memory fakes. `S3ObjectStore` implements the protocol on top of an
aiobotocore S3 client and carries MinIO's internal replication headers,
which stock S3 APIs have no parameters for.
"""

import logging
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import (
    TYPE_CHECKING,
    Any,
    Dict,
    Iterator,
    List,
    Mapping,
    Optional,
    Protocol,
    Tuple,
)
from urllib.parse import parse_qsl, urlencode

from botocore.exceptions import BotoCoreError, ClientError

from replica_backfill.exceptions import StoreError
from replica_backfill.models import format_timestamp

if TYPE_CHECKING:
    from types_aiobotocore_s3.client import S3Client

logger: logging.Logger = logging.getLogger(__name__)

REPLICA: str = "REPLICA"

# MinIO internal replication headers
PROXY_REQUEST_HEADER: str = "X-Minio-Source-Proxy-Request"
SOURCE_VERSION_ID_HEADER: str = "X-Minio-Source-Version-Id"
SOURCE_MTIME_HEADER: str = "X-Minio-Source-Mtime"
SOURCE_ETAG_HEADER: str = "X-Minio-Source-Etag"
REPLICATION_REQUEST_HEADER: str = "X-Minio-Source-Replication-Request"
DELETE_MARKER_HEADER: str = "X-Minio-Source-DeleteMarker"
REPLICATION_STATUS_HEADER: str = "X-Amz-Replication-Status"

MAX_OBJECT_TAGS: int = 10
MAX_TAG_KEY_LENGTH: int = 128
MAX_TAG_VALUE_LENGTH: int = 256

_INTERNAL_HEADERS_PARAM: str = "InternalHeaders"
_HEADER_OPERATIONS: Tuple[str, ...] = (
    "HeadObject",
    "GetObject",
    "PutObject",
    "DeleteObject",
)


class ObjectStream(Protocol):
    """A readable object body, as returned by `ObjectStore.fetch`."""

    async def read(self, amt: Optional[int] = None) -> bytes: ...

    def close(self) -> None: ...


@dataclass(frozen=True)
class ObjectInfo:
    """
    Metadata of one object version.

    Attributes:
        key (str): The object key.
        version_id (str): The version ID, empty when unversioned.
        etag (str): The ETag without surrounding quotes.
        size (int): Content length in bytes.
        last_modified (datetime, optional): Modification time.
        content_type (str): The Content-Type.
        storage_class (str): The storage class, empty for the default.
        metadata (Mapping[str, str]): The raw response headers.
        user_metadata (Mapping[str, str]): User-defined ``x-amz-meta-*`` values.
        user_tags (Mapping[str, str], optional): Object tags, None if untagged.
    """

    key: str
    version_id: str = ""
    etag: str = ""
    size: int = 0
    last_modified: Optional[datetime] = None
    content_type: str = ""
    storage_class: str = ""
    metadata: Mapping[str, str] = field(default_factory=dict)
    user_metadata: Mapping[str, str] = field(default_factory=dict)
    user_tags: Optional[Mapping[str, str]] = None


@dataclass(frozen=True)
class ReplicationMarkers:
    """
    Internal markers that flag a write as replication traffic.

    Attributes:
        source_version_id (str): Version ID on the source.
        replication_status (str): Replication status to record, e.g. REPLICA.
        source_mtime (datetime, optional): Modification time on the source.
        source_etag (str): ETag on the source.
        replication_request (bool): Marks the request as replication driven
            rather than an ordinary client write.
    """

    source_version_id: str = ""
    replication_status: str = ""
    source_mtime: Optional[datetime] = None
    source_etag: str = ""
    replication_request: bool = False

    def headers(self) -> Dict[str, str]:
        headers: Dict[str, str] = {}
        if self.source_version_id:
            headers[SOURCE_VERSION_ID_HEADER] = self.source_version_id
        if self.replication_status:
            headers[REPLICATION_STATUS_HEADER] = self.replication_status
        if self.source_mtime is not None:
            headers[SOURCE_MTIME_HEADER] = format_timestamp(self.source_mtime)
        if self.source_etag:
            headers[SOURCE_ETAG_HEADER] = self.source_etag
        if self.replication_request:
            headers[REPLICATION_REQUEST_HEADER] = "true"
        return headers


@dataclass(frozen=True)
class PutOptions:
    """
    Options for `ObjectStore.upload`.

    Attributes:
        user_metadata (Mapping[str, str]): User-defined metadata.
        content_type (str): The Content-Type.
        content_encoding (str): The Content-Encoding.
        storage_class (str): The storage class.
        user_tags (Mapping[str, str], optional): Object tags.
        internal (ReplicationMarkers): Replication markers for the write.
    """

    user_metadata: Mapping[str, str] = field(default_factory=dict)
    content_type: str = ""
    content_encoding: str = ""
    storage_class: str = ""
    user_tags: Optional[Mapping[str, str]] = None
    internal: ReplicationMarkers = field(default_factory=ReplicationMarkers)


@dataclass(frozen=True)
class RemoveOptions:
    """
    Options for `ObjectStore.delete`.

    Attributes:
        delete_marker (bool): The removal replicates a delete marker.
        replication_mtime (datetime, optional): Modification time on the source.
        replication_status (str): Replication status to record.
        replication_request (bool): Marks the request as replication driven.
    """

    delete_marker: bool = False
    replication_mtime: Optional[datetime] = None
    replication_status: str = ""
    replication_request: bool = False

    def headers(self) -> Dict[str, str]:
        headers: Dict[str, str] = {}
        if self.delete_marker:
            headers[DELETE_MARKER_HEADER] = "true"
        if self.replication_mtime is not None:
            headers[SOURCE_MTIME_HEADER] = format_timestamp(self.replication_mtime)
        if self.replication_status:
            headers[REPLICATION_STATUS_HEADER] = self.replication_status
        if self.replication_request:
            headers[REPLICATION_REQUEST_HEADER] = "true"
        return headers


class ObjectStore(Protocol):
    """
    One end of a replication. Implementations must be safe for concurrent
    use by many workers; every method raises `StoreError` on failure.
    """

    async def probe(self, key: str, version_id: str, proxy_request: bool) -> ObjectInfo:
        """Return the metadata of an object version."""
        ...

    async def fetch(
        self, key: str, version_id: str, etag: str, proxy_request: bool
    ) -> Tuple[ObjectStream, ObjectInfo]:
        """Open an object version whose ETag must equal `etag`."""
        ...

    async def upload(
        self, key: str, stream: ObjectStream, size: int, options: PutOptions
    ) -> ObjectInfo:
        """Write `size` bytes from `stream` under `key`."""
        ...

    async def delete(self, key: str, version_id: str, options: RemoveOptions) -> None:
        """Remove an object version."""
        ...


def encode_tags(tags: Optional[Mapping[str, str]]) -> Optional[Dict[str, str]]:
    """
    Validate user tags against S3 object tagging rules.

    Args:
        tags (Mapping[str, str], optional): The tags read from the source.

    Returns:
        Optional[Dict[str, str]]: The tags to write, or None if the source
            object had none or they cannot be stored as object tags.
    """
    if not tags:
        return None
    if len(tags) > MAX_OBJECT_TAGS:
        logger.debug(f"Dropping {len(tags)} tags: more than {MAX_OBJECT_TAGS}.")
        return None
    for key, value in tags.items():
        if (
            not key
            or len(key) > MAX_TAG_KEY_LENGTH
            or len(value) > MAX_TAG_VALUE_LENGTH
        ):
            logger.debug(f"Dropping tags: invalid tag {key!r}={value!r}.")
            return None
    return dict(tags)


def _stash_internal_headers(
    params: Dict[str, Any], context: Dict[str, Any], **kwargs: Any
) -> None:
    """Move the internal headers out of the API params before validation."""
    headers: Optional[Dict[str, str]] = params.pop(_INTERNAL_HEADERS_PARAM, None)
    if headers:
        context[_INTERNAL_HEADERS_PARAM] = headers


def _apply_internal_headers(
    params: Dict[str, Any], context: Dict[str, Any], **kwargs: Any
) -> None:
    """Add the stashed internal headers to the outgoing request."""
    headers: Optional[Dict[str, str]] = context.get(_INTERNAL_HEADERS_PARAM)
    if headers:
        params["headers"].update(headers)


def register_internal_headers(client: "S3Client") -> None:
    """
    Allow `InternalHeaders={...}` as an extra parameter on object calls.

    Args:
        client (S3Client): The aiobotocore client to extend.
    """
    for operation in _HEADER_OPERATIONS:
        client.meta.events.register(
            f"before-parameter-build.s3.{operation}",
            _stash_internal_headers,
            unique_id=f"replica-backfill-stash-{operation}",
        )
        client.meta.events.register(
            f"before-call.s3.{operation}",
            _apply_internal_headers,
            unique_id=f"replica-backfill-apply-{operation}",
        )


@contextmanager
def _store_errors(operation: str, key: str) -> Iterator[None]:
    """Translate botocore failures into `StoreError`."""
    try:
        yield
    except ClientError as e:
        error: Dict[str, Any] = e.response.get("Error", {})
        status: Optional[int] = e.response.get("ResponseMetadata", {}).get(
            "HTTPStatusCode"
        )
        code: str = str(error.get("Code") or status or "Unknown")
        raise StoreError(
            code, f"{operation} '{key}': {error.get('Message', e)}", status
        ) from e
    except BotoCoreError as e:
        raise StoreError(type(e).__name__, f"{operation} '{key}': {e}") from e


def _response_headers(response: Mapping[str, Any]) -> Mapping[str, str]:
    return response.get("ResponseMetadata", {}).get("HTTPHeaders", {})


def _response_header(response: Mapping[str, Any], name: str) -> Optional[str]:
    """Look up a raw response header; botocore lowercases header names."""
    return _response_headers(response).get(name.lower())


def _object_info(key: str, response: Mapping[str, Any]) -> ObjectInfo:
    headers: Mapping[str, str] = _response_headers(response)
    return ObjectInfo(
        key=key,
        version_id=response.get("VersionId", ""),
        etag=response.get("ETag", "").strip('"'),
        size=response.get("ContentLength", 0),
        last_modified=response.get("LastModified"),
        content_type=response.get("ContentType", ""),
        storage_class=response.get("StorageClass", ""),
        metadata=dict(headers),
        user_metadata=dict(response.get("Metadata", {})),
    )


def _version_param(version_id: str) -> Dict[str, str]:
    return {"VersionId": version_id} if version_id else {}


class S3ObjectStore:
    """An `ObjectStore` bound to one bucket of an S3-compatible service."""

    def __init__(self, client: "S3Client", bucket: str) -> None:
        """
        Args:
            client (S3Client): An initialized aiobotocore S3 client.
            bucket (str): The bucket all operations target.
        """
        self._client: "S3Client" = client
        self._bucket: str = bucket
        register_internal_headers(client)

    @property
    def bucket(self) -> str:
        return self._bucket

    async def probe(self, key: str, version_id: str, proxy_request: bool) -> ObjectInfo:
        with _store_errors("HeadObject", key):
            response: Dict[str, Any] = await self._client.head_object(
                Bucket=self._bucket,
                Key=key,
                **_version_param(version_id),
                InternalHeaders={PROXY_REQUEST_HEADER: str(proxy_request).lower()},
            )
        return _object_info(key, response)

    async def fetch(
        self, key: str, version_id: str, etag: str, proxy_request: bool
    ) -> Tuple[ObjectStream, ObjectInfo]:
        if not etag:
            raise StoreError(
                "InvalidArgument", f"GetObject '{key}': ETag cannot be empty."
            )
        with _store_errors("GetObject", key):
            response: Dict[str, Any] = await self._client.get_object(
                Bucket=self._bucket,
                Key=key,
                IfMatch=etag,
                **_version_param(version_id),
                InternalHeaders={PROXY_REQUEST_HEADER: str(proxy_request).lower()},
            )
        stream: ObjectStream = response["Body"]
        tags: Optional[Dict[str, str]] = None
        try:
            info: ObjectInfo = _object_info(key, response)
            try:
                tags = await self._read_tags(key, version_id, response)
            except StoreError as e:
                # The body was fetched; the copy goes ahead untagged.
                logger.warning(f"Copying '{key}' without its tags: {e}")
        except BaseException:
            stream.close()
            raise
        if tags is not None:
            info = replace(info, user_tags=tags)
        return stream, info

    async def _read_tags(
        self, key: str, version_id: str, response: Mapping[str, Any]
    ) -> Optional[Dict[str, str]]:
        """
        Read object tags from the tagging header, falling back to the
        tagging API when only a tag count was returned.
        """
        encoded: Optional[str] = _response_header(response, "x-amz-tagging")
        if encoded:
            return dict(parse_qsl(encoded, keep_blank_values=True))
        if not response.get("TagCount"):
            return None
        with _store_errors("GetObjectTagging", key):
            tagging: Dict[str, Any] = await self._client.get_object_tagging(
                Bucket=self._bucket, Key=key, **_version_param(version_id)
            )
        tag_set: List[Dict[str, str]] = tagging.get("TagSet", [])
        return {tag["Key"]: tag["Value"] for tag in tag_set}

    async def upload(
        self, key: str, stream: ObjectStream, size: int, options: PutOptions
    ) -> ObjectInfo:
        params: Dict[str, Any] = {"Metadata": dict(options.user_metadata)}
        if options.content_type:
            params["ContentType"] = options.content_type
        if options.content_encoding:
            params["ContentEncoding"] = options.content_encoding
        if options.storage_class:
            params["StorageClass"] = options.storage_class
        if options.user_tags:
            params["Tagging"] = urlencode(dict(options.user_tags))

        with _store_errors("PutObject", key):
            # S3-compatible providers require Content-Length, so the body is
            # read fully before the PUT.
            body: bytes = await stream.read()
            response: Dict[str, Any] = await self._client.put_object(
                Bucket=self._bucket,
                Key=key,
                Body=body,
                ContentLength=size,
                InternalHeaders=options.internal.headers(),
                **params,
            )
        return ObjectInfo(
            key=key,
            version_id=response.get("VersionId", ""),
            etag=response.get("ETag", "").strip('"'),
            size=size,
        )

    async def delete(self, key: str, version_id: str, options: RemoveOptions) -> None:
        with _store_errors("DeleteObject", key):
            await self._client.delete_object(
                Bucket=self._bucket,
                Key=key,
                **_version_param(version_id),
                InternalHeaders=options.headers(),
            )
