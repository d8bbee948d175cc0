"""
Blob storage for uploads, stage intermediates and index artifacts.

Every store exposes the same four operations keyed by (bucket, key):
put, get, exists, delete. put() returns the key the data was actually
written under, which differs from the requested key only when the
fallback store had to take over.

Backends:
- LocalBlobStore: files under {BLOB_ROOT}/{bucket}/{key}
- S3BlobStore: any S3-compatible service via boto3
- FallbackBlobStore: primary store with a local spill-over for payloads
  the primary rejects as too large
"""
import logging
from pathlib import Path
from typing import Optional

import boto3
from botocore.exceptions import ClientError
from django.conf import settings

from apps.indexing.errors import InfrastructureError

logger = logging.getLogger(__name__)

# Keys written to the spill-over store carry this prefix
LOCAL_FALLBACK_PREFIX = 'local://'

# S3 / gateway error codes that mean "object too large for this backend"
SIZE_LIMIT_ERROR_CODES = {'EntityTooLarge', 'MaxMessageLengthExceeded', '413'}


class StorageError(InfrastructureError):
    """Base exception for storage operations."""
    pass


class BlobNotFoundError(StorageError):
    """Requested object does not exist."""
    pass


class BlobSizeLimitError(StorageError):
    """The backend refused the object because of its size."""
    pass


class BlobStore:
    """Interface shared by all blob backends."""

    def put(self, bucket: str, key: str, data: bytes, content_type: Optional[str] = None) -> str:
        raise NotImplementedError

    def get(self, bucket: str, key: str) -> bytes:
        raise NotImplementedError

    def exists(self, bucket: str, key: str) -> bool:
        raise NotImplementedError

    def delete(self, bucket: str, key: str) -> bool:
        raise NotImplementedError


class LocalBlobStore(BlobStore):
    """
    Filesystem blob store.

    Objects are stored at: {root}/{bucket}/{key}
    """

    def __init__(self, root: Optional[Path] = None, max_object_bytes: Optional[int] = None):
        self.root = Path(root or settings.BLOB_ROOT)
        self.max_object_bytes = max_object_bytes
        self._ensure_root_exists()

    def _ensure_root_exists(self) -> None:
        try:
            self.root.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            logger.error(f"Failed to create blob root {self.root}: {e}")
            raise StorageError(f"Cannot create blob directory: {e}")

    def _path(self, bucket: str, key: str) -> Path:
        if key.startswith(LOCAL_FALLBACK_PREFIX):
            key = key[len(LOCAL_FALLBACK_PREFIX):]
        path = (self.root / bucket / key).resolve()
        if self.root.resolve() not in path.parents:
            raise StorageError(f"Key escapes storage root: {key}")
        return path

    def put(self, bucket: str, key: str, data: bytes, content_type: Optional[str] = None) -> str:
        if self.max_object_bytes is not None and len(data) > self.max_object_bytes:
            raise BlobSizeLimitError(
                f"Object {key} is {len(data)} bytes, limit is {self.max_object_bytes}"
            )

        path = self._path(bucket, key)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp = path.with_name(path.name + '.part')
            tmp.write_bytes(data)
            tmp.replace(path)
        except OSError as e:
            logger.error(f"Failed to write {bucket}/{key}: {e}")
            raise StorageError(f"Failed to save object: {e}")

        logger.debug(f"Stored {bucket}/{key} ({len(data)} bytes)")
        return key

    def get(self, bucket: str, key: str) -> bytes:
        path = self._path(bucket, key)
        try:
            return path.read_bytes()
        except FileNotFoundError:
            raise BlobNotFoundError(f"Object not found: {bucket}/{key}")
        except OSError as e:
            raise StorageError(f"Failed to read object {bucket}/{key}: {e}")

    def exists(self, bucket: str, key: str) -> bool:
        return self._path(bucket, key).is_file()

    def delete(self, bucket: str, key: str) -> bool:
        path = self._path(bucket, key)
        try:
            if path.exists():
                path.unlink()
                logger.info(f"Deleted object: {bucket}/{key}")
                return True
            return False
        except OSError as e:
            logger.error(f"Failed to delete {bucket}/{key}: {e}")
            raise StorageError(f"Failed to delete object: {e}")


class S3BlobStore(BlobStore):
    """Blob store backed by S3 (or any S3-compatible endpoint)."""

    def __init__(self, client=None):
        self.client = client or boto3.client(
            's3',
            region_name=getattr(settings, 'S3_REGION', None),
            endpoint_url=getattr(settings, 'S3_ENDPOINT_URL', None) or None,
        )

    @staticmethod
    def _error_code(error: ClientError) -> str:
        return str(error.response.get('Error', {}).get('Code', ''))

    def put(self, bucket: str, key: str, data: bytes, content_type: Optional[str] = None) -> str:
        extra = {'ContentType': content_type} if content_type else {}
        try:
            self.client.put_object(Bucket=bucket, Key=key, Body=data, **extra)
        except ClientError as e:
            code = self._error_code(e)
            if code in SIZE_LIMIT_ERROR_CODES:
                raise BlobSizeLimitError(f"S3 rejected {key}: {code}") from e
            logger.error(f"S3 upload failed for {bucket}/{key}: {code}")
            raise StorageError(f"S3 error uploading {key}") from e
        return key

    def get(self, bucket: str, key: str) -> bytes:
        try:
            response = self.client.get_object(Bucket=bucket, Key=key)
            return response['Body'].read()
        except ClientError as e:
            code = self._error_code(e)
            if code in ('NoSuchKey', '404'):
                raise BlobNotFoundError(f"Object not found: {bucket}/{key}") from e
            raise StorageError(f"S3 error downloading {key}") from e

    def exists(self, bucket: str, key: str) -> bool:
        try:
            self.client.head_object(Bucket=bucket, Key=key)
            return True
        except ClientError as e:
            if self._error_code(e) in ('404', 'NoSuchKey', 'NotFound'):
                return False
            raise StorageError(f"S3 error checking {key}") from e

    def delete(self, bucket: str, key: str) -> bool:
        try:
            self.client.delete_object(Bucket=bucket, Key=key)
        except ClientError as e:
            raise StorageError(f"S3 error deleting {key}") from e
        return True


class FallbackBlobStore(BlobStore):
    """
    Routes writes to `primary`, spilling to `fallback` on size-limit errors.

    Spilled objects are returned as `local://{key}` so later reads find them.
    """

    def __init__(self, primary: BlobStore, fallback: BlobStore):
        self.primary = primary
        self.fallback = fallback

    def _route(self, key: str) -> BlobStore:
        return self.fallback if key.startswith(LOCAL_FALLBACK_PREFIX) else self.primary

    def put(self, bucket: str, key: str, data: bytes, content_type: Optional[str] = None) -> str:
        try:
            return self.primary.put(bucket, key, data, content_type)
        except BlobSizeLimitError as e:
            logger.warning(f"Primary store rejected {key} ({e}); writing to local fallback")
            self.fallback.put(bucket, key, data, content_type)
            return f"{LOCAL_FALLBACK_PREFIX}{key}"

    def get(self, bucket: str, key: str) -> bytes:
        if key.startswith(LOCAL_FALLBACK_PREFIX):
            return self.fallback.get(bucket, key)
        try:
            return self.primary.get(bucket, key)
        except BlobNotFoundError:
            # Intermediates may have spilled on an earlier attempt
            return self.fallback.get(bucket, f"{LOCAL_FALLBACK_PREFIX}{key}")

    def exists(self, bucket: str, key: str) -> bool:
        if key.startswith(LOCAL_FALLBACK_PREFIX):
            return self.fallback.exists(bucket, key)
        return (
            self.primary.exists(bucket, key)
            or self.fallback.exists(bucket, f"{LOCAL_FALLBACK_PREFIX}{key}")
        )

    def delete(self, bucket: str, key: str) -> bool:
        return self._route(key).delete(bucket, key)


def build_blob_store() -> BlobStore:
    """Construct the configured blob store (called by the runtime composition root)."""
    backend = getattr(settings, 'BLOB_BACKEND', 'local')
    local = LocalBlobStore(Path(settings.BLOB_ROOT))

    if backend == 's3':
        logger.info("Using S3 blob store with local fallback")
        return FallbackBlobStore(S3BlobStore(), local)

    return local
