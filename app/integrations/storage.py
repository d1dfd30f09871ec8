"""
S3-compatible object storage for uploaded import files.

Works against AWS S3, Backblaze B2, MinIO and other S3-compatible providers
through boto3. The pipeline only depends on the :class:`ObjectStore`
protocol, so tests can pass an in-memory implementation.
"""
import logging
import threading
from typing import Iterable, Optional, Protocol

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from app.core.config import settings

logger = logging.getLogger(__name__)


class StorageError(Exception):
    """Base exception for storage operations."""
    pass


class StorageConnectionError(StorageError):
    """Raised when storage connection fails."""
    pass


class StorageUploadError(StorageError):
    """Raised when file upload fails."""
    pass


class StorageDownloadError(StorageError):
    """Raised when file download fails."""
    pass


class StorageDeleteError(StorageError):
    """Raised when one or more objects could not be removed."""
    pass


class ObjectStore(Protocol):
    def upload(self, path: str, content: bytes, content_type: Optional[str] = None) -> str: ...

    def download(self, path: str) -> bytes: ...

    def remove(self, paths: Iterable[str]) -> None: ...


def build_object_path(user_id: str, job_id: str, file_name: str) -> str:
    """Object key for an uploaded import file: ``{user}/{job}/{file}``."""
    safe_name = file_name.replace("/", "_").replace("\\", "_")
    return f"{user_id}/{job_id}/{safe_name}"


def get_storage_client():
    """
    Get S3-compatible storage client.

    Raises:
        StorageConnectionError: If the client cannot be created or configuration is incomplete
    """
    if not settings.storage_bucket_name:
        raise StorageConnectionError("Storage configuration is incomplete. Set STORAGE_BUCKET_NAME.")

    config = Config(
        signature_version='s3v4',
        retries={'max_attempts': 3, 'mode': 'standard'}
    )

    client_kwargs = {
        'service_name': 's3',
        'config': config,
    }
    # Without explicit keys boto3 falls back to its default credential chain
    if settings.storage_access_key_id and settings.storage_secret_access_key:
        client_kwargs['aws_access_key_id'] = settings.storage_access_key_id
        client_kwargs['aws_secret_access_key'] = settings.storage_secret_access_key
    if settings.storage_endpoint_url:
        client_kwargs['endpoint_url'] = settings.storage_endpoint_url
    if settings.storage_region:
        client_kwargs['region_name'] = settings.storage_region

    try:
        return boto3.client(**client_kwargs)
    except (BotoCoreError, ValueError) as e:
        logger.error(f"Failed to create storage client: {e}")
        raise StorageConnectionError(f"Failed to connect to storage: {str(e)}")


class S3ObjectStore:
    """:class:`ObjectStore` backed by a single S3 bucket."""

    def __init__(self, client=None, bucket: Optional[str] = None):
        self._client = client
        self.bucket = bucket or settings.storage_bucket_name

    @property
    def client(self):
        if self._client is None:
            self._client = get_storage_client()
        return self._client

    def upload(self, path: str, content: bytes, content_type: Optional[str] = None) -> str:
        extra = {"ContentType": content_type} if content_type else {}
        try:
            self.client.put_object(Bucket=self.bucket, Key=path, Body=content, **extra)
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            logger.error(f"Storage upload failed: {error_code} - {str(e)}")
            raise StorageUploadError(f"Upload failed: {str(e)}")
        except BotoCoreError as e:
            logger.error(f"Unexpected error during upload: {str(e)}")
            raise StorageUploadError(f"Upload failed: {str(e)}")
        logger.info(f"Stored {len(content)} bytes at {path}")
        return path

    def download(self, path: str) -> bytes:
        try:
            response = self.client.get_object(Bucket=self.bucket, Key=path)
            return response['Body'].read()
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            if error_code == 'NoSuchKey':
                raise StorageDownloadError(f"File not found: {path}")
            logger.error(f"Storage download failed: {error_code} - {str(e)}")
            raise StorageDownloadError(f"Download failed: {str(e)}")
        except BotoCoreError as e:
            logger.error(f"Unexpected error during download: {str(e)}")
            raise StorageDownloadError(f"Download failed: {str(e)}")

    def remove(self, paths: Iterable[str]) -> None:
        keys = [{"Key": path} for path in paths if path]
        if not keys:
            return
        try:
            response = self.client.delete_objects(Bucket=self.bucket, Delete={"Objects": keys, "Quiet": True})
        except (ClientError, BotoCoreError) as e:
            raise StorageDeleteError(f"Delete failed: {str(e)}")
        failed = response.get("Errors") or []
        if failed:
            raise StorageDeleteError(
                "Delete failed for: " + ", ".join(item.get("Key", "?") for item in failed)
            )


_object_store: Optional[S3ObjectStore] = None
_object_store_lock = threading.Lock()


def get_object_store() -> ObjectStore:
    """FastAPI dependency returning the process-wide S3 object store."""
    global _object_store
    if _object_store is None:
        with _object_store_lock:
            if _object_store is None:
                _object_store = S3ObjectStore()
    return _object_store
