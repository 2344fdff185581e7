# app/storage/blob_store.py
"""Blob store clients: whole-object put/get/delete addressed by key."""

import logging
import mimetypes
from pathlib import Path

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from app.core.config import Settings
from app.core.errors import InvalidInput, NotFound, StoreUnavailable

logger = logging.getLogger(__name__)

_MISSING_KEY_CODES = {"NoSuchKey", "404", "NotFound"}


class BlobStore:
    """Key-addressed object storage. Calls block; run them off the event loop."""

    def put(self, key: str, data: bytes, content_type: str) -> str:
        """Store ``data`` under ``key`` and return its location."""
        raise NotImplementedError

    def get(self, location: str) -> bytes:
        return self.fetch(location)[0]

    def fetch(self, location: str) -> tuple[bytes, str]:
        """Return an object's bytes together with its content type."""
        raise NotImplementedError

    def delete(self, location: str) -> None:
        """Remove an object. Deleting a missing object is not an error."""
        raise NotImplementedError


class S3BlobStore(BlobStore):
    def __init__(
        self,
        *,
        bucket: str,
        region: str,
        access_key_id: str,
        secret_access_key: str,
        endpoint_url: str | None = None,
        timeout: float = 30.0,
    ):
        self.bucket = bucket
        self._client = boto3.client(
            "s3",
            region_name=region,
            aws_access_key_id=access_key_id,
            aws_secret_access_key=secret_access_key,
            endpoint_url=endpoint_url,
            config=Config(connect_timeout=timeout, read_timeout=timeout, retries={"max_attempts": 2}),
        )

    def put(self, key: str, data: bytes, content_type: str) -> str:
        try:
            self._client.put_object(Bucket=self.bucket, Key=key, Body=data, ContentType=content_type)
        except (BotoCoreError, ClientError) as exc:
            logger.exception("S3 put failed for %s", key)
            raise StoreUnavailable("Blob store rejected the write") from exc
        return key

    def fetch(self, location: str) -> tuple[bytes, str]:
        try:
            obj = self._client.get_object(Bucket=self.bucket, Key=location)
            data = obj["Body"].read()
        except ClientError as exc:
            code = exc.response.get("Error", {}).get("Code", "")
            if code in _MISSING_KEY_CODES:
                logger.warning("S3 object %s is missing", location)
                raise NotFound("File content is missing from storage") from exc
            logger.exception("S3 get failed for %s", location)
            raise StoreUnavailable("Blob store read failed") from exc
        except BotoCoreError as exc:
            logger.exception("S3 get failed for %s", location)
            raise StoreUnavailable("Blob store read failed") from exc
        return data, obj.get("ContentType") or "application/octet-stream"

    def delete(self, location: str) -> None:
        try:
            self._client.delete_object(Bucket=self.bucket, Key=location)
        except (BotoCoreError, ClientError) as exc:
            logger.exception("S3 delete failed for %s", location)
            raise StoreUnavailable("Blob store delete failed") from exc


class LocalBlobStore(BlobStore):
    """Objects as plain files under ``root``; meant for development."""

    def __init__(self, root: str):
        self.root = Path(root).resolve()
        self.root.mkdir(parents=True, exist_ok=True)

    def _resolve(self, key: str) -> Path:
        candidate = (self.root / key.lstrip("/")).resolve()
        if candidate == self.root or self.root not in candidate.parents:
            logger.warning("Rejected storage key outside %s: %r", self.root, key)
            raise InvalidInput("Storage key escapes the storage root")
        return candidate

    def put(self, key: str, data: bytes, content_type: str) -> str:
        target = self._resolve(key)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(data)
        except OSError as exc:
            logger.exception("Local put failed for %s", key)
            raise StoreUnavailable("Blob store rejected the write") from exc
        return key

    def fetch(self, location: str) -> tuple[bytes, str]:
        target = self._resolve(location)
        try:
            data = target.read_bytes()
        except FileNotFoundError as exc:
            logger.warning("Local object %s is missing", location)
            raise NotFound("File content is missing from storage") from exc
        except OSError as exc:
            logger.exception("Local get failed for %s", location)
            raise StoreUnavailable("Blob store read failed") from exc
        # plain files keep no metadata; the type follows the name as on upload
        return data, mimetypes.guess_type(target.name)[0] or "application/octet-stream"

    def delete(self, location: str) -> None:
        try:
            self._resolve(location).unlink(missing_ok=True)
        except OSError as exc:
            logger.exception("Local delete failed for %s", location)
            raise StoreUnavailable("Blob store delete failed") from exc


def build_blob_store(settings: Settings) -> BlobStore:
    backend = settings.storage_backend.lower()
    if backend == "s3":
        return S3BlobStore(
            bucket=settings.aws_s3_bucket_name,
            region=settings.aws_region,
            access_key_id=settings.aws_access_key_id,
            secret_access_key=settings.aws_secret_access_key,
            endpoint_url=settings.aws_s3_endpoint_url,
            timeout=settings.remote_call_timeout,
        )
    if backend == "local":
        return LocalBlobStore(settings.local_storage_root)
    raise ValueError(f"Unsupported storage backend: {settings.storage_backend}")
