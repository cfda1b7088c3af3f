"""
Object storage for product images and payment proofs (S3).
"""
import logging
import os
import re
import time
from typing import NamedTuple, Optional

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from errors import InvalidRequestError, ObjectStorageError
from schemas import ImageRef

logger = logging.getLogger(__name__)

ALLOWED_IMAGE_TYPES = {"image/jpeg", "image/png", "image/jpg", "image/webp"}
MAX_IMAGE_BYTES = 5 * 1024 * 1024


def validate_image(content_type: Optional[str], size: int) -> None:
    if content_type not in ALLOWED_IMAGE_TYPES:
        raise InvalidRequestError("Invalid file type. Only JPEG, PNG, and WebP are allowed.")
    if size == 0:
        raise InvalidRequestError("Uploaded file is empty")
    if size > MAX_IMAGE_BYTES:
        raise InvalidRequestError("File too large. The limit is 5MB.")


def build_key(folder: str, filename: Optional[str]) -> str:
    safe_name = re.sub(r"[^A-Za-z0-9._-]", "_", filename or "upload")
    return f"{folder}/{int(time.time() * 1000)}-{safe_name}"


class S3ObjectStore:
    def __init__(
        self,
        bucket: str,
        region: Optional[str] = None,
        public_base_url: Optional[str] = None,
        timeout: float = 10,
        client=None,
    ):
        self.bucket = bucket
        self.region = region
        self.public_base_url = (
            public_base_url or f"https://{bucket}.s3.{region or 'us-east-1'}.amazonaws.com"
        ).rstrip("/")
        self.client = client or boto3.client(
            "s3",
            region_name=region,
            config=Config(
                connect_timeout=timeout,
                read_timeout=timeout,
                retries={"max_attempts": 3, "mode": "standard"},
            ),
        )

    def put(self, data: bytes, content_type: str, key_hint: str) -> ImageRef:
        """Upload bytes under a key derived from ``key_hint`` ("folder/filename")."""
        folder, _, filename = key_hint.rpartition("/")
        key = build_key(folder or "uploads", filename)
        try:
            self.client.put_object(
                Bucket=self.bucket,
                Key=key,
                Body=data,
                ContentType=content_type,
                ACL="public-read",
            )
        except (BotoCoreError, ClientError) as e:
            logger.error("S3 upload failed for %s: %s", key, e)
            raise ObjectStorageError(f"Image upload failed: {e}") from e
        return ImageRef(url=f"{self.public_base_url}/{key}", storage_key=key)

    def delete(self, key: str) -> None:
        try:
            self.client.delete_object(Bucket=self.bucket, Key=key)
        except (BotoCoreError, ClientError) as e:
            logger.error("S3 delete failed for %s: %s", key, e)
            raise ObjectStorageError(f"Image delete failed: {e}") from e


def release_images(store, keys: list) -> list:
    """Delete stored objects, logging failures instead of raising. Returns keys that failed."""
    failed = []
    if store is None:
        if keys:
            logger.warning("Object storage not configured; %d image(s) not released", len(keys))
        return list(keys)
    for key in keys:
        try:
            store.delete(key)
        except ObjectStorageError as e:
            logger.warning("Could not release image %s: %s", key, e)
            failed.append(key)
    return failed


_store: Optional[S3ObjectStore] = None


def get_object_store() -> Optional[S3ObjectStore]:
    """FastAPI dependency; None when AWS_BUCKET_NAME is not set."""
    global _store
    bucket = os.getenv("AWS_BUCKET_NAME")
    if not bucket:
        return None
    if _store is None:
        _store = S3ObjectStore(
            bucket,
            region=os.getenv("AWS_REGION"),
            public_base_url=os.getenv("S3_PUBLIC_BASE_URL"),
            timeout=float(os.getenv("S3_TIMEOUT_SECONDS", "10")),
        )
    return _store


class UploadedFile(NamedTuple):
    data: bytes
    content_type: Optional[str]
    filename: Optional[str]


def store_upload(store, upload: UploadedFile, folder: str) -> ImageRef:
    validate_image(upload.content_type, len(upload.data))
    if store is None:
        raise ObjectStorageError("Object storage is not configured")
    return store.put(upload.data, upload.content_type, f"{folder}/{upload.filename or 'upload'}")
