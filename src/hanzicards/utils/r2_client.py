"""Cloudflare R2 object store for generated media."""

import logging
import os
import time
from typing import Callable, List, Optional, TypeVar

import boto3
from botocore.exceptions import ClientError

from hanzicards.exceptions import StorageError
from hanzicards.utils.object_store import ObjectStore

logger = logging.getLogger(__name__)

T = TypeVar("T")

_MISSING_CODES = {"404", "NoSuchKey", "NotFound"}


class R2ObjectStore(ObjectStore):
    """Object store backed by Cloudflare R2 with retry logic."""

    def __init__(
        self,
        account_id: str | None = None,
        access_key_id: str | None = None,
        secret_access_key: str | None = None,
        bucket_name: str | None = None,
        public_url: str | None = None,
        max_retries: int = 3,
        retry_delay: float = 1.0,
    ):
        """Initialize R2 client.

        Args:
            account_id: Cloudflare account ID (or R2_ACCOUNT_ID env var)
            access_key_id: R2 access key (or R2_ACCESS_KEY_ID env var)
            secret_access_key: R2 secret key (or R2_SECRET_ACCESS_KEY env var)
            bucket_name: R2 bucket name (or R2_BUCKET_NAME env var)
            public_url: Public bucket URL (or R2_PUBLIC_URL env var)
            max_retries: Maximum retry attempts
            retry_delay: Initial delay between retries in seconds
        """
        self.account_id = account_id or os.getenv("R2_ACCOUNT_ID")
        self.access_key_id = access_key_id or os.getenv("R2_ACCESS_KEY_ID")
        self.secret_access_key = secret_access_key or os.getenv("R2_SECRET_ACCESS_KEY")
        self.bucket_name = bucket_name or os.getenv("R2_BUCKET_NAME")

        if not all([self.account_id, self.access_key_id, self.secret_access_key, self.bucket_name]):
            raise ValueError(
                "R2 credentials required: R2_ACCOUNT_ID, R2_ACCESS_KEY_ID, "
                "R2_SECRET_ACCESS_KEY, R2_BUCKET_NAME env vars or constructor params"
            )

        self.public_url = (
            public_url or os.getenv("R2_PUBLIC_URL") or f"https://pub-{self.account_id}.r2.dev"
        ).rstrip("/")

        # Create boto3 S3 client configured for R2
        self.s3_client = boto3.client(
            "s3",
            endpoint_url=f"https://{self.account_id}.r2.cloudflarestorage.com",
            aws_access_key_id=self.access_key_id,
            aws_secret_access_key=self.secret_access_key,
            region_name="auto",  # R2 uses 'auto' region
        )

        self.max_retries = max_retries
        self.retry_delay = retry_delay

    def _with_retries(self, operation: str, key: str, call: Callable[[], T]) -> T:
        for attempt in range(self.max_retries):
            try:
                return call()
            except ClientError as e:
                error_msg = str(e)
                logger.warning(
                    f"R2 {operation} failed (attempt {attempt + 1}/{self.max_retries}): "
                    f"{key}: {error_msg}"
                )
                if attempt < self.max_retries - 1:
                    delay = self.retry_delay * (2 ** attempt)
                    logger.info(f"Retrying in {delay:.1f}s...")
                    time.sleep(delay)
                else:
                    logger.error(
                        f"✗ R2 {operation} failed after {self.max_retries} attempts: {error_msg}"
                    )
                    raise StorageError(f"R2 {operation} failed for {key}: {error_msg}") from e
        raise StorageError(f"R2 {operation} failed for {key}")

    def put(self, key: str, data: bytes, content_type: str) -> None:
        start_time = time.time()
        self._with_retries(
            "put",
            key,
            lambda: self.s3_client.put_object(
                Bucket=self.bucket_name, Key=key, Body=data, ContentType=content_type
            ),
        )
        upload_time_ms = int((time.time() - start_time) * 1000)
        logger.info(f"✓ Uploaded {key}: {len(data)} bytes, {upload_time_ms}ms")

    def get(self, key: str) -> Optional[bytes]:
        try:
            response = self.s3_client.get_object(Bucket=self.bucket_name, Key=key)
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") in _MISSING_CODES:
                return None
            raise StorageError(f"R2 get failed for {key}: {e}") from e
        return response["Body"].read()

    def exists(self, key: str) -> bool:
        """Check if an object exists in R2.

        A 404 means absent; any other error is raised so that a flaky
        existence check never triggers a duplicate generation.
        """
        try:
            self.s3_client.head_object(Bucket=self.bucket_name, Key=key)
            return True
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") in _MISSING_CODES:
                return False
            raise StorageError(f"R2 head failed for {key}: {e}") from e

    def delete(self, key: str) -> bool:
        if not self.exists(key):
            return False
        self._with_retries(
            "delete", key, lambda: self.s3_client.delete_object(Bucket=self.bucket_name, Key=key)
        )
        logger.info(f"Deleted from R2: {key}")
        return True

    def list_keys(self, prefix: str = "") -> List[str]:
        keys: List[str] = []
        paginator = self.s3_client.get_paginator("list_objects_v2")
        try:
            for page in paginator.paginate(Bucket=self.bucket_name, Prefix=prefix):
                keys.extend(obj["Key"] for obj in page.get("Contents", []))
        except ClientError as e:
            raise StorageError(f"R2 list failed for prefix {prefix!r}: {e}") from e
        return keys

    def url_for(self, key: str) -> str:
        return f"{self.public_url}/{key}"
