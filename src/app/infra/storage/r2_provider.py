# src/app/infra/storage/r2_provider.py
"""
Cloudflare R2 storage provider implementation.
R2 is S3-compatible, so we use boto3 with custom endpoint.
"""
from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Optional

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from src.app.domain.errors import StorageDownloadError, StorageError
from src.app.infra.storage.base import StorageProvider

logger = logging.getLogger(__name__)

_NOT_FOUND_CODES = ("404", "NoSuchKey", "NotFound")


def _error_code(error: ClientError) -> str:
    return str(error.response.get("Error", {}).get("Code", "Unknown"))


class R2StorageProvider(StorageProvider):
    """
    Cloudflare R2 storage provider using boto3 (S3-compatible).

    Environment variables required:
    - R2_ACCOUNT_ID: Cloudflare account ID
    - R2_ACCESS_KEY_ID: R2 access key ID
    - R2_SECRET_ACCESS_KEY: R2 secret access key
    - R2_BUCKET_NAME: Name of the upload bucket
    """

    def __init__(
        self,
        account_id: Optional[str] = None,
        access_key_id: Optional[str] = None,
        secret_access_key: Optional[str] = None,
        bucket_name: Optional[str] = None,
    ):
        self.account_id = account_id or os.getenv("R2_ACCOUNT_ID")
        self.access_key_id = access_key_id or os.getenv("R2_ACCESS_KEY_ID")
        self.secret_access_key = secret_access_key or os.getenv("R2_SECRET_ACCESS_KEY")
        self.bucket_name = bucket_name or os.getenv("R2_BUCKET_NAME")

        if not all([self.account_id, self.access_key_id, self.secret_access_key, self.bucket_name]):
            raise StorageError(
                "Missing R2 configuration. Required: R2_ACCOUNT_ID, R2_ACCESS_KEY_ID, "
                "R2_SECRET_ACCESS_KEY, R2_BUCKET_NAME"
            )

        self.endpoint_url = f"https://{self.account_id}.r2.cloudflarestorage.com"

        self._client = boto3.client(
            "s3",
            endpoint_url=self.endpoint_url,
            aws_access_key_id=self.access_key_id,
            aws_secret_access_key=self.secret_access_key,
            config=Config(
                signature_version="s3v4",
                retries={"max_attempts": 3, "mode": "adaptive"},
            ),
            region_name="auto",  # R2 uses 'auto' as region
        )

        logger.info("R2StorageProvider initialized: bucket=%s", self.bucket_name)

    def download_to_path(self, object_key: str, target_path: Path) -> Path:
        try:
            target_path.parent.mkdir(parents=True, exist_ok=True)
            logger.info("Downloading from R2: key=%s -> %s", object_key, target_path)

            self._client.download_file(
                Bucket=self.bucket_name,
                Key=object_key,
                Filename=str(target_path),
            )
        except ClientError as e:
            if _error_code(e) in _NOT_FOUND_CODES:
                raise StorageDownloadError(object_key, "Object not found") from e
            logger.error("Failed to download from R2: %s", e)
            raise StorageDownloadError(object_key, str(e)) from e
        except BotoCoreError as e:
            logger.error("Failed to download from R2: %s", e)
            raise StorageDownloadError(object_key, str(e)) from e

        logger.info("Downloaded successfully: key=%s, size=%d bytes", object_key, target_path.stat().st_size)
        return target_path

    def get_object_metadata(self, object_key: str) -> dict:
        try:
            response = self._client.head_object(
                Bucket=self.bucket_name,
                Key=object_key,
            )
        except ClientError as e:
            logger.error("Failed to get object metadata: %s", e)
            raise StorageError(f"Failed to get object metadata: {e}") from e

        return {
            "content_type": response.get("ContentType"),
            "content_length": response.get("ContentLength"),
            "metadata": response.get("Metadata") or {},
        }
