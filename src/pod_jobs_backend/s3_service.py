"""
S3 helpers for handing object-stored print files to external workers.

Files kept in S3 are referenced by key; workers receive a time-limited
presigned GET URL instead of bucket credentials. When no bucket is configured,
or credentials are missing, presigning is skipped and callers fall back to the
URL stored with the file record.
"""

from __future__ import annotations

import logging
from typing import Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

logger = logging.getLogger(__name__)


class S3Presigner:
    """
    Lazily-initialized boto3 client bound to one bucket.

    Attributes:
        bucket: Target bucket name (empty disables presigning)
        expiration: Lifetime of generated URLs in seconds
    """

    def __init__(self, bucket: str, expiration: int = 3600, client=None) -> None:
        self.bucket = bucket
        self.expiration = expiration
        self._client = client

    @property
    def enabled(self) -> bool:
        return bool(self.bucket)

    def _get_client(self):
        if self._client is None:
            try:
                self._client = boto3.client("s3")
            except (BotoCoreError, ClientError) as e:
                logger.warning(f"Failed to create S3 client: {e}")
                return None
        return self._client

    def presign(self, key: str) -> Optional[str]:
        """
        Generate a presigned URL for downloading an object.

        Args:
            key: S3 object key (path within the bucket)

        Returns:
            Presigned URL string, or None if the bucket is not configured or
            generation fails
        """
        if not self.enabled:
            return None

        client = self._get_client()
        if client is None:
            logger.warning("S3 client not available")
            return None

        try:
            url = client.generate_presigned_url(
                "get_object",
                Params={"Bucket": self.bucket, "Key": key},
                ExpiresIn=self.expiration,
            )
        except (BotoCoreError, ClientError) as e:
            logger.error(f"Failed to generate presigned URL for {key}: {e}")
            return None

        logger.info(f"Generated presigned URL for {key} (expires in {self.expiration}s)")
        return url
