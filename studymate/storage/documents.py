"""
Document source — where the worker reads uploaded PDFs from.

Uploads are stored by the web app under documents.storage_path in the
document bucket. The ingestion worker only ever reads them.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod

import aioboto3
from botocore.exceptions import ClientError

from studymate.core.config import settings

logger = logging.getLogger(__name__)


class DocumentSource(ABC):

    @abstractmethod
    async def fetch(self, storage_path: str) -> bytes:
        """Return the raw bytes stored at `storage_path`."""


class S3DocumentSource(DocumentSource):
    """
    Async S3 reads via aioboto3.

    In production credentials come from the task role; in local dev
    (LocalStack / MinIO) from the static keys and endpoint in settings.
    """

    def __init__(self, bucket: str | None = None) -> None:
        self._bucket  = bucket or settings.s3_bucket
        self._session = aioboto3.Session()

    def _client(self):
        """Return a scoped async S3 client context manager."""
        kwargs: dict = {"region_name": settings.aws_region}
        if settings.s3_endpoint_url:
            kwargs["endpoint_url"] = settings.s3_endpoint_url
        if settings.aws_access_key_id and settings.aws_secret_access_key:
            kwargs["aws_access_key_id"]     = settings.aws_access_key_id
            kwargs["aws_secret_access_key"] = settings.aws_secret_access_key
        return self._session.client("s3", **kwargs)

    async def fetch(self, storage_path: str) -> bytes:
        async with self._client() as s3:
            try:
                resp = await s3.get_object(Bucket=self._bucket, Key=storage_path)
                body = await resp["Body"].read()
            except ClientError as exc:
                code = exc.response["Error"]["Code"]
                if code in ("NoSuchKey", "404"):
                    raise FileNotFoundError(f"Object not found: {storage_path}") from exc
                raise

        logger.info("S3 fetch | bucket=%s key=%s bytes=%d", self._bucket, storage_path, len(body))
        return body
