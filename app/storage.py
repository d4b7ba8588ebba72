import json
import logging
import os
from typing import Any, Optional, Tuple

import boto3
from botocore.exceptions import ClientError
from fastapi.concurrency import run_in_threadpool

from app.exceptions import ConfigurationError
from app.settings import AppConfig
from app.utils import guess_image_content_type, image_key

logger = logging.getLogger("storybook-admin")

_MISSING_KEY_CODES = {"NoSuchKey", "404", "NotFound"}


def get_s3_client():
    return boto3.client(
        "s3",
        aws_access_key_id=os.environ.get("AWS_ACCESS_KEY_ID"),
        aws_secret_access_key=os.environ.get("AWS_SECRET_ACCESS_KEY"),
        region_name=AppConfig.get_value("aws_region") or os.environ.get("AWS_DEFAULT_REGION"),
    )


class BlobStore:
    """Opaque blob read/write by key against a single S3 bucket"""

    def __init__(self, bucket_name: str = None, client=None, public_base_url: str = None):
        self.bucket_name = bucket_name or AppConfig.get_value("s3_bucket_name")
        if not self.bucket_name:
            raise ConfigurationError(
                "STORYBOOK_S3_BUCKET_NAME environment variable or config file is required"
            )
        self.public_base_url = (
            public_base_url
            or AppConfig.get_value("s3_public_base_url")
            or f"https://{self.bucket_name}.s3.amazonaws.com"
        ).rstrip("/")
        self._client = client if client is not None else get_s3_client()

    def public_url(self, key: str) -> str:
        return f"{self.public_base_url}/{key}"

    async def read_bytes(self, key: str) -> Optional[bytes]:
        """Object body, or None when the key does not exist."""

        def _read():
            try:
                response = self._client.get_object(Bucket=self.bucket_name, Key=key)
            except ClientError as e:
                if e.response.get("Error", {}).get("Code") in _MISSING_KEY_CODES:
                    return None
                raise
            return response["Body"].read()

        return await run_in_threadpool(_read)

    async def read_json(self, key: str) -> Optional[Any]:
        body = await self.read_bytes(key)
        if body is None:
            return None
        return json.loads(body)

    async def put_bytes(self, key: str, data: bytes, content_type: str = None) -> str:
        extra = {"ContentType": content_type} if content_type else {}
        await run_in_threadpool(
            self._client.put_object, Bucket=self.bucket_name, Key=key, Body=data, **extra
        )
        return key

    async def upload_image(
        self,
        file_data: bytes,
        filename: str,
        book_safe_title: str,
        content_type: str = None,
    ) -> Tuple[str, str]:
        """
        Uploads an illustration under the book's image prefix.
        Returns (blob key, public URL).
        """
        key = image_key(book_safe_title, filename)
        mime_type = guess_image_content_type(filename, content_type)
        await self.put_bytes(key, file_data, mime_type)
        logger.info(f"Uploaded image {key} ({len(file_data)} bytes, {mime_type})")
        return key, self.public_url(key)

    async def delete(self, key: str) -> None:
        await run_in_threadpool(self._client.delete_object, Bucket=self.bucket_name, Key=key)

    async def delete_prefix(self, prefix: str) -> int:
        """Delete every object under prefix. Returns the number of keys removed."""

        def _delete_all():
            deleted = 0
            paginator = self._client.get_paginator("list_objects_v2")
            for page in paginator.paginate(Bucket=self.bucket_name, Prefix=prefix):
                keys = [{"Key": item["Key"]} for item in page.get("Contents", [])]
                if not keys:
                    continue
                self._client.delete_objects(
                    Bucket=self.bucket_name, Delete={"Objects": keys, "Quiet": True}
                )
                deleted += len(keys)
            return deleted

        return await run_in_threadpool(_delete_all)
