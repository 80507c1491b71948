from __future__ import annotations

import logging
import secrets
import time
from typing import Any

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from .config import ServiceConfig

logger = logging.getLogger("proxy-service.offload")

MIME_EXTENSIONS = {
    "image/png": "png",
    "image/jpeg": "jpg",
    "image/webp": "webp",
}


class OffloadConfigError(RuntimeError):
    pass


class OffloadUploadError(RuntimeError):
    pass


def build_object_name(mime_type: str, now_ms: int | None = None) -> str:
    timestamp = now_ms if now_ms is not None else int(time.time() * 1000)
    suffix = secrets.token_hex(4)
    extension = MIME_EXTENSIONS.get(mime_type, "png")
    return f"gen_{timestamp}_{suffix}.{extension}"


def build_r2_client(config: ServiceConfig) -> Any:
    return boto3.client(
        "s3",
        region_name="auto",
        endpoint_url=config.r2_endpoint_url,
        aws_access_key_id=config.r2_access_key_id,
        aws_secret_access_key=config.r2_secret_access_key,
    )


class R2Offloader:
    """Moves oversized images to an S3-compatible bucket and hands back a signed link."""

    def __init__(self, config: ServiceConfig, s3_client: Any | None = None):
        self._config = config
        self._client = s3_client

    @property
    def configured(self) -> bool:
        return self._config.offload_configured

    def _get_client(self) -> Any:
        if self._client is None:
            self._client = build_r2_client(self._config)
        return self._client

    def offload(self, data: bytes, mime_type: str) -> str:
        if not self.configured:
            raise OffloadConfigError("Object storage credentials are not configured")

        bucket = self._config.r2_bucket_name
        object_name = build_object_name(mime_type)
        try:
            client = self._get_client()
            client.put_object(
                Bucket=bucket,
                Key=object_name,
                Body=data,
                ContentType=mime_type,
            )
            url = client.generate_presigned_url(
                "get_object",
                Params={"Bucket": bucket, "Key": object_name},
                ExpiresIn=self._config.offload_url_ttl_seconds,
            )
        except (BotoCoreError, ClientError) as exc:
            logger.error("Upload of '%s' to bucket '%s' failed: %s", object_name, bucket, exc)
            raise OffloadUploadError(str(exc)) from exc

        logger.info("Offloaded %s bytes to '%s'", len(data), object_name)
        return url
