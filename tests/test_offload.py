from __future__ import annotations

import re
from unittest.mock import MagicMock

import pytest
from botocore.exceptions import ClientError

from proxyservice.config import ServiceConfig
from proxyservice.offload import (
    OffloadConfigError,
    OffloadUploadError,
    R2Offloader,
    build_object_name,
)

R2_CONFIG = ServiceConfig(
    r2_account_id="account",
    r2_access_key_id="access",
    r2_secret_access_key="secret",
    r2_bucket_name="generated",
)


def test_object_name_format():
    name = build_object_name("image/png", now_ms=1700000000000)

    assert re.fullmatch(r"gen_1700000000000_[0-9a-f]{8}\.png", name)
    assert build_object_name("image/jpeg").endswith(".jpg")
    assert build_object_name("application/octet-stream").endswith(".png")


def test_object_names_are_unique():
    names = {build_object_name("image/png", now_ms=1) for _ in range(50)}

    assert len(names) == 50


def test_offload_uploads_and_signs_for_one_hour():
    s3 = MagicMock()
    s3.generate_presigned_url.return_value = "https://signed.example/gen.png"
    offloader = R2Offloader(R2_CONFIG, s3_client=s3)

    url = offloader.offload(b"image-bytes", "image/png")

    assert url == "https://signed.example/gen.png"
    put_kwargs = s3.put_object.call_args.kwargs
    assert put_kwargs["Bucket"] == "generated"
    assert put_kwargs["Body"] == b"image-bytes"
    assert put_kwargs["ContentType"] == "image/png"
    s3.generate_presigned_url.assert_called_once_with(
        "get_object",
        Params={"Bucket": "generated", "Key": put_kwargs["Key"]},
        ExpiresIn=3600,
    )


def test_offload_requires_configuration():
    s3 = MagicMock()
    offloader = R2Offloader(ServiceConfig(r2_account_id="account"), s3_client=s3)

    with pytest.raises(OffloadConfigError):
        offloader.offload(b"image-bytes", "image/png")
    s3.put_object.assert_not_called()


def test_offload_upload_failure():
    s3 = MagicMock()
    s3.put_object.side_effect = ClientError(
        {"Error": {"Code": "InternalError", "Message": "We encountered an internal error"}},
        "PutObject",
    )
    offloader = R2Offloader(R2_CONFIG, s3_client=s3)

    with pytest.raises(OffloadUploadError):
        offloader.offload(b"image-bytes", "image/png")
    s3.generate_presigned_url.assert_not_called()


def test_r2_endpoint():
    assert R2_CONFIG.r2_endpoint_url == "https://account.r2.cloudflarestorage.com"
    assert R2_CONFIG.offload_configured is True
