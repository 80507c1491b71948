from __future__ import annotations

import base64
import binascii
import json
import logging
import re
from typing import Any

from .config import ServiceConfig
from .errors import (
    InvalidCodeError,
    InvalidRequestError,
    OffloadError,
    PayloadTooLargeError,
    QuotaExceededError,
    ServerConfigError,
    UpstreamGenerationError,
)
from .generation import (
    DEFAULT_ASPECT_RATIO,
    DEFAULT_IMAGE_MIME_TYPE,
    SUPPORTED_IMAGE_SIZES,
    UpstreamError,
    is_supported_aspect_ratio,
)
from .models import (
    AccessCodeRecord,
    GeneratedImage,
    ProxyRequest,
    QuotaPayload,
    QuotaStatus,
    VerifyCodeResponse,
)
from .offload import OffloadConfigError, OffloadUploadError
from .quota_store import QuotaStore, mask_code

logger = logging.getLogger("proxy-service.handler")

# Proxy callers get full resolution unless they ask for 2K.
DEFAULT_PROXY_IMAGE_SIZE = "4K"
DATA_URL_PATTERN = re.compile(r"^data:(image/(?:png|jpeg|jpg|webp));base64,")


def strip_data_url(value: str) -> tuple[str, str]:
    match = DATA_URL_PATTERN.match(value)
    if not match:
        return value, DEFAULT_IMAGE_MIME_TYPE
    mime_type = match.group(1).replace("image/jpg", "image/jpeg")
    return value[match.end():], mime_type


def decode_image(value: str, quota: QuotaStatus) -> tuple[bytes, str]:
    cleaned, mime_type = strip_data_url(value.strip())
    if not cleaned:
        raise InvalidRequestError("image is required", quota=quota)
    try:
        return base64.b64decode(cleaned, validate=True), mime_type
    except (ValueError, binascii.Error) as exc:
        raise InvalidRequestError("image must be valid base64", quota=quota) from exc


def build_candidate(generated: GeneratedImage) -> dict[str, Any]:
    return {
        "content": {
            "role": "model",
            "parts": [
                {
                    "inlineData": {
                        "mimeType": generated.mime_type,
                        "data": base64.b64encode(generated.data).decode("ascii"),
                    }
                }
            ],
        },
        "finishReason": generated.finish_reason,
    }


def build_offloaded_candidate(generated: GeneratedImage, url: str) -> dict[str, Any]:
    return {
        "content": {
            "role": "model",
            "parts": [{"imageUrl": url, "mimeType": generated.mime_type}],
        },
        "finishReason": generated.finish_reason,
    }


def serialized_size(payload: dict[str, Any]) -> int:
    return len(json.dumps(payload, separators=(",", ":")).encode("utf-8"))


class ProxyHandler:
    """Quota-gated generation: validate, generate, maybe offload, then charge.

    The quota decrement is the last store operation on the success path. Any
    failure before it leaves the caller's record exactly as it was, so errors
    carry the quota that was read during validation.
    """

    def __init__(
        self,
        config: ServiceConfig,
        quota_store: QuotaStore,
        generator: Any | None = None,
        offloader: Any | None = None,
    ):
        self._config = config
        self._quota_store = quota_store
        self._generator = generator
        self._offloader = offloader

    def _load_record(self, access_code: str) -> AccessCodeRecord:
        code = access_code.strip()
        if not code:
            raise InvalidCodeError("Invalid Access Code")
        record = self._quota_store.get_record(code)
        if record is None:
            logger.info("Rejected unknown access code %s", mask_code(code))
            raise InvalidCodeError("Invalid Access Code")
        if not record.valid:
            logger.info("Rejected disabled access code %s", mask_code(code))
            raise InvalidCodeError("Invalid Access Code")
        return record

    def handle(self, request: ProxyRequest) -> dict[str, Any]:
        record = self._load_record(request.access_code)
        quota = record.quota()

        if request.validate_only:
            # An existing but exhausted code reports valid=false.
            return {"valid": record.remaining > 0, "quota": quota.as_dict()}

        if record.remaining <= 0:
            logger.info("Quota exhausted for access code %s", mask_code(record.code))
            raise QuotaExceededError("Quota Exceeded", quota=quota)

        if self._generator is None or not self._config.generation_configured:
            logger.error("GEMINI_API_KEY is not configured")
            raise ServerConfigError("Server Error: GEMINI_API_KEY Config Missing", quota=quota)

        image_bytes, mime_type = decode_image(request.image, quota)
        prompt = request.prompt.strip()
        if not prompt:
            raise InvalidRequestError("prompt is required", quota=quota)
        image_size = (request.image_size or DEFAULT_PROXY_IMAGE_SIZE).strip().upper()
        if image_size not in SUPPORTED_IMAGE_SIZES:
            raise InvalidRequestError(f"Unsupported imageSize: {request.image_size}", quota=quota)
        aspect_ratio = (request.aspect_ratio or DEFAULT_ASPECT_RATIO).strip()
        if not is_supported_aspect_ratio(aspect_ratio):
            raise InvalidRequestError(f"Unsupported aspectRatio: {request.aspect_ratio}", quota=quota)

        try:
            generated = self._generator.generate(
                image_bytes,
                prompt,
                image_size=image_size,
                aspect_ratio=aspect_ratio,
                mime_type=mime_type,
            )
        except UpstreamError as exc:
            raise UpstreamGenerationError(
                f"Generation failed: {exc}. This attempt was not charged.",
                quota=quota,
            ) from exc
        except Exception as exc:
            logger.exception("Generator failed for access code %s", mask_code(record.code))
            raise UpstreamGenerationError(
                f"Generation failed: {exc}. This attempt was not charged.",
                quota=quota,
            ) from exc

        candidates = [build_candidate(generated)]
        payload_size = serialized_size({"candidates": candidates, "quota": quota.as_dict()})
        if payload_size > self._config.max_response_bytes:
            candidates = [self._offload(generated, quota, payload_size)]

        new_remaining = self._quota_store.decrement(record.code)
        logger.info("Charged access code %s, %s remaining", mask_code(record.code), new_remaining)
        updated = QuotaStatus(total=record.total, remaining=max(0, new_remaining))
        return {"candidates": candidates, "quota": updated.as_dict()}

    def _offload(self, generated: GeneratedImage, quota: QuotaStatus, payload_size: int) -> dict[str, Any]:
        logger.info(
            "Payload too large (%.2fMB). Switching to object storage delivery",
            payload_size / 1024 / 1024,
        )
        if self._offloader is None:
            raise PayloadTooLargeError(
                "Image too large for the response limit and object storage is not configured. Please use '2K'.",
                quota=quota,
            )
        try:
            url = self._offloader.offload(generated.data, generated.mime_type)
        except OffloadConfigError as exc:
            logger.error("Offload unavailable: %s", exc)
            raise PayloadTooLargeError(
                "Image too large for the response limit and object storage is not configured. Please use '2K'.",
                quota=quota,
            ) from exc
        except OffloadUploadError as exc:
            raise OffloadError(
                "Image generated but failed to deliver (Upload Error). Quota not charged.",
                quota=quota,
            ) from exc
        return build_offloaded_candidate(generated, url)

    def verify_code(self, access_code: str) -> VerifyCodeResponse:
        code = access_code.strip()
        if not code:
            raise InvalidRequestError("Access Code is required")

        record = self._quota_store.get_record(code)
        if record is None:
            return VerifyCodeResponse(valid=False, error="Invalid Access Code")

        quota = record.quota()
        payload = QuotaPayload(total=quota.total, remaining=quota.remaining, valid=record.valid)
        if not record.valid:
            return VerifyCodeResponse(valid=False, error="Code disabled", quota=payload)
        if record.remaining <= 0:
            return VerifyCodeResponse(valid=False, error="Quota Exceeded", quota=payload)
        return VerifyCodeResponse(valid=True, quota=payload)
