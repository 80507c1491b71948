from __future__ import annotations

import base64
import logging
from functools import lru_cache
from typing import NamedTuple

import httpx
from google import genai
from google.genai import types
from google.genai.errors import APIError

from .models import GeneratedImage

logger = logging.getLogger("proxy-service.generation")

DEFAULT_IMAGE_MIME_TYPE = "image/png"
DEFAULT_ASPECT_RATIO = "1:1"
SUPPORTED_IMAGE_SIZES = ("2K", "4K")
BLOCKED_FINISH_REASONS = {"SAFETY", "PROHIBITED_CONTENT", "BLOCKLIST", "IMAGE_SAFETY"}


class AspectRatio(NamedTuple):
    label: str
    value: float


# Labels accepted by the image models; order decides ties.
SUPPORTED_ASPECT_RATIOS: tuple[AspectRatio, ...] = (
    AspectRatio("1:1", 1.0),
    AspectRatio("3:4", 0.75),
    AspectRatio("4:3", 1.33),
    AspectRatio("9:16", 0.5625),
    AspectRatio("16:9", 1.77),
)


class UpstreamError(RuntimeError):
    pass


def choose_aspect_ratio(width: float, height: float) -> str:
    if width <= 0 or height <= 0:
        return DEFAULT_ASPECT_RATIO
    ratio = width / height
    closest = SUPPORTED_ASPECT_RATIOS[0]
    for candidate in SUPPORTED_ASPECT_RATIOS[1:]:
        if abs(candidate.value - ratio) < abs(closest.value - ratio):
            closest = candidate
    return closest.label


def is_supported_aspect_ratio(label: str) -> bool:
    return any(candidate.label == label for candidate in SUPPORTED_ASPECT_RATIOS)


def resolve_api_key_backend(api_key: str, configured: str = "auto") -> str:
    if configured in {"vertex", "gemini"}:
        return configured
    # Common Gemini Developer API keys start with AIza.
    return "gemini" if api_key.startswith("AIza") else "vertex"


@lru_cache(maxsize=16)
def get_api_key_client(api_key: str, backend: str, timeout_ms: int) -> genai.Client:
    # google-genai expects timeout in milliseconds.
    http_options = types.HttpOptions(timeout=timeout_ms)
    if backend == "gemini":
        return genai.Client(api_key=api_key, http_options=http_options)
    return genai.Client(vertexai=True, api_key=api_key, http_options=http_options)


def build_generate_config(
    image_size: str,
    aspect_ratio: str,
    system_instruction: str | None = None,
) -> types.GenerateContentConfig:
    kwargs = {}
    if system_instruction:
        kwargs["system_instruction"] = system_instruction
    return types.GenerateContentConfig(
        automatic_function_calling=types.AutomaticFunctionCallingConfig(disable=True),
        response_modalities=["IMAGE"],
        image_config=types.ImageConfig(aspect_ratio=aspect_ratio, image_size=image_size),
        **kwargs,
    )


def extract_image_from_response(response: types.GenerateContentResponse) -> GeneratedImage:
    prompt_feedback = getattr(response, "prompt_feedback", None)
    block_reason = getattr(prompt_feedback, "block_reason", None)
    if block_reason:
        raise UpstreamError(f"Prompt blocked by safety filter: {block_reason}")

    collected_text: list[str] = []
    for candidate in response.candidates or []:
        finish_reason = str(getattr(candidate.finish_reason, "value", candidate.finish_reason) or "")
        if finish_reason in BLOCKED_FINISH_REASONS:
            raise UpstreamError(f"Generation blocked: {finish_reason}")

        content = getattr(candidate, "content", None)
        if not content:
            continue

        for part in content.parts or []:
            text_part = getattr(part, "text", None)
            if text_part:
                collected_text.append(text_part)

            inline_data = getattr(part, "inline_data", None)
            raw_data = getattr(inline_data, "data", None)
            if not raw_data:
                continue

            if isinstance(raw_data, str):
                image_bytes = base64.b64decode(raw_data)
            else:
                image_bytes = bytes(raw_data)

            mime_type = getattr(inline_data, "mime_type", None) or DEFAULT_IMAGE_MIME_TYPE
            return GeneratedImage(data=image_bytes, mime_type=mime_type, finish_reason=finish_reason or "STOP")

    if collected_text:
        logger.warning("Model returned text but no image output: %s", "".join(collected_text)[:500])

    raise UpstreamError("No candidates returned")


class GenerationClient:
    def __init__(
        self,
        api_key: str,
        model: str,
        backend: str = "auto",
        timeout_ms: int = 105_000,
    ):
        self.model = model
        self.backend = resolve_api_key_backend(api_key, backend)
        self._client = get_api_key_client(api_key, self.backend, timeout_ms)

    def generate(
        self,
        image_bytes: bytes,
        prompt: str,
        image_size: str,
        aspect_ratio: str,
        mime_type: str = DEFAULT_IMAGE_MIME_TYPE,
        system_instruction: str | None = None,
    ) -> GeneratedImage:
        if not is_supported_aspect_ratio(aspect_ratio):
            raise ValueError(f"Unsupported aspect ratio: {aspect_ratio}")

        try:
            response = self._client.models.generate_content(
                model=self.model,
                contents=[
                    types.Content(
                        role="user",
                        parts=[
                            types.Part.from_text(text=prompt),
                            types.Part.from_bytes(data=image_bytes, mime_type=mime_type),
                        ],
                    )
                ],
                config=build_generate_config(image_size, aspect_ratio, system_instruction),
            )
        except (APIError, httpx.HTTPError) as exc:
            logger.warning("generate_content call failed for model '%s': %s", self.model, exc)
            raise UpstreamError(f"Gemini request failed: {exc}") from exc
        except Exception as exc:
            logger.exception("generate_content call failed for model '%s'", self.model)
            raise UpstreamError(f"Gemini request failed: {exc}") from exc

        return extract_image_from_response(response)
