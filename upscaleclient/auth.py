from __future__ import annotations

import base64
import binascii
import json
import logging
from dataclasses import dataclass
from pathlib import Path
from threading import Lock
from typing import Any, Union

import httpx

from proxyservice.config import DEFAULT_MODEL
from proxyservice.generation import GenerationClient, UpstreamError, choose_aspect_ratio
from proxyservice.models import QuotaStatus

from .prompts import SYSTEM_PROMPT, USER_PROMPT

logger = logging.getLogger("upscaler.auth")

DEFAULT_PROXY_URL = "http://localhost:8000"
DEFAULT_PROXY_TIMEOUT_SECONDS = 120.0
CREDENTIALS_FILENAME = "credentials.json"


class AuthError(RuntimeError):
    pass


class ProxyRequestError(RuntimeError):
    def __init__(self, message: str, status_code: int, quota: QuotaStatus | None = None):
        self.status_code = status_code
        self.quota = quota
        super().__init__(message)


@dataclass(frozen=True)
class PageResult:
    image: bytes
    mime_type: str
    quota: QuotaStatus | None = None


def parse_quota(raw: Any) -> QuotaStatus | None:
    if not isinstance(raw, dict):
        return None
    try:
        return QuotaStatus(total=int(raw.get("total", 0)), remaining=int(raw.get("remaining", 0)))
    except (TypeError, ValueError):
        return None


class DirectAuth:
    """Calls the provider straight from the client with the user's own key."""

    def __init__(self, api_key: str, model: str = DEFAULT_MODEL, generator: Any | None = None):
        self.api_key = api_key
        self._generator = generator or GenerationClient(api_key=api_key, model=model)

    def process(self, image_png: bytes, width: int, height: int, image_size: str) -> PageResult:
        try:
            generated = self._generator.generate(
                image_png,
                USER_PROMPT,
                image_size=image_size,
                aspect_ratio=choose_aspect_ratio(width, height),
                system_instruction=SYSTEM_PROMPT,
            )
        except UpstreamError as exc:
            raise AuthError(f"No image generated in response: {exc}") from exc
        return PageResult(image=generated.data, mime_type=generated.mime_type)


class ProxiedAuth:
    """Sends pages through the quota-gated proxy with an access code."""

    def __init__(
        self,
        access_code: str,
        base_url: str = DEFAULT_PROXY_URL,
        http_client: httpx.Client | None = None,
    ):
        self.access_code = access_code
        self._client = http_client or httpx.Client(
            base_url=base_url.rstrip("/"),
            timeout=DEFAULT_PROXY_TIMEOUT_SECONDS,
        )

    def _post(self, path: str, payload: dict[str, Any]) -> dict[str, Any]:
        response = self._client.post(path, json=payload)
        try:
            data = response.json()
        except ValueError:
            data = {}
        if not response.is_success:
            message = data.get("error") if isinstance(data, dict) else None
            raise ProxyRequestError(
                message or f"Proxy Error: {response.status_code}",
                status_code=response.status_code,
                quota=parse_quota(data.get("quota")) if isinstance(data, dict) else None,
            )
        return data

    def verify(self) -> tuple[bool, QuotaStatus | None, str | None]:
        data = self._post("/api/verify-code", {"accessCode": self.access_code})
        return bool(data.get("valid")), parse_quota(data.get("quota")), data.get("error")

    def process(self, image_png: bytes, width: int, height: int, image_size: str) -> PageResult:
        data = self._post(
            "/api/proxy",
            {
                "image": base64.b64encode(image_png).decode("ascii"),
                "prompt": USER_PROMPT,
                "accessCode": self.access_code,
                "imageSize": image_size,
                "aspectRatio": choose_aspect_ratio(width, height),
            },
        )
        quota = parse_quota(data.get("quota"))
        image, mime_type = self._extract_image(data)
        return PageResult(image=image, mime_type=mime_type, quota=quota)

    def _extract_image(self, data: dict[str, Any]) -> tuple[bytes, str]:
        for candidate in data.get("candidates") or []:
            content = candidate.get("content") or {}
            for part in content.get("parts") or []:
                inline_data = part.get("inlineData") or {}
                if inline_data.get("data"):
                    try:
                        image = base64.b64decode(inline_data["data"], validate=True)
                    except (ValueError, binascii.Error) as exc:
                        raise AuthError("Proxy returned malformed image data") from exc
                    return image, inline_data.get("mimeType") or "image/png"
                if part.get("imageUrl"):
                    return self._download(part["imageUrl"]), part.get("mimeType") or "image/png"
        raise AuthError("No image in proxy response")

    def _download(self, url: str) -> bytes:
        response = self._client.get(url)
        response.raise_for_status()
        return response.content


AuthMode = Union[DirectAuth, ProxiedAuth]


class CredentialStore:
    """Locally saved API key, access code and last known quota."""

    def __init__(self, path: Path):
        self._path = path
        self._lock = Lock()
        self._state = self._load_state()

    def _load_state(self) -> dict[str, Any]:
        if not self._path.exists():
            return {}
        try:
            raw = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            logger.warning("Failed to load credentials '%s': %s", self._path, exc)
            return {}
        return raw if isinstance(raw, dict) else {}

    def _persist_locked(self) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._path.with_suffix(self._path.suffix + ".tmp")
        tmp_path.write_text(json.dumps(self._state, ensure_ascii=True, indent=2), encoding="utf-8")
        tmp_path.replace(self._path)

    @property
    def api_key(self) -> str:
        return str(self._state.get("api_key") or "")

    @property
    def access_code(self) -> str:
        return str(self._state.get("access_code") or "")

    @property
    def quota(self) -> QuotaStatus | None:
        return parse_quota(self._state.get("quota_cache"))

    def save_api_key(self, api_key: str) -> None:
        with self._lock:
            self._state["api_key"] = api_key
            # Switching to a key drops passcode mode.
            self._state.pop("access_code", None)
            self._state.pop("quota_cache", None)
            self._persist_locked()

    def save_access_code(self, access_code: str, quota: QuotaStatus | None) -> None:
        with self._lock:
            self._state["access_code"] = access_code
            if quota is not None:
                self._state["quota_cache"] = quota.as_dict()
            self._persist_locked()

    def save_quota(self, quota: QuotaStatus) -> None:
        with self._lock:
            self._state["quota_cache"] = quota.as_dict()
            self._persist_locked()

    def clear(self) -> None:
        with self._lock:
            self._state = {}
            self._persist_locked()


def resolve_auth_mode(
    store: CredentialStore,
    proxy_url: str = DEFAULT_PROXY_URL,
    model: str = DEFAULT_MODEL,
) -> AuthMode:
    # An access code takes priority over a stored key.
    if store.access_code:
        return ProxiedAuth(store.access_code, base_url=proxy_url)
    if store.api_key:
        return DirectAuth(store.api_key, model=model)
    raise AuthError("No API Key found. Please configure your key or access code first.")
