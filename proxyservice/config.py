from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Any

from dotenv import load_dotenv

load_dotenv()

DEFAULT_MODEL = "gemini-3-pro-image-preview"
DEFAULT_API_BACKEND = "auto"
DEFAULT_HTTP_TIMEOUT_MS = 105_000
DEFAULT_REDIS_HOST = "localhost"
DEFAULT_REDIS_PORT = 6379
DEFAULT_REDIS_DB = 0
DEFAULT_OFFLOAD_URL_TTL_SECONDS = 3600
# Hosting platform rejects response bodies above 4.5 MB; keep a safety margin.
DEFAULT_MAX_RESPONSE_BYTES = int(4.4 * 1024 * 1024)
DEFAULT_LOG_LEVEL = "INFO"
DEFAULT_PROXY_HOST = "0.0.0.0"
DEFAULT_PROXY_PORT = 8000


def parse_positive_int(value: Any, fallback: int) -> int:
    if value is None or value == "":
        return fallback
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        return fallback
    if parsed <= 0:
        return fallback
    return parsed


def parse_non_negative_int(value: Any, fallback: int) -> int:
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        return fallback
    if parsed < 0:
        return fallback
    return parsed


def get_env(name: str) -> str:
    return (os.environ.get(name) or "").strip()


def get_gemini_api_key() -> str:
    return get_env("GEMINI_API_KEY")


def get_gemini_model() -> str:
    return get_env("GEMINI_MODEL") or DEFAULT_MODEL


def get_api_backend() -> str:
    raw = get_env("GEMINI_API_BACKEND").lower() or DEFAULT_API_BACKEND
    if raw in {"auto", "gemini", "vertex"}:
        return raw
    return DEFAULT_API_BACKEND


def get_http_timeout_ms() -> int:
    return parse_positive_int(os.environ.get("GEMINI_HTTP_TIMEOUT_MS"), DEFAULT_HTTP_TIMEOUT_MS)


def get_redis_url() -> str:
    return get_env("KV_URL") or get_env("REDIS_URL")


def get_offload_url_ttl_seconds() -> int:
    return parse_positive_int(os.environ.get("OFFLOAD_URL_TTL_SECONDS"), DEFAULT_OFFLOAD_URL_TTL_SECONDS)


def get_max_response_bytes() -> int:
    return parse_positive_int(os.environ.get("PROXY_MAX_RESPONSE_BYTES"), DEFAULT_MAX_RESPONSE_BYTES)


def get_log_level() -> str:
    return get_env("PROXY_LOG_LEVEL").upper() or DEFAULT_LOG_LEVEL


def get_proxy_host() -> str:
    return get_env("PROXY_HOST") or DEFAULT_PROXY_HOST


def get_proxy_port() -> int:
    return parse_positive_int(get_env("PROXY_PORT"), DEFAULT_PROXY_PORT)


@dataclass(frozen=True)
class ServiceConfig:
    """Everything the proxy needs from its environment, read once at startup."""

    gemini_api_key: str = ""
    gemini_model: str = DEFAULT_MODEL
    api_backend: str = DEFAULT_API_BACKEND
    http_timeout_ms: int = DEFAULT_HTTP_TIMEOUT_MS
    redis_url: str = ""
    redis_host: str = DEFAULT_REDIS_HOST
    redis_port: int = DEFAULT_REDIS_PORT
    redis_db: int = DEFAULT_REDIS_DB
    r2_account_id: str = ""
    r2_access_key_id: str = ""
    r2_secret_access_key: str = ""
    r2_bucket_name: str = ""
    offload_url_ttl_seconds: int = DEFAULT_OFFLOAD_URL_TTL_SECONDS
    max_response_bytes: int = DEFAULT_MAX_RESPONSE_BYTES

    @classmethod
    def from_env(cls) -> "ServiceConfig":
        return cls(
            gemini_api_key=get_gemini_api_key(),
            gemini_model=get_gemini_model(),
            api_backend=get_api_backend(),
            http_timeout_ms=get_http_timeout_ms(),
            redis_url=get_redis_url(),
            redis_host=get_env("REDIS_HOST") or DEFAULT_REDIS_HOST,
            redis_port=parse_positive_int(os.environ.get("REDIS_PORT"), DEFAULT_REDIS_PORT),
            redis_db=parse_non_negative_int(os.environ.get("REDIS_DB"), DEFAULT_REDIS_DB),
            r2_account_id=get_env("R2_ACCOUNT_ID"),
            r2_access_key_id=get_env("R2_ACCESS_KEY_ID"),
            r2_secret_access_key=get_env("R2_SECRET_ACCESS_KEY"),
            r2_bucket_name=get_env("R2_BUCKET_NAME"),
            offload_url_ttl_seconds=get_offload_url_ttl_seconds(),
            max_response_bytes=get_max_response_bytes(),
        )

    @property
    def generation_configured(self) -> bool:
        return bool(self.gemini_api_key)

    @property
    def offload_configured(self) -> bool:
        return all(
            (
                self.r2_account_id,
                self.r2_access_key_id,
                self.r2_secret_access_key,
                self.r2_bucket_name,
            )
        )

    @property
    def r2_endpoint_url(self) -> str:
        return f"https://{self.r2_account_id}.r2.cloudflarestorage.com"
