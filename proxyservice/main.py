from __future__ import annotations

import logging
from functools import lru_cache

import uvicorn
from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from .config import ServiceConfig, get_log_level, get_proxy_host, get_proxy_port
from .errors import ProxyError
from .generation import GenerationClient
from .handler import ProxyHandler
from .models import ProxyRequest, VerifyCodeRequest
from .offload import R2Offloader
from .quota_store import QuotaStore, build_redis_client

logging.basicConfig(level=get_log_level())
logger = logging.getLogger("proxy-service")


@lru_cache(maxsize=1)
def get_config() -> ServiceConfig:
    return ServiceConfig.from_env()


@lru_cache(maxsize=1)
def get_proxy_handler() -> ProxyHandler:
    config = get_config()
    generator = None
    if config.generation_configured:
        generator = GenerationClient(
            api_key=config.gemini_api_key,
            model=config.gemini_model,
            backend=config.api_backend,
            timeout_ms=config.http_timeout_ms,
        )
    return ProxyHandler(
        config=config,
        quota_store=QuotaStore(build_redis_client(config)),
        generator=generator,
        offloader=R2Offloader(config),
    )


def error_response(exc: ProxyError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content=exc.to_payload())


app = FastAPI(title="Page Upscaler Proxy Service")


@app.exception_handler(RequestValidationError)
async def request_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = exc.errors()
    if errors:
        first = errors[0]
        field = str((first.get("loc") or ("body",))[-1])
        message = f"Invalid request: {field}: {first.get('msg', 'invalid value')}"
    else:
        message = "Invalid request body"
    logger.info("Rejected malformed request to %s: %s", request.url.path, message)
    return JSONResponse(status_code=400, content={"error": message})


@app.get("/healthz")
async def healthz() -> dict:
    config = get_config()
    return {
        "ok": config.generation_configured,
        "gemini_model": config.gemini_model,
        "gemini_api_backend": config.api_backend,
        "gemini_api_key_configured": config.generation_configured,
        "quota_store": "url" if config.redis_url else f"{config.redis_host}:{config.redis_port}/{config.redis_db}",
        "offload_configured": config.offload_configured,
        "offload_url_ttl_seconds": config.offload_url_ttl_seconds,
        "max_response_bytes": config.max_response_bytes,
    }


@app.post("/api/proxy")
def proxy(payload: ProxyRequest, handler: ProxyHandler = Depends(get_proxy_handler)):
    try:
        return handler.handle(payload)
    except ProxyError as exc:
        if exc.status_code >= 500:
            logger.warning("Proxy request failed with %s: %s", exc.status_code, exc.message)
        return error_response(exc)
    except Exception as exc:  # pragma: no cover - runtime integration path
        logger.exception("Proxy request failed")
        return JSONResponse(status_code=500, content={"error": str(exc) or "Internal Server Error"})


@app.post("/api/verify-code")
def verify_code(payload: VerifyCodeRequest, handler: ProxyHandler = Depends(get_proxy_handler)):
    try:
        return handler.verify_code(payload.access_code).to_payload()
    except ProxyError as exc:
        return error_response(exc)
    except Exception:  # pragma: no cover - runtime integration path
        logger.exception("Verify code failed")
        return JSONResponse(status_code=500, content={"error": "Internal Server Error"})


def serve() -> None:
    uvicorn.run(app, host=get_proxy_host(), port=get_proxy_port(), log_level=get_log_level().lower())


if __name__ == "__main__":
    serve()
