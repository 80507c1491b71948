from __future__ import annotations

from typing import Any

from .models import QuotaStatus


class ProxyError(RuntimeError):
    """Base for every failure the proxy reports back to its caller.

    Carries the HTTP status to answer with and, where it was read before the
    failure, the caller's unchanged quota.
    """

    status_code = 500

    def __init__(self, message: str, quota: QuotaStatus | None = None):
        self.message = message
        self.quota = quota
        super().__init__(message)

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"error": self.message}
        if self.quota is not None:
            payload["quota"] = self.quota.as_dict()
        return payload


class InvalidRequestError(ProxyError):
    status_code = 400


class InvalidCodeError(ProxyError):
    status_code = 401


class QuotaExceededError(ProxyError):
    status_code = 403


class PayloadTooLargeError(ProxyError):
    status_code = 413


class ServerConfigError(ProxyError):
    status_code = 500


class UpstreamGenerationError(ProxyError):
    status_code = 500


class OffloadError(ProxyError):
    status_code = 500


class QuotaStoreError(ProxyError):
    status_code = 500
