from __future__ import annotations

from typing import Any, NamedTuple

from pydantic import BaseModel, ConfigDict, Field


class QuotaStatus(NamedTuple):
    total: int
    remaining: int

    def as_dict(self) -> dict[str, int]:
        return {"total": self.total, "remaining": self.remaining}


class AccessCodeRecord(NamedTuple):
    code: str
    total: int
    remaining: int
    valid: bool

    def quota(self) -> QuotaStatus:
        # Concurrent decrements can push the stored counter below zero.
        return QuotaStatus(total=self.total, remaining=max(0, self.remaining))


class GeneratedImage(NamedTuple):
    data: bytes
    mime_type: str
    finish_reason: str = "STOP"


class ProxyRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    image: str = Field(default="")
    prompt: str = Field(default="", max_length=8000)
    access_code: str = Field(default="", alias="accessCode", max_length=256)
    image_size: str = Field(default="", alias="imageSize")
    aspect_ratio: str = Field(default="", alias="aspectRatio")
    validate_only: bool = Field(default=False, alias="validateOnly")


class VerifyCodeRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    access_code: str = Field(default="", alias="accessCode", max_length=256)


class QuotaPayload(BaseModel):
    total: int
    remaining: int
    valid: bool | None = None


class VerifyCodeResponse(BaseModel):
    valid: bool
    quota: QuotaPayload | None = None
    error: str | None = None

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(exclude_none=True)
