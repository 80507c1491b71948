from __future__ import annotations

import logging
from typing import Any

import redis

from .config import ServiceConfig
from .errors import QuotaStoreError
from .models import AccessCodeRecord

logger = logging.getLogger("proxy-service.quota")

KEY_PREFIX = "ac:"
FIELD_TOTAL = "total"
FIELD_REMAINING = "remaining"
FIELD_VALID = "valid"
VALID_FLAG = "1"


def record_key(code: str) -> str:
    return f"{KEY_PREFIX}{code}"


def mask_code(code: str) -> str:
    if len(code) <= 4:
        return "*" * len(code)
    return f"{code[:2]}***{code[-2:]}"


def parse_int_field(value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


def parse_record(code: str, fields: dict[str, Any]) -> AccessCodeRecord:
    raw_valid = fields.get(FIELD_VALID)
    return AccessCodeRecord(
        code=code,
        total=parse_int_field(fields.get(FIELD_TOTAL)),
        remaining=parse_int_field(fields.get(FIELD_REMAINING)),
        # Records issued before the flag existed carry no valid field.
        valid=raw_valid is None or str(raw_valid) == VALID_FLAG,
    )


def build_redis_client(config: ServiceConfig) -> redis.Redis:
    if config.redis_url:
        return redis.Redis.from_url(config.redis_url, decode_responses=True)
    return redis.Redis(
        host=config.redis_host,
        port=config.redis_port,
        db=config.redis_db,
        decode_responses=True,
    )


class QuotaStore:
    """Access-code quota records kept as one Redis hash per code."""

    def __init__(self, client: redis.Redis):
        self._client = client

    def get_record(self, code: str) -> AccessCodeRecord | None:
        try:
            fields = self._client.hgetall(record_key(code))
        except redis.RedisError as exc:
            logger.error("Quota lookup failed for code %s: %s", mask_code(code), exc)
            raise QuotaStoreError("Quota store unavailable") from exc
        if not fields:
            return None
        return parse_record(code, fields)

    def decrement(self, code: str) -> int:
        # Single HINCRBY; never read-modify-write the counter.
        try:
            remaining = self._client.hincrby(record_key(code), FIELD_REMAINING, -1)
        except redis.RedisError as exc:
            logger.error("Quota decrement failed for code %s: %s", mask_code(code), exc)
            raise QuotaStoreError("Quota store unavailable") from exc
        return int(remaining)

    def create_record(self, code: str, total: int) -> AccessCodeRecord:
        mapping = {
            FIELD_TOTAL: str(total),
            FIELD_REMAINING: str(total),
            FIELD_VALID: VALID_FLAG,
        }
        try:
            self._client.hset(record_key(code), mapping=mapping)
        except redis.RedisError as exc:
            logger.error("Quota record creation failed for code %s: %s", mask_code(code), exc)
            raise QuotaStoreError("Quota store unavailable") from exc
        return AccessCodeRecord(code=code, total=total, remaining=total, valid=True)

    def set_valid(self, code: str, valid: bool) -> bool:
        key = record_key(code)
        try:
            if not self._client.exists(key):
                return False
            self._client.hset(key, FIELD_VALID, VALID_FLAG if valid else "0")
        except redis.RedisError as exc:
            logger.error("Quota flag update failed for code %s: %s", mask_code(code), exc)
            raise QuotaStoreError("Quota store unavailable") from exc
        return True
