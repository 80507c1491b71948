from __future__ import annotations

import io

import pytest
import redis
from PIL import Image

from proxyservice.config import ServiceConfig
from proxyservice.handler import ProxyHandler
from proxyservice.models import GeneratedImage
from proxyservice.quota_store import QuotaStore


class FakeRedis:
    """Just enough of the redis-py hash API for the quota store."""

    def __init__(self):
        self.hashes: dict[str, dict[str, str]] = {}
        self.calls: list[tuple] = []

    def hgetall(self, key):
        self.calls.append(("hgetall", key))
        return dict(self.hashes.get(key, {}))

    def hincrby(self, key, field, amount=1):
        self.calls.append(("hincrby", key, field, amount))
        fields = self.hashes.setdefault(key, {})
        value = int(fields.get(field, 0)) + amount
        fields[field] = str(value)
        return value

    def hset(self, key, field=None, value=None, mapping=None):
        self.calls.append(("hset", key, field, value, mapping))
        fields = self.hashes.setdefault(key, {})
        if mapping:
            fields.update({k: str(v) for k, v in mapping.items()})
        if field is not None:
            fields[field] = str(value)
        return 1

    def exists(self, key):
        return int(key in self.hashes)

    def seed(self, code, total, remaining, valid="1"):
        fields = {"total": str(total), "remaining": str(remaining)}
        if valid is not None:
            fields["valid"] = valid
        self.hashes[f"ac:{code}"] = fields

    def remaining(self, code):
        return int(self.hashes[f"ac:{code}"]["remaining"])

    def mutations(self):
        return [call for call in self.calls if call[0] in {"hincrby", "hset"}]


class BrokenRedis:
    def hgetall(self, key):
        raise redis.ConnectionError("connection refused")

    def hincrby(self, key, field, amount=1):
        raise redis.ConnectionError("connection refused")

    def hset(self, key, field=None, value=None, mapping=None):
        raise redis.ConnectionError("connection refused")

    def exists(self, key):
        raise redis.ConnectionError("connection refused")


class FakeGenerator:
    def __init__(self, result=None, error=None):
        self.result = result or GeneratedImage(data=b"generated-image", mime_type="image/png")
        self.error = error
        self.calls: list[dict] = []

    def generate(self, image_bytes, prompt, image_size, aspect_ratio, mime_type="image/png", system_instruction=None):
        self.calls.append(
            {
                "image_bytes": image_bytes,
                "prompt": prompt,
                "image_size": image_size,
                "aspect_ratio": aspect_ratio,
                "mime_type": mime_type,
                "system_instruction": system_instruction,
            }
        )
        if self.error is not None:
            raise self.error
        return self.result


class FakeOffloader:
    def __init__(self, url="https://bucket.example/gen.png?sig=abc", error=None, on_offload=None):
        self.url = url
        self.error = error
        self.on_offload = on_offload
        self.calls: list[tuple[int, str]] = []

    def offload(self, data, mime_type):
        self.calls.append((len(data), mime_type))
        if self.on_offload:
            self.on_offload()
        if self.error is not None:
            raise self.error
        return self.url


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def quota_store(fake_redis):
    return QuotaStore(fake_redis)


@pytest.fixture
def config():
    return ServiceConfig(gemini_api_key="server-key")


@pytest.fixture
def generator():
    return FakeGenerator()


@pytest.fixture
def offloader():
    return FakeOffloader()


@pytest.fixture
def handler(config, quota_store, generator, offloader):
    return ProxyHandler(config=config, quota_store=quota_store, generator=generator, offloader=offloader)


def make_png(width=40, height=30, color=(200, 30, 30)) -> bytes:
    with io.BytesIO() as buffer:
        Image.new("RGB", (width, height), color).save(buffer, format="PNG")
        return buffer.getvalue()


@pytest.fixture
def png_bytes():
    return make_png()


@pytest.fixture
def png_factory():
    return make_png
