from __future__ import annotations

import base64
import json

import httpx
import pytest

from proxyservice.generation import UpstreamError
from proxyservice.models import QuotaStatus
from upscaleclient.auth import (
    AuthError,
    CredentialStore,
    DirectAuth,
    ProxiedAuth,
    ProxyRequestError,
    resolve_auth_mode,
)
from upscaleclient.prompts import SYSTEM_PROMPT, USER_PROMPT

from conftest import FakeGenerator


def proxied(handler_fn) -> ProxiedAuth:
    client = httpx.Client(transport=httpx.MockTransport(handler_fn), base_url="http://proxy.test")
    return ProxiedAuth("demo", http_client=client)


def test_proxied_inline_image():
    seen = {}

    def respond(request: httpx.Request) -> httpx.Response:
        seen["path"] = request.url.path
        seen["body"] = json.loads(request.content)
        return httpx.Response(
            200,
            json={
                "candidates": [
                    {"content": {"parts": [{"inlineData": {"mimeType": "image/png", "data": base64.b64encode(b"hd").decode()}}]}}
                ],
                "quota": {"total": 10, "remaining": 9},
            },
        )

    result = proxied(respond).process(b"page", 1920, 1080, "4K")

    assert result.image == b"hd"
    assert result.quota == QuotaStatus(total=10, remaining=9)
    assert seen["path"] == "/api/proxy"
    assert seen["body"]["accessCode"] == "demo"
    assert seen["body"]["aspectRatio"] == "16:9"
    assert seen["body"]["imageSize"] == "4K"
    assert seen["body"]["prompt"] == USER_PROMPT
    assert base64.b64decode(seen["body"]["image"]) == b"page"


def test_proxied_downloads_offloaded_image():
    def respond(request: httpx.Request) -> httpx.Response:
        if request.url.host == "bucket.test":
            return httpx.Response(200, content=b"big-image")
        return httpx.Response(
            200,
            json={
                "candidates": [
                    {"content": {"parts": [{"imageUrl": "https://bucket.test/gen_1_ab.png?sig=1", "mimeType": "image/png"}]}}
                ],
                "quota": {"total": 10, "remaining": 4},
            },
        )

    result = proxied(respond).process(b"page", 100, 100, "4K")

    assert result.image == b"big-image"
    assert result.quota.remaining == 4


def test_proxied_error_carries_server_message_and_quota():
    def respond(request: httpx.Request) -> httpx.Response:
        return httpx.Response(403, json={"error": "Quota Exceeded", "quota": {"total": 10, "remaining": 0}})

    with pytest.raises(ProxyRequestError) as excinfo:
        proxied(respond).process(b"page", 100, 100, "2K")

    assert str(excinfo.value) == "Quota Exceeded"
    assert excinfo.value.status_code == 403
    assert excinfo.value.quota == QuotaStatus(total=10, remaining=0)


def test_proxied_error_without_json_body():
    def respond(request: httpx.Request) -> httpx.Response:
        return httpx.Response(502, text="Bad Gateway")

    with pytest.raises(ProxyRequestError, match="Proxy Error: 502"):
        proxied(respond).process(b"page", 100, 100, "2K")


def test_proxied_response_without_image():
    def respond(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"candidates": [{"content": {"parts": [{"text": "no"}]}}]})

    with pytest.raises(AuthError, match="No image in proxy response"):
        proxied(respond).process(b"page", 100, 100, "2K")


def test_proxied_verify():
    def respond(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/api/verify-code"
        return httpx.Response(200, json={"valid": True, "quota": {"total": 5, "remaining": 5, "valid": True}})

    valid, quota, error = proxied(respond).verify()

    assert valid is True
    assert quota == QuotaStatus(total=5, remaining=5)
    assert error is None


def test_direct_auth_uses_system_prompt_and_nearest_ratio():
    generator = FakeGenerator()
    auth = DirectAuth("AIzaKey", generator=generator)

    result = auth.process(b"page", 768, 1024, "2K")

    assert result.image == b"generated-image"
    assert result.quota is None
    call = generator.calls[0]
    assert call["aspect_ratio"] == "3:4"
    assert call["prompt"] == USER_PROMPT
    assert call["system_instruction"] == SYSTEM_PROMPT


def test_direct_auth_failure():
    auth = DirectAuth("AIzaKey", generator=FakeGenerator(error=UpstreamError("No candidates returned")))

    with pytest.raises(AuthError):
        auth.process(b"page", 100, 100, "2K")


class TestCredentialStore:
    def test_saving_key_clears_access_code(self, tmp_path):
        store = CredentialStore(tmp_path / "credentials.json")
        store.save_access_code("demo", QuotaStatus(total=10, remaining=10))

        store.save_api_key("AIzaKey")

        assert store.api_key == "AIzaKey"
        assert store.access_code == ""
        assert store.quota is None

    def test_persists_between_instances(self, tmp_path):
        path = tmp_path / "credentials.json"
        CredentialStore(path).save_access_code("demo", QuotaStatus(total=10, remaining=8))
        CredentialStore(path).save_quota(QuotaStatus(total=10, remaining=7))

        reloaded = CredentialStore(path)

        assert reloaded.access_code == "demo"
        assert reloaded.quota == QuotaStatus(total=10, remaining=7)

    def test_corrupt_file_is_ignored(self, tmp_path):
        path = tmp_path / "credentials.json"
        path.write_text("{not json", encoding="utf-8")

        assert CredentialStore(path).api_key == ""

    def test_access_code_wins_over_key(self, tmp_path):
        store = CredentialStore(tmp_path / "credentials.json")
        store.save_api_key("AIzaKey")
        store.save_access_code("demo", None)

        auth = resolve_auth_mode(store, proxy_url="http://proxy.test")

        assert isinstance(auth, ProxiedAuth)
        assert auth.access_code == "demo"

    def test_key_only_resolves_direct(self, tmp_path, monkeypatch):
        monkeypatch.setattr("upscaleclient.auth.GenerationClient", lambda api_key, model: FakeGenerator())
        store = CredentialStore(tmp_path / "credentials.json")
        store.save_api_key("AIzaKey")

        assert isinstance(resolve_auth_mode(store), DirectAuth)

    def test_no_credentials(self, tmp_path):
        with pytest.raises(AuthError):
            resolve_auth_mode(CredentialStore(tmp_path / "credentials.json"))
