import hashlib
import random
import re

from ztoapi.provider.config import PlatformRegistry
from ztoapi.provider.headers import (
    build_auth_headers,
    build_upstream_headers,
    chrome_fingerprint,
    sign_body,
)


def _registry(settings_factory) -> PlatformRegistry:
    return PlatformRegistry.from_settings(settings_factory(), environ={})


def test_chrome_fingerprint_versions_are_consistent():
    rng = random.Random(7)
    for _ in range(20):
        headers = chrome_fingerprint(rng)
        version = re.search(r"Chrome/(\d+)\.", headers["User-Agent"]).group(1)
        assert version in {"138", "139", "140"}
        assert headers["sec-ch-ua"] == (
            f'"Chromium";v="{version}", "Not=A?Brand";v="24", "Google Chrome";v="{version}"'
        )
        assert headers["sec-ch-ua-mobile"] == "?0"
        assert headers["sec-ch-ua-platform"] in {'"Windows"', '"macOS"', '"Linux"'}


def test_zai_headers_carry_token_cookie_and_signature(settings_factory):
    zai = _registry(settings_factory).get("zai")
    body = b'{"stream":true}'

    headers = build_upstream_headers(
        "tok-123", zai, is_stream=True, chat_id="c-1", body=body, with_cookie=True
    )

    assert headers["Authorization"] == "Bearer tok-123"
    assert headers["Cookie"] == "token=tok-123"
    assert headers["X-Signature"] == hashlib.sha256(body).hexdigest()
    assert headers["Accept"] == "text/event-stream"
    assert headers["Origin"] == "https://chat.z.ai"
    assert headers["Referer"] == "https://chat.z.ai/c/c-1"
    assert headers["X-FE-Version"] == "prod-fe-1.0.94"
    assert "sec-ch-ua" in headers


def test_zread_headers_use_static_user_agent_without_signature(settings_factory):
    cfg = settings_factory(mask_user_agent="UA/1.0")
    zread = PlatformRegistry.from_settings(cfg, environ={}).get("zread")

    headers = build_upstream_headers("tok", zread, is_stream=False, body=b"{}")

    assert headers["Accept"] == "application/json"
    assert headers["Referer"] == "https://zread.ai/chat/"
    assert "X-Signature" not in headers
    assert "Cookie" not in headers
    assert "sec-ch-ua" not in headers
    assert headers["User-Agent"] == "UA/1.0"


def test_custom_token_header_is_sent_verbatim(settings_factory):
    zai = _registry(settings_factory).get("zai").model_copy(update={"token_header": "X-Token"})

    headers = build_upstream_headers("raw", zai, is_stream=False)

    assert headers["X-Token"] == "raw"
    assert "Authorization" not in headers


def test_auth_headers_refer_to_origin_root(settings_factory):
    headers = build_auth_headers(_registry(settings_factory).get("zai"))

    assert headers["Origin"] == "https://chat.z.ai"
    assert headers["Referer"] == "https://chat.z.ai/"
    assert "Authorization" not in headers


def test_sign_body_is_sha256_hex():
    assert sign_body(b"abc") == hashlib.sha256(b"abc").hexdigest()


def test_user_agent_follows_the_settings_each_registry_was_built_from(settings_factory):
    first = PlatformRegistry.from_settings(settings_factory(mask_user_agent="UA/first"), environ={})
    second = PlatformRegistry.from_settings(settings_factory(mask_user_agent="UA/second"), environ={})

    assert build_upstream_headers("t", first.get("zread"), is_stream=True)["User-Agent"] == "UA/first"
    assert build_upstream_headers("t", second.get("zread"), is_stream=True)["User-Agent"] == "UA/second"
    assert build_auth_headers(second.get("zread"))["User-Agent"] == "UA/second"


def test_platform_user_agent_env_override(settings_factory):
    registry = PlatformRegistry.from_settings(
        settings_factory(mask_user_agent="UA/global"),
        environ={"PLATFORM_ZREAD_USER_AGENT": "UA/zread"},
    )

    assert registry.get("zread").user_agent == "UA/zread"
    assert registry.get("zai").user_agent == "UA/global"
