"""
Upstream request header builder.

Z.ai only serves requests that look like they come from its web client,
so platforms with `browser_fingerprint` get a randomized Chrome client-hint
set. Other platforms send the descriptor's `user_agent`
(MASK_USER_AGENT unless overridden per platform).
"""

from __future__ import annotations

import hashlib
import random
from typing import Dict, Optional

from ztoapi.schemas import PlatformDescriptor

ACCEPT_LANGUAGE = "zh-CN,zh;q=0.9,en;q=0.8,en-GB;q=0.7,en-US;q=0.6"
CHROME_VERSIONS = (138, 139, 140)
_CLIENT_PLATFORMS = ("Windows", "macOS", "Linux")
_USER_AGENT_TEMPLATES = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/{v}.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/{v}.0.0.0 Safari/537.36",
    "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/{v}.0.0.0 Safari/537.36",
)
FALLBACK_USER_AGENT = _USER_AGENT_TEMPLATES[0].format(v=CHROME_VERSIONS[-1])


def chrome_fingerprint(rng: Optional[random.Random] = None) -> Dict[str, str]:
    rng = rng or random
    version = rng.choice(CHROME_VERSIONS)
    return {
        "User-Agent": rng.choice(_USER_AGENT_TEMPLATES).format(v=version),
        "sec-ch-ua": (
            f'"Chromium";v="{version}", "Not=A?Brand";v="24", '
            f'"Google Chrome";v="{version}"'
        ),
        "sec-ch-ua-mobile": "?0",
        "sec-ch-ua-platform": f'"{rng.choice(_CLIENT_PLATFORMS)}"',
        "sec-fetch-dest": "empty",
        "sec-fetch-mode": "cors",
        "sec-fetch-site": "same-origin",
    }


def sign_body(body: bytes) -> str:
    """
    Hex SHA-256 of the exact request body bytes.
    """
    return hashlib.sha256(body).hexdigest()


def _origin(platform: PlatformDescriptor) -> str:
    return platform.origin_base.rstrip("/")


def _referer(platform: PlatformDescriptor, chat_id: str = "") -> str:
    prefix = platform.referer_prefix or "/"
    if not prefix.startswith("/"):
        prefix = "/" + prefix
    if not prefix.endswith("/"):
        prefix += "/"
    return f"{_origin(platform)}{prefix}{chat_id}"


def build_upstream_headers(
    token: str,
    platform: PlatformDescriptor,
    *,
    is_stream: bool,
    chat_id: str = "",
    body: Optional[bytes] = None,
    with_cookie: bool = False,
) -> Dict[str, str]:
    """
    Headers for a chat call to `platform`.

    - Accept follows the stream flag
    - the credential goes into `platform.token_header` (Bearer for Authorization)
    - X-Signature is added when the platform signs bodies and `body` is given
    """
    headers: Dict[str, str] = {
        "Accept": "text/event-stream" if is_stream else "application/json",
        "Content-Type": "application/json",
        "Accept-Language": ACCEPT_LANGUAGE,
        "Origin": _origin(platform),
        "Referer": _referer(platform, chat_id),
        "Connection": "keep-alive",
    }
    if platform.browser_fingerprint:
        headers.update(chrome_fingerprint())
        headers["Priority"] = "u=1, i"
    else:
        headers["User-Agent"] = platform.user_agent or FALLBACK_USER_AGENT
    if platform.x_fe_version:
        headers["X-FE-Version"] = platform.x_fe_version

    if platform.token_header.lower() == "authorization":
        headers["Authorization"] = f"Bearer {token}"
    else:
        headers[platform.token_header] = token
    if with_cookie:
        headers["Cookie"] = f"token={token}"

    if platform.sign_body and body is not None:
        headers["X-Signature"] = sign_body(body)
    return headers


def build_auth_headers(platform: PlatformDescriptor) -> Dict[str, str]:
    """
    Headers for the anonymous guest token request.
    """
    origin = _origin(platform)
    headers = {
        "Accept": "application/json",
        "Accept-Language": ACCEPT_LANGUAGE,
        "Origin": origin,
        "Referer": f"{origin}/",
        "User-Agent": platform.user_agent or FALLBACK_USER_AGENT,
    }
    if platform.browser_fingerprint:
        headers.update(chrome_fingerprint())
    if platform.x_fe_version:
        headers["X-FE-Version"] = platform.x_fe_version
    return headers


__all__ = [
    "ACCEPT_LANGUAGE",
    "CHROME_VERSIONS",
    "FALLBACK_USER_AGENT",
    "build_auth_headers",
    "build_upstream_headers",
    "chrome_fingerprint",
    "sign_body",
]
