"""
Platform registry.

Built-in descriptors exist for `zai` and `zread`. Every field can be
overridden per platform through environment variables:

    PLATFORMS=zai,zread
    PLATFORM_ZAI_CHAT_URL=https://chat.z.ai/api/chat/completions
    PLATFORM_ZREAD_SEND_TIMEOUT=60
    ...

The default platform (PLATFORM_ID) also honours the legacy unprefixed
variables (UPSTREAM_URL, AUTH_URL, ORIGIN_BASE, ...). A platform that is
not built in and has no CHAT_URL is skipped with a warning so that one bad
entry does not break the gateway.
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from typing import Any, Dict, List, Optional

from pydantic import ValidationError

from ztoapi.errors import ConfigurationError
from ztoapi.logging_config import logger
from ztoapi.schemas import PlatformDescriptor, PlatformFlow
from ztoapi.settings import Settings, settings as default_settings


_BUILTIN_PLATFORMS: Dict[str, Dict[str, Any]] = {
    "zai": {
        "id": "zai",
        "name": "Z.ai Chat",
        "brand": "Z.ai",
        "home_url": "https://chat.z.ai",
        "origin_base": "https://chat.z.ai",
        "api_base": "https://chat.z.ai",
        "referer_prefix": "/c/",
        "chat_url": "https://chat.z.ai/api/chat/completions",
        "auth_url": "https://chat.z.ai/api/v1/auths/",
        "owned_by": "z.ai",
        "token_header": "Authorization",
        "override_header": "X-ZAI-Token",
        "default_model_id": "0727-360B-API",
        "x_fe_version": "prod-fe-1.0.94",
        "flow": PlatformFlow.COMPLETIONS,
        "sign_body": True,
        "browser_fingerprint": True,
        "send_timeout": 30.0,
    },
    "zread": {
        "id": "zread",
        "name": "Zread.ai",
        "brand": "Zread",
        "home_url": "https://zread.ai",
        "origin_base": "https://zread.ai",
        "api_base": "https://zread.ai",
        "referer_prefix": "/chat/",
        "chat_url": "https://zread.ai/api/v1/talk",
        "auth_url": "https://zread.ai/api/v1/auths/",
        "owned_by": "zread.ai",
        "token_header": "Authorization",
        "override_header": "X-ZREAD-Token",
        "default_model_id": "glm-4.5",
        "flow": PlatformFlow.TALK,
        "sign_body": False,
        "browser_fingerprint": False,
        "send_timeout": 45.0,
        "talk_repo_id": "d421b459-67dd-11f0-bb48-0e6fb57b239c",
        "talk_wiki_id": "690a5a77-fe7e-4fee-9a04-c89e71c3af04",
        "talk_page_id": "45c64cba-0529-4ca6-8cd5-e36cf26fae31",
    },
}

# Env suffix -> descriptor field.
_FIELD_SUFFIXES: Dict[str, str] = {
    "NAME": "name",
    "BRAND": "brand",
    "HOME_URL": "home_url",
    "ORIGIN_BASE": "origin_base",
    "API_BASE": "api_base",
    "REFERER_PREFIX": "referer_prefix",
    "CHAT_URL": "chat_url",
    "AUTH_URL": "auth_url",
    "OWNED_BY": "owned_by",
    "TOKEN_HEADER": "token_header",
    "OVERRIDE_HEADER": "override_header",
    "DEFAULT_MODEL_ID": "default_model_id",
    "X_FE_VERSION": "x_fe_version",
    "FLOW": "flow",
    "SIGN_BODY": "sign_body",
    "BROWSER_FINGERPRINT": "browser_fingerprint",
    "SEND_TIMEOUT": "send_timeout",
    "USER_AGENT": "user_agent",
    "TALK_REPO_ID": "talk_repo_id",
    "TALK_WIKI_ID": "talk_wiki_id",
    "TALK_PAGE_ID": "talk_page_id",
}

# Unprefixed variables that apply to the default platform only.
_LEGACY_DEFAULT_PLATFORM_VARS: Dict[str, str] = {
    "UPSTREAM_URL": "chat_url",
    "AUTH_URL": "auth_url",
    "ORIGIN_BASE": "origin_base",
    "PROVIDER_HOME_URL": "home_url",
    "REFERER_PREFIX": "referer_prefix",
    "OWNED_BY": "owned_by",
    "PLATFORM_TOKEN_HEADER": "token_header",
    "UPSTREAM_MODEL_ID_DEFAULT": "default_model_id",
    "X_FE_VERSION": "x_fe_version",
    "PROVIDER_NAME": "name",
    "PROVIDER_BRAND": "brand",
}

_BOOL_FIELDS = {"sign_body", "browser_fingerprint"}
_TRUE_VALUES = {"1", "true", "yes", "on"}


def _env_key(platform_id: str, suffix: str) -> str:
    return f"PLATFORM_{platform_id.upper()}_{suffix}"


def _load_raw_platform_env(platform_id: str, environ: Mapping[str, str]) -> Dict[str, str]:
    """
    Collect the PLATFORM_<ID>_* overrides keyed by descriptor field name.
    """
    raw: Dict[str, str] = {}
    for suffix, field in _FIELD_SUFFIXES.items():
        value = environ.get(_env_key(platform_id, suffix))
        if value is not None and value.strip() != "":
            raw[field] = value.strip()
    return raw


def _load_legacy_env(environ: Mapping[str, str]) -> Dict[str, str]:
    raw: Dict[str, str] = {}
    for env_var, field in _LEGACY_DEFAULT_PLATFORM_VARS.items():
        value = environ.get(env_var)
        if value is not None and value.strip() != "":
            raw[field] = value.strip()
    return raw


def _coerce_overrides(raw: Dict[str, str]) -> Dict[str, Any]:
    coerced: Dict[str, Any] = {}
    for field, value in raw.items():
        if field in _BOOL_FIELDS:
            coerced[field] = value.lower() in _TRUE_VALUES
        elif field == "auth_url" and value.lower() in {"none", "off", "disabled"}:
            coerced[field] = None
        else:
            coerced[field] = value
    return coerced


def _fill_derived_defaults(platform_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
    """
    Derive URL fields for platforms defined purely from environment.
    """
    data.setdefault("id", platform_id)
    data.setdefault("name", platform_id)
    data.setdefault("brand", data["name"])
    chat_url = data.get("chat_url")
    if chat_url:
        scheme, sep, rest = chat_url.partition("://")
        origin = f"{scheme}{sep}{rest.split('/', 1)[0]}" if sep else chat_url
        data.setdefault("home_url", origin)
        data.setdefault("origin_base", origin)
        data.setdefault("api_base", origin)
    data.setdefault("owned_by", platform_id)
    data.setdefault("override_header", f"X-{platform_id.upper()}-Token")
    return data


def load_platform(
    platform_id: str,
    *,
    environ: Mapping[str, str],
    is_default: bool = False,
    cfg: Settings = default_settings,
) -> Optional[PlatformDescriptor]:
    """
    Build a descriptor for one platform id or return None when unusable.
    """
    base = dict(_BUILTIN_PLATFORMS.get(platform_id, {}))
    overrides = _load_raw_platform_env(platform_id, environ)
    if is_default:
        # Explicit PLATFORM_<ID>_* variables beat the legacy names.
        overrides = {**_load_legacy_env(environ), **overrides}

    if not base and "chat_url" not in overrides:
        logger.warning(
            "Skipping platform %s: not built in and %s is not set",
            platform_id,
            _env_key(platform_id, "CHAT_URL"),
        )
        return None

    data = _fill_derived_defaults(platform_id, {**base, **_coerce_overrides(overrides)})
    data.setdefault("send_timeout", cfg.upstream_timeout)
    data.setdefault("user_agent", cfg.mask_user_agent)
    try:
        return PlatformDescriptor(**data)
    except ValidationError as exc:
        logger.warning("Skipping platform %s due to invalid configuration: %s", platform_id, exc)
        return None


class PlatformRegistry:
    """
    Read-only lookup of platform descriptors by id.
    """

    def __init__(self, platforms: List[PlatformDescriptor], default_id: str) -> None:
        self._platforms: Dict[str, PlatformDescriptor] = {p.id: p for p in platforms}
        default_id = default_id.strip().lower()
        if default_id not in self._platforms:
            raise ConfigurationError(
                f"Default platform {default_id!r} is not registered "
                f"(known: {', '.join(sorted(self._platforms)) or 'none'})"
            )
        self._default_id = default_id

    @classmethod
    def from_settings(
        cls,
        cfg: Settings = default_settings,
        environ: Optional[Mapping[str, str]] = None,
    ) -> "PlatformRegistry":
        env = os.environ if environ is None else environ
        default_id = cfg.platform_id.strip().lower()
        platforms: List[PlatformDescriptor] = []
        for platform_id in cfg.platform_ids:
            descriptor = load_platform(
                platform_id, environ=env, is_default=platform_id == default_id, cfg=cfg
            )
            if descriptor is not None:
                platforms.append(descriptor)
        logger.info(
            "Registered platforms: %s (default=%s)",
            ", ".join(p.id for p in platforms) or "none",
            default_id,
        )
        return cls(platforms, default_id)

    def get(self, platform_id: Optional[str]) -> Optional[PlatformDescriptor]:
        if not platform_id:
            return None
        return self._platforms.get(platform_id.strip().lower())

    @property
    def default(self) -> PlatformDescriptor:
        return self._platforms[self._default_id]

    def all(self) -> List[PlatformDescriptor]:
        return list(self._platforms.values())

    def override_headers(self) -> List[str]:
        return [p.override_header for p in self._platforms.values()]


__all__ = ["PlatformRegistry", "load_platform"]
