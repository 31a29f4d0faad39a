"""
Upstream token acquisition.

Stages are tried in order and the first one that yields a token wins:

1. explicit token from the per-platform override header
2. static pool (UPSTREAM_TOKEN / PLATFORM_<ID>_TOKENS, pipe separated)
3. Redis account pool (hash `token_pool:{platform_id}`)
4. anonymous guest token from the platform auth endpoint
"""

from __future__ import annotations

import asyncio
import json
import os
import random
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import httpx
from redis.asyncio import Redis

from ztoapi.errors import TokenFetchFailed, TokenTimeout, TokenUnavailable
from ztoapi.logging_config import logger, mask_secret
from ztoapi.provider.config import PlatformRegistry
from ztoapi.provider.headers import build_auth_headers
from ztoapi.schemas import PlatformDescriptor
from ztoapi.settings import Settings, settings as default_settings

STRATEGY_RANDOM = "random"
STRATEGY_ROUND_ROBIN = "round_robin"


@dataclass(frozen=True)
class TokenCredential:
    token: str
    platform_id: str
    source: str  # header / static / kv / anonymous

    @property
    def label(self) -> str:
        return f"{self.source}:{mask_secret(self.token)}"


def split_token_list(raw: Optional[str]) -> List[str]:
    if not raw:
        return []
    return [tok.strip() for tok in raw.split("|") if tok.strip()]


def _parse_account_record(raw: Any) -> Optional[str]:
    """
    Pool records are JSON objects {"email", "password", "token"}; a bare
    token string is accepted as well.
    """
    if not raw:
        return None
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8", errors="ignore")
    text = str(raw).strip()
    if text.startswith("{"):
        try:
            record = json.loads(text)
        except json.JSONDecodeError:
            return None
        token = record.get("token") if isinstance(record, dict) else None
        return str(token).strip() if token else None
    return text or None


class TokenProvider:
    """
    Process-scoped token cascade. The only mutable state is the
    round-robin cursor per platform.
    """

    def __init__(
        self,
        *,
        static_pools: Optional[Dict[str, List[str]]] = None,
        strategy: str = STRATEGY_RANDOM,
        anonymous_enabled: bool = True,
        auth_timeout: float = 10.0,
        pool_key_template: str = "token_pool:{platform_id}",
        rng: Optional[random.Random] = None,
    ) -> None:
        self._static_pools = {k: list(v) for k, v in (static_pools or {}).items()}
        self.strategy = strategy if strategy in (STRATEGY_RANDOM, STRATEGY_ROUND_ROBIN) else STRATEGY_RANDOM
        if self.strategy != strategy:
            logger.warning("Unknown TOKEN_POOL_STRATEGY %r, using random", strategy)
        self.anonymous_enabled = anonymous_enabled
        self.auth_timeout = auth_timeout
        self.pool_key_template = pool_key_template
        self._rng = rng or random.Random()
        self._cursors: Dict[str, int] = {}

    @classmethod
    def from_settings(
        cls,
        registry: PlatformRegistry,
        cfg: Settings = default_settings,
        environ: Optional[Mapping[str, str]] = None,
    ) -> "TokenProvider":
        env = os.environ if environ is None else environ
        pools: Dict[str, List[str]] = {}
        for platform in registry.all():
            tokens = split_token_list(env.get(f"PLATFORM_{platform.id.upper()}_TOKENS"))
            if platform.id == registry.default.id:
                tokens = cfg.static_tokens + [t for t in tokens if t not in cfg.static_tokens]
            if tokens:
                pools[platform.id] = tokens
                logger.info("Static token pool for %s: %d token(s)", platform.id, len(tokens))
        return cls(
            static_pools=pools,
            strategy=cfg.token_pool_strategy,
            anonymous_enabled=cfg.anonymous_token_enabled,
            auth_timeout=cfg.auth_timeout,
            pool_key_template=cfg.token_pool_key_template,
        )

    def static_pool(self, platform_id: str) -> List[str]:
        return list(self._static_pools.get(platform_id, []))

    def _pick_static(self, platform_id: str) -> Optional[str]:
        pool = self._static_pools.get(platform_id)
        if not pool:
            return None
        if self.strategy == STRATEGY_ROUND_ROBIN:
            cursor = self._cursors.get(platform_id, 0)
            self._cursors[platform_id] = cursor + 1
            return pool[cursor % len(pool)]
        return self._rng.choice(pool)

    async def _pick_from_kv(self, platform_id: str, redis: Optional[Redis]) -> Optional[str]:
        if redis is None:
            return None
        key = self.pool_key_template.format(platform_id=platform_id)
        try:
            records = await redis.hgetall(key)
        except Exception as exc:
            logger.warning("KV token pool %s unavailable: %s", key, exc)
            return None
        tokens = [tok for tok in (_parse_account_record(v) for v in (records or {}).values()) if tok]
        if not tokens:
            return None
        return self._rng.choice(tokens)

    async def fetch_anonymous(
        self, platform: PlatformDescriptor, client: httpx.AsyncClient
    ) -> str:
        if not platform.auth_url:
            raise TokenFetchFailed(f"{platform.brand} has no anonymous auth endpoint")
        try:
            resp = await asyncio.wait_for(
                client.get(
                    platform.auth_url,
                    headers=build_auth_headers(platform),
                    timeout=self.auth_timeout,
                ),
                timeout=self.auth_timeout,
            )
        except (asyncio.TimeoutError, httpx.TimeoutException) as exc:
            raise TokenTimeout(
                f"Anonymous token request to {platform.brand} timed out after {self.auth_timeout:g}s"
            ) from exc
        except httpx.HTTPError as exc:
            raise TokenFetchFailed(
                f"Anonymous token request to {platform.brand} failed: {exc.__class__.__name__}"
            ) from exc

        if resp.status_code >= 400:
            raise TokenFetchFailed(
                f"Anonymous token request to {platform.brand} returned HTTP {resp.status_code}"
            )
        try:
            payload = resp.json()
        except ValueError as exc:
            raise TokenFetchFailed(f"Anonymous token response from {platform.brand} is not JSON") from exc
        token = payload.get("token") if isinstance(payload, dict) else None
        if not token:
            raise TokenFetchFailed(f"Anonymous token response from {platform.brand} has no token")
        return str(token)

    async def acquire(
        self,
        platform: PlatformDescriptor,
        *,
        client: httpx.AsyncClient,
        redis: Optional[Redis] = None,
        explicit_token: Optional[str] = None,
    ) -> TokenCredential:
        if explicit_token and explicit_token.strip():
            return TokenCredential(explicit_token.strip(), platform.id, "header")

        token = self._pick_static(platform.id)
        if token:
            return TokenCredential(token, platform.id, "static")

        token = await self._pick_from_kv(platform.id, redis)
        if token:
            return TokenCredential(token, platform.id, "kv")

        last_error: Optional[TokenUnavailable] = None
        if self.anonymous_enabled:
            try:
                token = await self.fetch_anonymous(platform, client)
            except TokenUnavailable as exc:
                logger.warning("Anonymous token for %s unavailable: %s", platform.id, exc.message)
                last_error = exc
            else:
                logger.info("Using anonymous token %s for %s", mask_secret(token), platform.id)
                return TokenCredential(token, platform.id, "anonymous")

        message = f"Server configuration error: No valid {platform.brand} token available"
        if last_error is not None:
            raise TokenUnavailable(f"{message} ({last_error.message})") from last_error
        raise TokenUnavailable(message)


__all__ = [
    "STRATEGY_RANDOM",
    "STRATEGY_ROUND_ROBIN",
    "TokenCredential",
    "TokenProvider",
    "split_token_list",
]
