from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from typing import Optional

from ztoapi.logging_config import logger
from ztoapi.provider.config import PlatformRegistry
from ztoapi.provider.token_pool import TokenProvider
from ztoapi.response_cache import ResponseCache
from ztoapi.routing.mapper import ModelRouter
from ztoapi.settings import Settings
from ztoapi.stats import StatsRecorder
from ztoapi.translator import THINK_MODES


@dataclass
class GatewayState:
    """
    Everything a request handler needs that outlives a single request.
    One instance per application, attached to `app.state.gateway`.
    """

    settings: Settings
    registry: PlatformRegistry
    router: ModelRouter
    tokens: TokenProvider
    cache: ResponseCache
    stats: StatsRecorder

    @property
    def think_mode(self) -> str:
        mode = self.settings.think_tags_mode.strip().lower()
        return mode if mode in THINK_MODES else "strip"

    @classmethod
    def from_settings(
        cls, cfg: Settings, environ: Optional[Mapping[str, str]] = None
    ) -> "GatewayState":
        registry = PlatformRegistry.from_settings(cfg, environ)
        if cfg.think_tags_mode.strip().lower() not in THINK_MODES:
            logger.warning("Unknown THINK_TAGS_MODE %r, using strip", cfg.think_tags_mode)
        return cls(
            settings=cfg,
            registry=registry,
            router=ModelRouter.from_settings(registry, cfg),
            tokens=TokenProvider.from_settings(registry, cfg, environ),
            cache=ResponseCache(
                ttl=cfg.response_cache_ttl, max_entries=cfg.response_cache_max_entries
            ),
            stats=StatsRecorder(),
        )


__all__ = ["GatewayState"]
