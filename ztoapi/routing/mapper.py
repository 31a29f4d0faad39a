"""
Client model name -> (platform, upstream model id) routing.

Routes come from two JSON settings, registered in this order so that the
platform-aware map wins on conflicts:

    UPSTREAM_MODEL_ID_MAP={"GLM-4.5": "0727-360B-API"}          # default platform
    MODEL_PLATFORM_MAP={"zread-glm": {"platform": "zread", "upstream": "glm-4.5"}}

Lookups are case-insensitive while the configured display casing is what
clients see. Unknown names fall back to the default platform.
"""

from __future__ import annotations

import json
from typing import Any, Dict, Iterable, List, Optional

from ztoapi.logging_config import logger
from ztoapi.provider.config import PlatformRegistry
from ztoapi.schemas import ModelInfo, ModelResolution, ModelRoute
from ztoapi.settings import Settings, settings as default_settings


def _parse_json_object(raw: str, env_name: str) -> Dict[str, Any]:
    if not raw or not raw.strip():
        return {}
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as exc:
        logger.warning("Ignoring %s: invalid JSON (%s)", env_name, exc)
        return {}
    if not isinstance(payload, dict):
        logger.warning("Ignoring %s: expected a JSON object", env_name)
        return {}
    return payload


def routes_from_settings(cfg: Settings, registry: PlatformRegistry) -> List[ModelRoute]:
    routes: List[ModelRoute] = []
    default_id = registry.default.id

    for name, upstream in _parse_json_object(
        cfg.upstream_model_id_map, "UPSTREAM_MODEL_ID_MAP"
    ).items():
        if not isinstance(upstream, str) or not upstream.strip():
            logger.warning("UPSTREAM_MODEL_ID_MAP entry %r has no upstream id, skipping", name)
            continue
        routes.append(
            ModelRoute(client_model=name, platform_id=default_id, upstream_model_id=upstream)
        )

    for name, entry in _parse_json_object(cfg.model_platform_map, "MODEL_PLATFORM_MAP").items():
        if isinstance(entry, str):
            entry = {"platform": entry}
        if not isinstance(entry, dict):
            logger.warning("MODEL_PLATFORM_MAP entry %r is not an object, skipping", name)
            continue
        platform_id = str(entry.get("platform") or default_id).strip().lower()
        platform = registry.get(platform_id)
        upstream = entry.get("upstream") or (platform.default_model_id if platform else None)
        routes.append(
            ModelRoute(
                client_model=name,
                platform_id=platform_id,
                upstream_model_id=upstream or name,
            )
        )
    return routes


class ModelRouter:
    def __init__(
        self,
        registry: PlatformRegistry,
        routes: Iterable[ModelRoute] = (),
        *,
        default_model: str = "GLM-4.5",
    ) -> None:
        self.registry = registry
        self.default_model = default_model
        self._routes: Dict[str, ModelRoute] = {}
        for route in routes:
            self.register(route)

    @classmethod
    def from_settings(
        cls, registry: PlatformRegistry, cfg: Settings = default_settings
    ) -> "ModelRouter":
        return cls(
            registry,
            routes_from_settings(cfg, registry),
            default_model=cfg.model_name,
        )

    def register(self, route: ModelRoute) -> bool:
        """
        Add a route; later registrations replace earlier ones for the same
        case-insensitive name. Routes to unknown platforms are dropped.
        """
        key = route.client_model.strip().lower()
        if not key:
            return False
        if self.registry.get(route.platform_id) is None:
            logger.warning(
                "Route %s -> %s ignored: platform %s is not registered",
                route.client_model,
                route.upstream_model_id,
                route.platform_id,
            )
            return False
        # Re-insert so iteration order reflects the last registration.
        self._routes.pop(key, None)
        self._routes[key] = route
        return True

    def resolve(self, requested_model: Optional[str]) -> ModelResolution:
        name = (requested_model or "").strip() or self.default_model
        route = self._routes.get(name.lower())
        if route is not None:
            platform = self.registry.get(route.platform_id)
            if platform is not None:
                return ModelResolution(
                    platform=platform,
                    client_model=route.client_model,
                    upstream_model_id=route.upstream_model_id,
                    explicit=True,
                )

        platform = self.registry.default
        return ModelResolution(
            platform=platform,
            client_model=name,
            upstream_model_id=platform.default_model_id or name,
            explicit=False,
        )

    def list_models(self, created: int) -> List[ModelInfo]:
        if not self._routes:
            return [
                ModelInfo(
                    id=self.default_model,
                    created=created,
                    owned_by=self.registry.default.owned_by,
                )
            ]
        models: List[ModelInfo] = []
        for route in self._routes.values():
            platform = self.registry.get(route.platform_id)
            models.append(
                ModelInfo(
                    id=route.client_model,
                    created=created,
                    owned_by=platform.owned_by if platform else route.platform_id,
                )
            )
        return models


__all__ = ["ModelRouter", "routes_from_settings"]
