import json
import time
from collections.abc import Mapping
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

import httpx
from fastapi import Depends, FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response
from redis.asyncio import Redis

from .auth import require_api_key
from .deps import get_gateway, get_http_client, get_redis
from .errors import GatewayError, InvalidRequest, error_response
from .logging_config import logger, sanitize_headers_for_log
from .schemas import ModelsResponse
from .services.chat_service import ChatService, RequestContext
from .settings import Settings, settings as default_settings
from .state import GatewayState
from .stats import StatsEvent, load_hourly

CORS_HEADERS_BASE = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, POST, OPTIONS",
    "Access-Control-Max-Age": "86400",
}


def client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip.strip()
    return request.client.host if request.client else "unknown"


def _cors_headers(gateway: GatewayState) -> Dict[str, str]:
    allow = ["Authorization", "Content-Type", *gateway.registry.override_headers()]
    return {**CORS_HEADERS_BASE, "Access-Control-Allow-Headers": ", ".join(allow)}


def create_app(
    cfg: Optional[Settings] = None,
    *,
    environ: Optional[Mapping[str, str]] = None,
) -> FastAPI:
    cfg = cfg or default_settings
    gateway = GatewayState.from_settings(cfg, environ)
    cors_headers = _cors_headers(gateway)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        app.state.http_client = httpx.AsyncClient(timeout=cfg.upstream_timeout)
        app.state.redis = None
        kv_url = cfg.kv_connection_url
        if kv_url:
            app.state.redis = Redis.from_url(kv_url, decode_responses=True)
            logger.info("KV store configured; token pool and hourly stats enabled")
        await gateway.stats.start(app.state.redis)
        logger.info(
            "ztoapi gateway ready: default platform=%s model=%s stream=%s",
            gateway.registry.default.id,
            cfg.model_name,
            cfg.default_stream,
        )
        try:
            yield
        finally:
            await gateway.stats.stop()
            await app.state.http_client.aclose()
            if app.state.redis is not None:
                await app.state.redis.aclose()

    app = FastAPI(title="ZtoApi Gateway", version="0.1.0", lifespan=lifespan)
    app.state.gateway = gateway

    @app.exception_handler(GatewayError)
    async def handle_gateway_error(request: Request, exc: GatewayError) -> JSONResponse:
        return exc.to_response()

    @app.exception_handler(RequestValidationError)
    async def handle_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
        errors = exc.errors()
        message = errors[0].get("msg", "Invalid request") if errors else "Invalid request"
        return InvalidRequest(message).to_response()

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        """
        Request/response logging with credentials redacted.
        Unhandled errors are turned into a 500 JSON body here so that the
        CORS middleware still decorates them.
        """
        client_host = request.client.host if request.client else "-"
        logger.info(
            "HTTP %s %s from %s, headers=%s",
            request.method,
            request.url.path,
            client_host,
            sanitize_headers_for_log(
                request.headers, extra_sensitive=tuple(gateway.registry.override_headers())
            ),
        )
        try:
            response = await call_next(request)
        except Exception:
            logger.exception(
                "Unhandled error while processing %s %s", request.method, request.url.path
            )
            response = error_response(
                500, message="Internal server error", error_type="server_error", code="internal_error"
            )
        logger.info("HTTP %s %s -> %s", request.method, request.url.path, response.status_code)
        return response

    @app.middleware("http")
    async def cors(request: Request, call_next):
        if request.method == "OPTIONS":
            return Response(status_code=204, headers=cors_headers)
        response = await call_next(request)
        response.headers.update(cors_headers)
        return response

    @app.get("/health")
    async def health() -> Dict[str, str]:
        return {"status": "ok"}

    @app.get("/v1/models", response_model=ModelsResponse)
    @app.get("/models", response_model=ModelsResponse, include_in_schema=False)
    async def list_models(
        request: Request, gw: GatewayState = Depends(get_gateway)
    ) -> ModelsResponse:
        started = time.perf_counter()
        response = ModelsResponse(data=gw.router.list_models(created=int(time.time())))
        gw.stats.record(
            StatsEvent(
                duration_ms=(time.perf_counter() - started) * 1000,
                status=200,
                model="",
                client_ip=client_ip(request),
                path=request.url.path,
                method="GET",
                user_agent=request.headers.get("user-agent", ""),
            )
        )
        return response

    @app.post("/v1/chat/completions", dependencies=[Depends(require_api_key)])
    async def chat_completions(
        request: Request,
        gw: GatewayState = Depends(get_gateway),
        client: httpx.AsyncClient = Depends(get_http_client),
        redis: Optional[Redis] = Depends(get_redis),
    ):
        # Body is parsed here, after the API key check, so that a bad key
        # is reported as 401 even when the body is also invalid.
        try:
            payload: Any = await request.json()
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise InvalidRequest("Request body is not valid JSON") from exc

        service = ChatService(gw, client, redis)
        ctx = RequestContext(
            client_ip=client_ip(request),
            user_agent=request.headers.get("user-agent", ""),
            headers=request.headers,
        )
        return await service.complete(payload, ctx)

    if cfg.dashboard_enabled:

        @app.get("/dashboard/stats")
        async def dashboard_stats(gw: GatewayState = Depends(get_gateway)) -> Dict[str, Any]:
            data = gw.stats.stats.as_dict()
            data["cache_entries"] = len(gw.cache)
            data["platforms"] = [p.id for p in gw.registry.all()]
            return data

        @app.get("/dashboard/requests")
        async def dashboard_requests(
            page: int = Query(1, ge=1),
            page_size: int = Query(20, ge=1, le=100, alias="pageSize"),
            gw: GatewayState = Depends(get_gateway),
        ) -> Dict[str, Any]:
            return gw.stats.recent(page=page, page_size=page_size)

        @app.get("/dashboard/hourly")
        async def dashboard_hourly(
            hours: int = Query(24, ge=1, le=168),
            redis: Optional[Redis] = Depends(get_redis),
        ) -> Dict[str, Any]:
            if redis is None:
                return {"data": [], "persisted": False}
            return {"data": await load_hourly(redis, hours), "persisted": True}

    return app


__all__ = ["client_ip", "create_app"]
