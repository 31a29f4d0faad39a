from typing import Optional

import httpx
from fastapi import Request
from redis.asyncio import Redis

from .state import GatewayState


def get_gateway(request: Request) -> GatewayState:
    return request.app.state.gateway


async def get_http_client(request: Request) -> httpx.AsyncClient:
    """
    Shared AsyncClient for upstream calls, created in the app lifespan.

    It is not a yield dependency: streamed responses keep using the client
    after the endpoint function has returned.
    """
    return request.app.state.http_client


async def get_redis(request: Request) -> Optional[Redis]:
    """
    Redis client for the token pool, or None when KV_URL/REDIS_URL is unset.
    """
    return getattr(request.app.state, "redis", None)
