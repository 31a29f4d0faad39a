"""
Chat completion orchestration.

resolve model -> cache read (non-stream) -> token -> upstream -> translate
-> cache write (non-stream) -> stats.
"""

from __future__ import annotations

import time
import uuid
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, AsyncIterator, Optional

import httpx
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import ValidationError
from redis.asyncio import Redis

from ztoapi.errors import GatewayError, InvalidRequest, UpstreamError
from ztoapi.logging_config import logger
from ztoapi.response_cache import build_cache_key
from ztoapi.schemas import ChatCompletionRequest, PlatformFlow, build_completion_body
from ztoapi.state import GatewayState
from ztoapi.stats import StatsEvent
from ztoapi.translator import ChatStreamAdapter, collect_completion, decoder_for
from ztoapi.upstream import UpstreamChat, flow_for

STREAM_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


@dataclass
class RequestContext:
    client_ip: str = "unknown"
    user_agent: str = ""
    headers: Optional[Mapping[str, str]] = None


def _validation_message(exc: ValidationError) -> str:
    first = exc.errors()[0] if exc.errors() else {}
    loc = ".".join(str(p) for p in first.get("loc", ()))
    msg = first.get("msg", "invalid request")
    return f"{loc}: {msg}" if loc else msg


def parse_chat_request(payload: Any) -> ChatCompletionRequest:
    if not isinstance(payload, dict):
        raise InvalidRequest("Request body must be a JSON object")
    try:
        return ChatCompletionRequest.model_validate(payload)
    except ValidationError as exc:
        raise InvalidRequest(_validation_message(exc)) from exc


class ChatService:
    def __init__(
        self,
        gateway: GatewayState,
        client: httpx.AsyncClient,
        redis: Optional[Redis] = None,
    ) -> None:
        self.gateway = gateway
        self.client = client
        self.redis = redis

    def _record(
        self,
        *,
        started: float,
        status: int,
        model: str,
        stream: bool,
        message_count: int,
        tokens: int,
        ctx: RequestContext,
    ) -> None:
        self.gateway.stats.record(
            StatsEvent(
                duration_ms=(time.perf_counter() - started) * 1000,
                status=status,
                model=model,
                is_streaming=stream,
                message_count=message_count,
                token_count=tokens,
                client_ip=ctx.client_ip,
                user_agent=ctx.user_agent,
            )
        )

    async def complete(self, payload: Any, ctx: Optional[RequestContext] = None):
        ctx = ctx or RequestContext()
        started = time.perf_counter()
        cfg = self.gateway.settings
        model_for_stats = str(payload.get("model") or cfg.model_name) if isinstance(payload, dict) else ""
        stream = cfg.default_stream
        message_count = 0
        try:
            req = parse_chat_request(payload)
            stream = cfg.default_stream if req.stream is None else req.stream
            message_count = len(req.messages)
            resolution = self.gateway.router.resolve(req.model)
            model_for_stats = resolution.client_model
            chat = UpstreamChat(
                resolution=resolution,
                messages=[{"role": m.role, "content": m.content} for m in req.messages],
                enable_thinking=cfg.enable_thinking if req.enable_thinking is None else req.enable_thinking,
                temperature=req.temperature,
                max_tokens=req.max_tokens,
            )
            flow = flow_for(resolution.platform, self.client)
            flow.validate(chat)

            if stream:
                return await self._stream(chat, flow, started=started, ctx=ctx)
            return await self._complete_once(chat, flow, started=started, ctx=ctx)
        except GatewayError as exc:
            logger.warning(
                "chat completion failed model=%s status=%s code=%s: %s",
                model_for_stats,
                exc.status_code,
                exc.code,
                exc.message,
            )
            self._record(
                started=started,
                status=exc.status_code,
                model=model_for_stats,
                stream=stream,
                message_count=message_count,
                tokens=0,
                ctx=ctx,
            )
            raise

    async def _acquire(self, chat: UpstreamChat, ctx: RequestContext):
        platform = chat.platform
        explicit = None
        if ctx.headers is not None:
            explicit = ctx.headers.get(platform.override_header)
        return await self.gateway.tokens.acquire(
            platform, client=self.client, redis=self.redis, explicit_token=explicit
        )

    async def _complete_once(
        self, chat: UpstreamChat, flow, *, started: float, ctx: RequestContext
    ) -> JSONResponse:
        cache = self.gateway.cache
        model = chat.resolution.client_model
        cache_key = build_cache_key(model, [m["content"] for m in chat.messages], False)
        completion_id = f"chatcmpl-{uuid.uuid4().hex}"
        created = int(time.time())

        if cache.enabled:
            cached = cache.get(cache_key)
            self.gateway.stats.record_cache(cached is not None)
            if cached is not None:
                logger.info("response cache hit model=%s", model)
                self._record(
                    started=started,
                    status=200,
                    model=model,
                    stream=False,
                    message_count=len(chat.messages),
                    tokens=0,
                    ctx=ctx,
                )
                return JSONResponse(
                    build_completion_body(
                        completion_id=completion_id, created=created, model=model, content=cached
                    )
                )

        credential = await self._acquire(chat, ctx)
        resp = await flow.open(chat, credential, stream=False)
        try:
            result = await collect_completion(
                resp,
                decoder_for(chat.platform, self.gateway.think_mode),
                allow_plain_fallback=chat.platform.flow == PlatformFlow.TALK,
            )
        except httpx.HTTPError as exc:
            raise UpstreamError(f"Upstream connection lost: {exc.__class__.__name__}") from exc
        finally:
            await resp.aclose()

        if cache.enabled and result.content:
            cache.put(cache_key, result.content)

        self._record(
            started=started,
            status=200,
            model=model,
            stream=False,
            message_count=len(chat.messages),
            tokens=result.usage.total_tokens if result.usage else 0,
            ctx=ctx,
        )
        return JSONResponse(
            build_completion_body(
                completion_id=completion_id,
                created=created,
                model=model,
                content=result.content,
                usage=result.usage,
            )
        )

    async def _stream(
        self, chat: UpstreamChat, flow, *, started: float, ctx: RequestContext
    ) -> StreamingResponse:
        credential = await self._acquire(chat, ctx)
        # Open before returning so that pre-stream failures become JSON errors.
        resp = await flow.open(chat, credential, stream=True)
        adapter = ChatStreamAdapter(
            decoder=decoder_for(chat.platform, self.gateway.think_mode),
            completion_id=f"chatcmpl-{uuid.uuid4().hex}",
            created=int(time.time()),
            model=chat.resolution.client_model,
        )

        async def body() -> AsyncIterator[bytes]:
            status = 200
            try:
                for frame in adapter.start():
                    yield frame
                async for chunk in resp.aiter_bytes():
                    for frame in adapter.process_chunk(chunk):
                        yield frame
                    if adapter.finished:
                        break
                for frame in adapter.finalize():
                    yield frame
            except httpx.HTTPError as exc:
                # Headers are already sent; end the stream without [DONE].
                status = 502
                logger.warning(
                    "upstream stream interrupted model=%s after %d chars: %s",
                    chat.resolution.client_model,
                    adapter.content_chars,
                    exc,
                )
            finally:
                await resp.aclose()
                self._record(
                    started=started,
                    status=status,
                    model=chat.resolution.client_model,
                    stream=True,
                    message_count=len(chat.messages),
                    tokens=adapter.usage.total_tokens if adapter.usage else 0,
                    ctx=ctx,
                )

        return StreamingResponse(body(), media_type="text/event-stream", headers=STREAM_HEADERS)


__all__ = ["ChatService", "RequestContext", "parse_chat_request"]
