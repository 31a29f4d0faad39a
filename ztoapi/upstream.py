"""
Upstream chat calls.

Each platform flow builds its own request shape and returns an open,
streamed `httpx.Response` whose status is already known to be 2xx. The
caller owns the response and must close it.
"""

from __future__ import annotations

import asyncio
import json
import random
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

import httpx

from ztoapi.errors import (
    InvalidRequest,
    UpstreamError,
    UpstreamHTTPError,
    UpstreamResponseError,
    UpstreamTimeout,
)
from ztoapi.logging_config import logger
from ztoapi.provider.headers import build_upstream_headers
from ztoapi.provider.token_pool import TokenCredential
from ztoapi.schemas import ModelResolution, PlatformDescriptor, PlatformFlow


@dataclass
class UpstreamChat:
    """
    Platform-independent description of one chat turn.
    """

    resolution: ModelResolution
    messages: List[Dict[str, str]]
    enable_thinking: bool = False
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    @property
    def platform(self) -> PlatformDescriptor:
        return self.resolution.platform


def serialize_body(payload: Dict[str, Any]) -> bytes:
    """
    Compact JSON; the same bytes are signed and sent.
    """
    return json.dumps(payload, ensure_ascii=False, separators=(",", ":")).encode("utf-8")


async def _send(
    client: httpx.AsyncClient,
    request: httpx.Request,
    *,
    timeout: float,
    stream: bool = True,
) -> httpx.Response:
    try:
        resp = await asyncio.wait_for(client.send(request, stream=stream), timeout=timeout)
    except (asyncio.TimeoutError, httpx.TimeoutException) as exc:
        logger.warning("Upstream %s timed out after %.1fs", request.url, timeout)
        raise UpstreamTimeout(f"Upstream did not respond within {timeout:g}s") from exc
    except httpx.HTTPError as exc:
        logger.warning("Upstream %s transport error: %s", request.url, exc)
        raise UpstreamError(f"Upstream request failed: {exc.__class__.__name__}") from exc

    if resp.status_code >= 400:
        try:
            text_bytes = await resp.aread()
        finally:
            await resp.aclose()
        text = text_bytes.decode("utf-8", errors="ignore")
        logger.warning(
            "Upstream HTTP error %s for %s; response=%s",
            resp.status_code,
            request.url,
            text[:500],
        )
        raise UpstreamHTTPError(upstream_status=resp.status_code, body=text)
    return resp


class CompletionsFlow:
    """
    One signed POST to the platform chat URL (Z.ai).
    """

    def __init__(self, client: httpx.AsyncClient) -> None:
        self.client = client

    def validate(self, chat: UpstreamChat) -> None:
        if not chat.messages:
            raise InvalidRequest("messages must not be empty")

    @staticmethod
    def new_ids(now_ms: Optional[int] = None) -> tuple[str, str]:
        now_ms = now_ms if now_ms is not None else int(time.time() * 1000)
        return f"{now_ms}-{random.randint(0, 99999)}", str(now_ms)

    def build_payload(
        self,
        chat: UpstreamChat,
        *,
        chat_id: str,
        message_id: str,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        platform = chat.platform
        now = now or datetime.now()
        params: Dict[str, Any] = {}
        if chat.temperature is not None:
            params["temperature"] = chat.temperature
        if chat.max_tokens is not None:
            params["max_tokens"] = chat.max_tokens
        return {
            "stream": True,
            "chat_id": chat_id,
            "id": message_id,
            "model": chat.resolution.upstream_model_id,
            "messages": chat.messages,
            "params": params,
            "features": {"enable_thinking": chat.enable_thinking},
            "background_tasks": {"title_generation": False, "tags_generation": False},
            "mcp_servers": [],
            "model_item": {
                "id": chat.resolution.upstream_model_id,
                "name": chat.resolution.client_model,
                "owned_by": platform.owned_by,
            },
            "tool_servers": [],
            "variables": {
                "{{USER_NAME}}": "User",
                "{{USER_LOCATION}}": "Unknown",
                "{{CURRENT_DATETIME}}": now.strftime("%Y-%m-%d %H:%M:%S"),
            },
        }

    async def open(
        self, chat: UpstreamChat, credential: TokenCredential, *, stream: bool
    ) -> httpx.Response:
        platform = chat.platform
        chat_id, message_id = self.new_ids()
        body = serialize_body(self.build_payload(chat, chat_id=chat_id, message_id=message_id))
        # Z.ai always answers with SSE; `stream` only changes the Accept header.
        headers = build_upstream_headers(
            credential.token,
            platform,
            is_stream=True,
            chat_id=chat_id,
            body=body,
            with_cookie=True,
        )
        request = self.client.build_request(
            "POST",
            platform.chat_url,
            content=body,
            headers=headers,
            timeout=platform.send_timeout,
        )
        logger.info(
            "upstream: POST %s model=%s chat_id=%s token=%s stream=%s",
            platform.chat_url,
            chat.resolution.upstream_model_id,
            chat_id,
            credential.label,
            stream,
        )
        return await _send(self.client, request, timeout=platform.send_timeout)


class TalkFlow:
    """
    Two-step zread.ai flow: create a talk, then post the last user message
    into it. A new talk is created for every request.
    """

    def __init__(self, client: httpx.AsyncClient) -> None:
        self.client = client

    def validate(self, chat: UpstreamChat) -> None:
        if not chat.messages or chat.messages[-1].get("role") != "user":
            raise InvalidRequest("No user message found", code="no_user_message")

    @staticmethod
    def message_url(platform: PlatformDescriptor, talk_id: str) -> str:
        return f"{platform.chat_url.rstrip('/')}/{talk_id}/message"

    def build_message_payload(self, chat: UpstreamChat) -> Dict[str, Any]:
        platform = chat.platform
        return {
            "parent_message_id": "",
            "query": chat.messages[-1].get("content", ""),
            "context": {
                "wiki": {"page_id": platform.talk_page_id, "wiki_id": platform.talk_wiki_id},
                "repo": {"repo_id": platform.talk_repo_id},
            },
            "model": chat.resolution.upstream_model_id,
        }

    async def create_talk(self, platform: PlatformDescriptor, credential: TokenCredential) -> str:
        body = serialize_body({"repo_id": platform.talk_repo_id})
        request = self.client.build_request(
            "POST",
            platform.chat_url,
            content=body,
            headers=build_upstream_headers(credential.token, platform, is_stream=False, body=body),
            timeout=platform.send_timeout,
        )
        resp = await _send(self.client, request, timeout=platform.send_timeout, stream=False)
        try:
            payload = resp.json()
        except ValueError as exc:
            raise UpstreamResponseError("Talk creation returned a non-JSON body") from exc
        talk_id = None
        if isinstance(payload, dict):
            nested = payload.get("data") if isinstance(payload.get("data"), dict) else {}
            talk_id = payload.get("id") or payload.get("talk_id") or nested.get("id")
        if not talk_id:
            raise UpstreamResponseError("Talk creation response has no talk id")
        return str(talk_id)

    async def open(
        self, chat: UpstreamChat, credential: TokenCredential, *, stream: bool
    ) -> httpx.Response:
        self.validate(chat)
        platform = chat.platform
        talk_id = await self.create_talk(platform, credential)
        body = serialize_body(self.build_message_payload(chat))
        url = self.message_url(platform, talk_id)
        request = self.client.build_request(
            "POST",
            url,
            content=body,
            headers=build_upstream_headers(
                credential.token, platform, is_stream=stream, chat_id=talk_id, body=body
            ),
            timeout=platform.send_timeout,
        )
        logger.info(
            "upstream: POST %s model=%s token=%s stream=%s",
            url,
            chat.resolution.upstream_model_id,
            credential.label,
            stream,
        )
        return await _send(self.client, request, timeout=platform.send_timeout)


def flow_for(platform: PlatformDescriptor, client: httpx.AsyncClient):
    if platform.flow == PlatformFlow.TALK:
        return TalkFlow(client)
    return CompletionsFlow(client)


__all__ = [
    "CompletionsFlow",
    "TalkFlow",
    "UpstreamChat",
    "flow_for",
    "serialize_body",
]
