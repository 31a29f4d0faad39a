"""
Upstream SSE -> OpenAI chat completion translation.

Upstream bytes arrive in arbitrary network chunks. `UpstreamEventParser`
turns them into `UpstreamEvent` records, a per-platform decoder turns each
record into a `Delta`, and `ChatStreamAdapter` / `collect_completion`
render those deltas as OpenAI chunks or a single final message.
"""

from __future__ import annotations

import codecs
import json
import re
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Optional

import httpx
from pydantic import ValidationError

from ztoapi.errors import UpstreamResponseError
from ztoapi.logging_config import logger
from ztoapi.schemas import CompletionResult, PlatformDescriptor, PlatformFlow, Usage, build_chunk


THINK_MODES = ("strip", "think", "raw")

_SUMMARY_RE = re.compile(r"<summary>.*?</summary>", re.DOTALL)
_WRAPPER_TAGS_RE = re.compile(r"</thinking>|<Full>|</Full>")
_DETAILS_OPEN_RE = re.compile(r"<details[^>]*>")
_DETAILS_CLOSE = "</details>"
_QUOTE_PREFIX_RE = re.compile(r"^> ", re.MULTILINE)


def transform_thinking(text: str, mode: str = "strip") -> str:
    """
    Clean one thinking-phase fragment for display.

    Provider-internal summary blocks and wrapper tags always go. The
    `<details>` wrapper is removed (strip), renamed to `<think>` (think) or
    kept (raw). Blockquote markers the upstream uses to render reasoning
    are dropped from every line.
    """
    if not text:
        return ""
    out = _SUMMARY_RE.sub("", text)
    out = _WRAPPER_TAGS_RE.sub("", out)
    out = out.strip()

    if mode == "think":
        out = _DETAILS_OPEN_RE.sub("<think>", out)
        out = out.replace(_DETAILS_CLOSE, "</think>")
    elif mode == "strip":
        out = _DETAILS_OPEN_RE.sub("", out)
        out = out.replace(_DETAILS_CLOSE, "")

    out = _QUOTE_PREFIX_RE.sub("", out)
    return out.strip()


@dataclass
class UpstreamEvent:
    event: str
    data: Dict[str, Any]


@dataclass
class Delta:
    content: str = ""
    terminal: bool = False
    error: Optional[str] = None
    usage: Optional[Usage] = None
    thinking: bool = False


class UpstreamEventParser:
    """
    Incremental SSE parser tolerant of any chunk boundary, including ones
    that fall inside a multi-byte UTF-8 character or between an `event:`
    line and its `data:` line.
    """

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self._pending_event: Optional[str] = None

    def feed(self, chunk: bytes) -> List[UpstreamEvent]:
        self._buffer += self._decoder.decode(chunk)
        if "\n" not in self._buffer:
            return []
        *lines, self._buffer = self._buffer.split("\n")
        return self._parse_lines(lines)

    def flush(self) -> List[UpstreamEvent]:
        """
        Parse whatever is left once the upstream body has ended.
        """
        self._buffer += self._decoder.decode(b"", final=True)
        remaining, self._buffer = self._buffer, ""
        if not remaining.strip():
            return []
        return self._parse_lines(remaining.split("\n"))

    def _parse_lines(self, lines: List[str]) -> List[UpstreamEvent]:
        events: List[UpstreamEvent] = []
        for raw_line in lines:
            line = raw_line.rstrip("\r")
            if line.startswith("event:"):
                self._pending_event = line[len("event:"):].strip() or None
                continue
            if not line.startswith("data:"):
                continue
            payload = line[len("data:"):].strip()
            if not payload:
                continue
            event_name = self._pending_event or "message"
            self._pending_event = None
            if payload == "[DONE]":
                continue
            try:
                data = json.loads(payload)
            except json.JSONDecodeError:
                logger.debug("Skipping malformed upstream SSE data: %s", payload[:200])
                continue
            if not isinstance(data, dict):
                logger.debug("Skipping non-object upstream SSE data: %s", payload[:200])
                continue
            events.append(UpstreamEvent(event=event_name, data=data))
        return events


def _error_message(error: Any) -> str:
    if isinstance(error, dict):
        return str(error.get("detail") or error.get("message") or error)
    return str(error)


def _parse_usage(raw: Any) -> Optional[Usage]:
    if not isinstance(raw, dict):
        return None
    try:
        return Usage.model_validate(
            {k: raw[k] for k in ("prompt_tokens", "completion_tokens", "total_tokens") if k in raw}
        )
    except ValidationError:
        return None


class ZaiEventDecoder:
    """
    Z.ai framing: `data: {"type": ..., "data": {"delta_content", "phase", "done"}}`.
    """

    def __init__(self, think_mode: str = "strip") -> None:
        self.think_mode = think_mode

    def decode(self, event: UpstreamEvent) -> Delta:
        payload = event.data
        inner = payload.get("data")
        if not isinstance(inner, dict):
            inner = payload
        nested = inner.get("data") if isinstance(inner.get("data"), dict) else {}

        error = payload.get("error") or inner.get("error") or nested.get("error")
        if error:
            return Delta(terminal=True, error=_error_message(error))

        phase = inner.get("phase")
        text = inner.get("delta_content") or ""
        delta = Delta(usage=_parse_usage(inner.get("usage")))
        if phase == "thinking":
            delta.thinking = True
            delta.content = transform_thinking(text, self.think_mode)
        else:
            # The closing event may still carry the tail of the answer.
            delta.content = text
        delta.terminal = bool(inner.get("done")) or phase == "done"
        return delta


class ZreadEventDecoder:
    """
    zread.ai framing: `event: answer` + `data: {"text": ...}`, ended by
    `event: finish`.
    """

    def decode(self, event: UpstreamEvent) -> Delta:
        data = event.data
        if event.event == "error" or data.get("error"):
            return Delta(terminal=True, error=_error_message(data.get("error") or data))
        if event.event == "finish":
            return Delta(terminal=True, usage=_parse_usage(data.get("usage")))
        if event.event in ("answer", "message"):
            text = data.get("text")
            if text is None:
                text = data.get("content") or ""
            return Delta(content=str(text))
        return Delta()


def decoder_for(platform: PlatformDescriptor, think_mode: str = "strip"):
    if platform.flow == PlatformFlow.TALK:
        return ZreadEventDecoder()
    return ZaiEventDecoder(think_mode)


def encode_sse(payload: Dict[str, Any]) -> bytes:
    return f"data: {json.dumps(payload, ensure_ascii=False)}\n\n".encode("utf-8")


DONE_FRAME = b"data: [DONE]\n\n"


@dataclass
class ChatStreamAdapter:
    """
    Re-frames upstream bytes into OpenAI `chat.completion.chunk` frames.

    Frame order is fixed: one role chunk, content chunks, one finish chunk
    and `[DONE]`. Nothing is emitted after `[DONE]`.
    """

    decoder: Any
    completion_id: str
    created: int
    model: str
    parser: UpstreamEventParser = field(default_factory=UpstreamEventParser)
    started: bool = False
    finished: bool = False
    content_chars: int = 0
    usage: Optional[Usage] = None
    error: Optional[str] = None

    def _chunk(self, delta: Dict[str, Any], finish_reason: Optional[str] = None) -> bytes:
        return encode_sse(
            build_chunk(
                completion_id=self.completion_id,
                created=self.created,
                model=self.model,
                delta=delta,
                finish_reason=finish_reason,
            )
        )

    def start(self) -> List[bytes]:
        if self.started:
            return []
        self.started = True
        return [self._chunk({"role": "assistant"})]

    def _finish(self) -> List[bytes]:
        self.finished = True
        return [self._chunk({}, finish_reason="stop"), DONE_FRAME]

    def _render(self, events: List[UpstreamEvent]) -> List[bytes]:
        frames: List[bytes] = []
        for event in events:
            if self.finished:
                break
            delta = self.decoder.decode(event)
            if delta.usage is not None:
                self.usage = delta.usage
            if delta.error:
                self.error = delta.error
                logger.warning("Upstream reported an error mid-stream: %s", delta.error[:200])
            if delta.content:
                self.content_chars += len(delta.content)
                frames.append(self._chunk({"content": delta.content}))
            if delta.terminal:
                frames.extend(self._finish())
        return frames

    def process_chunk(self, chunk: bytes) -> List[bytes]:
        if self.finished:
            return []
        frames = self.start()
        frames.extend(self._render(self.parser.feed(chunk)))
        return frames

    def finalize(self) -> List[bytes]:
        """
        Called on clean upstream EOF; closes the stream if no terminal event came.
        """
        if self.finished:
            return []
        frames = self.start()
        frames.extend(self._render(self.parser.flush()))
        if not self.finished:
            frames.extend(self._finish())
        return frames


async def collect_completion(
    response: httpx.Response,
    decoder: Any,
    *,
    allow_plain_fallback: bool = False,
) -> CompletionResult:
    """
    Read a whole upstream SSE body and return the answer text.

    Thinking-phase text is dropped. With `allow_plain_fallback` (talk flow)
    a body without SSE content is read as JSON `content`/`response`, or
    returned verbatim.
    """
    parser = UpstreamEventParser()
    parts: List[str] = []
    raw = bytearray()
    usage: Optional[Usage] = None
    terminal = False

    def consume(events: List[UpstreamEvent]) -> bool:
        nonlocal usage
        for event in events:
            delta = decoder.decode(event)
            if delta.error:
                raise UpstreamResponseError(f"Upstream error: {delta.error[:500]}")
            if delta.usage is not None:
                usage = delta.usage
            if delta.content and not delta.thinking:
                parts.append(delta.content)
            if delta.terminal:
                return True
        return False

    async for chunk in response.aiter_bytes():
        if allow_plain_fallback:
            raw.extend(chunk)
        terminal = consume(parser.feed(chunk))
        if terminal:
            break

    if not terminal:
        consume(parser.flush())

    content = "".join(parts)
    if not content and allow_plain_fallback and raw:
        content = _plain_body_fallback(bytes(raw))
    return CompletionResult(content=content, usage=usage)


def _plain_body_fallback(raw: bytes) -> str:
    text = raw.decode("utf-8", errors="replace").strip()
    if not text:
        return ""
    try:
        payload = json.loads(text)
    except json.JSONDecodeError:
        return text
    if isinstance(payload, dict):
        value = payload.get("content") or payload.get("response")
        if isinstance(value, str):
            return value
    return text


__all__ = [
    "ChatStreamAdapter",
    "DONE_FRAME",
    "Delta",
    "THINK_MODES",
    "UpstreamEvent",
    "UpstreamEventParser",
    "ZaiEventDecoder",
    "ZreadEventDecoder",
    "collect_completion",
    "decoder_for",
    "encode_sse",
    "transform_thinking",
]
