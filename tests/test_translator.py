import json
from typing import Any, Dict, List

import httpx
import pytest

from ztoapi.errors import UpstreamResponseError
from ztoapi.translator import (
    DONE_FRAME,
    ChatStreamAdapter,
    UpstreamEventParser,
    ZaiEventDecoder,
    ZreadEventDecoder,
    collect_completion,
    transform_thinking,
)


def _zai_line(**data: Any) -> str:
    return "data: " + json.dumps({"type": "chat:completion", "data": data}, ensure_ascii=False) + "\n\n"


ZAI_BODY = (
    _zai_line(delta_content="<details type=\"reasoning\">\n> 先想一想", phase="thinking")
    + _zai_line(delta_content="</details>", phase="thinking")
    + _zai_line(delta_content="你好，", phase="answer")
    + _zai_line(delta_content="世界 🌍", phase="answer")
    + _zai_line(delta_content="", phase="done", done=True, usage={"total_tokens": 12})
).encode("utf-8")

ZREAD_BODY = (
    "event: answer\ndata: {\"text\": \"Hello \"}\n\n"
    "event: answer\ndata: {\"text\": \"zread\"}\n\n"
    "event: finish\ndata: {}\n\n"
).encode("utf-8")


def _adapter(decoder=None) -> ChatStreamAdapter:
    return ChatStreamAdapter(
        decoder=decoder or ZaiEventDecoder("strip"),
        completion_id="chatcmpl-test",
        created=1700000000,
        model="GLM-4.5",
    )


def _run(adapter: ChatStreamAdapter, chunks: List[bytes]) -> bytes:
    frames: List[bytes] = []
    for chunk in chunks:
        frames.extend(adapter.process_chunk(chunk))
    frames.extend(adapter.finalize())
    return b"".join(frames)


def _frames(raw: bytes) -> List[str]:
    return [f[len("data: "):] for f in raw.decode("utf-8").split("\n\n") if f]


def _contents(raw: bytes) -> str:
    out = []
    for frame in _frames(raw):
        if frame == "[DONE]":
            continue
        delta = json.loads(frame)["choices"][0]["delta"]
        out.append(delta.get("content", ""))
    return "".join(out)


def test_transform_thinking_strip_mode_removes_wrappers():
    text = '<details type="reasoning" done="true">\n> step one\n> step two\n</details>'

    assert transform_thinking(text, "strip") == "step one\nstep two"


def test_transform_thinking_think_mode_rewrites_details():
    text = '<details type="reasoning">\n> reason</details>'

    out = transform_thinking(text, "think")

    assert out.startswith("<think>")
    assert out.endswith("</think>")
    assert "reason" in out
    assert "<details" not in out


def test_transform_thinking_raw_mode_keeps_details():
    out = transform_thinking('<details type="reasoning">x</details>', "raw")

    assert out == '<details type="reasoning">x</details>'


def test_transform_thinking_drops_summary_and_custom_tags():
    text = "<summary>Thinking…</summary><Full>body</Full></thinking>"

    assert transform_thinking(text, "strip") == "body"


@pytest.mark.parametrize(
    "text",
    [
        '<details type="reasoning">\n> a\n> b\n</details>',
        '<details type="reasoning" done="true">\n> step</details>',
        "<summary>s</summary><Full>> x</Full>\n> y</thinking>",
        "plain text",
        "",
        "<details>just tags</details><details></details>",
    ],
)
def test_transform_thinking_strip_is_idempotent(text):
    once = transform_thinking(text, "strip")

    assert transform_thinking(once, "strip") == once


@pytest.mark.parametrize(
    "text, expected",
    [
        ("> a\n> b", "a\nb"),
        (">=5 items", ">=5 items"),
        ("> > nested", "> nested"),
        ("first\n  > indented", "first\n  > indented"),
        ("x >  y", "x >  y"),
    ],
)
def test_transform_thinking_drops_one_quote_marker_per_line(text, expected):
    assert transform_thinking(text, "strip") == expected


def test_stream_frames_have_fixed_order():
    raw = _run(_adapter(), [ZAI_BODY])
    frames = _frames(raw)

    first = json.loads(frames[0])
    assert first["object"] == "chat.completion.chunk"
    assert first["choices"][0]["delta"] == {"role": "assistant"}
    assert first["model"] == "GLM-4.5"

    finish = json.loads(frames[-2])
    assert finish["choices"][0]["delta"] == {}
    assert finish["choices"][0]["finish_reason"] == "stop"
    assert frames[-1] == "[DONE]"
    assert frames.count("[DONE]") == 1
    for middle in frames[1:-2]:
        assert json.loads(middle)["choices"][0]["finish_reason"] is None


def test_stream_thinking_only_tag_fragment_is_not_emitted():
    raw = _run(_adapter(), [ZAI_BODY])

    contents = [
        json.loads(f)["choices"][0]["delta"].get("content")
        for f in _frames(raw)
        if f != "[DONE]"
    ]

    assert "" not in contents
    assert _contents(raw) == "先想一想你好，世界 🌍"


def test_stream_output_is_independent_of_chunk_boundaries():
    expected = _run(_adapter(), [ZAI_BODY])

    for split in range(1, len(ZAI_BODY)):
        got = _run(_adapter(), [ZAI_BODY[:split], ZAI_BODY[split:]])
        assert got == expected, f"split at byte {split}"

    byte_by_byte = _run(_adapter(), [ZAI_BODY[i : i + 1] for i in range(len(ZAI_BODY))])
    assert byte_by_byte == expected


def test_zread_event_and_data_split_across_chunks():
    expected = _run(_adapter(ZreadEventDecoder()), [ZREAD_BODY])

    for split in range(1, len(ZREAD_BODY)):
        got = _run(_adapter(ZreadEventDecoder()), [ZREAD_BODY[:split], ZREAD_BODY[split:]])
        assert got == expected

    assert _contents(expected) == "Hello zread"
    assert _frames(expected)[-1] == "[DONE]"


def test_nothing_is_emitted_after_terminal_event():
    body = ZAI_BODY + _zai_line(delta_content="late", phase="answer").encode("utf-8")
    adapter = _adapter()

    raw = _run(adapter, [body])

    assert "late" not in _contents(raw)
    assert adapter.process_chunk(b"data: {}\n\n") == []
    assert adapter.finalize() == []


def test_upstream_eof_without_done_still_finishes():
    body = _zai_line(delta_content="partial", phase="answer").encode("utf-8")

    raw = _run(_adapter(), [body])

    assert _contents(raw) == "partial"
    assert raw.endswith(DONE_FRAME)


def test_embedded_error_terminates_stream_normally():
    body = (
        _zai_line(delta_content="a", phase="answer")
        + _zai_line(error={"detail": "rate limited"})
        + _zai_line(delta_content="b", phase="answer")
    ).encode("utf-8")
    adapter = _adapter()

    raw = _run(adapter, [body])

    assert _contents(raw) == "a"
    assert raw.endswith(DONE_FRAME)
    assert adapter.error == "rate limited"


def test_malformed_lines_are_skipped():
    body = (
        b"data: {not json}\n\n"
        b": keep-alive comment\n\n"
        + _zai_line(delta_content="ok", phase="answer").encode("utf-8")
    )

    raw = _run(_adapter(), [body])

    assert _contents(raw) == "ok"


def test_parser_pairs_event_with_next_data_line():
    parser = UpstreamEventParser()

    events = parser.feed(b"event: answer\n")
    assert events == []
    events = parser.feed(b'data: {"text": "hi"}\n')

    assert [(e.event, e.data) for e in events] == [("answer", {"text": "hi"})]


def test_parser_handles_split_multibyte_character():
    parser = UpstreamEventParser()
    encoded = 'data: {"text": "é"}\n'.encode("utf-8")
    cut = encoded.index(b"\xc3") + 1

    assert parser.feed(encoded[:cut]) == []
    events = parser.feed(encoded[cut:])

    assert events[0].data == {"text": "é"}


def _response(body: bytes) -> httpx.Response:
    return httpx.Response(200, content=body)


@pytest.mark.asyncio
async def test_collect_completion_ignores_thinking_and_reads_usage():
    result = await collect_completion(_response(ZAI_BODY), ZaiEventDecoder("strip"))

    assert result.content == "你好，世界 🌍"
    assert result.usage is not None
    assert result.usage.total_tokens == 12


@pytest.mark.asyncio
async def test_collect_completion_raises_on_embedded_error():
    body = _zai_line(data={"error": {"message": "bad"}}).encode("utf-8")

    with pytest.raises(UpstreamResponseError):
        await collect_completion(_response(body), ZaiEventDecoder())


@pytest.mark.asyncio
async def test_collect_completion_zread_events():
    result = await collect_completion(_response(ZREAD_BODY), ZreadEventDecoder())

    assert result.content == "Hello zread"


@pytest.mark.asyncio
async def test_collect_completion_plain_json_fallback():
    body = json.dumps({"content": "from json"}).encode("utf-8")

    result = await collect_completion(
        _response(body), ZreadEventDecoder(), allow_plain_fallback=True
    )

    assert result.content == "from json"


@pytest.mark.asyncio
async def test_collect_completion_plain_text_fallback():
    result = await collect_completion(
        _response(b"just text"), ZreadEventDecoder(), allow_plain_fallback=True
    )

    assert result.content == "just text"


def test_zai_decoder_marks_thinking_deltas():
    decoder = ZaiEventDecoder("think")
    parser = UpstreamEventParser()
    events = parser.feed(_zai_line(delta_content="<details>x</details>", phase="thinking").encode())

    delta = decoder.decode(events[0])

    assert delta.thinking is True
    assert delta.content == "<think>x</think>"
    assert delta.terminal is False


def test_zai_decoder_done_flag_is_terminal():
    decoder = ZaiEventDecoder()
    event_data: Dict[str, Any] = {"data": {"delta_content": "", "phase": "answer", "done": True}}
    parser = UpstreamEventParser()
    events = parser.feed(("data: " + json.dumps(event_data) + "\n").encode())

    assert decoder.decode(events[0]).terminal is True


DONE_WITH_TAIL_BODY = (
    _zai_line(delta_content="Hello", phase="answer")
    + _zai_line(delta_content=" world", phase="done", done=True)
).encode("utf-8")


def test_stream_keeps_text_carried_by_done_event():
    raw = _run(_adapter(), [DONE_WITH_TAIL_BODY])
    frames = _frames(raw)

    assert _contents(raw) == "Hello world"
    assert json.loads(frames[-2])["choices"][0]["finish_reason"] == "stop"
    assert frames[-1] == "[DONE]"


@pytest.mark.asyncio
async def test_collect_completion_keeps_text_carried_by_done_event():
    result = await collect_completion(_response(DONE_WITH_TAIL_BODY), ZaiEventDecoder())

    assert result.content == "Hello world"
