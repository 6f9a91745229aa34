import json

import pytest

from watch_ai.llm.stream import ContentDelta, StreamDecoder, StreamError, ToolCallDelta


def _sse(payload) -> str:
    return f"data: {json.dumps(payload)}\n\n"


def _content(text: str) -> dict:
    return {"choices": [{"delta": {"content": text}}]}


def _tool(index: int, call_id: str = "", name: str = "", arguments: str = "") -> dict:
    fragment: dict = {"index": index, "function": {}}
    if call_id:
        fragment["id"] = call_id
    if name:
        fragment["function"]["name"] = name
    if arguments:
        fragment["function"]["arguments"] = arguments
    return {"choices": [{"delta": {"tool_calls": [fragment]}}]}


BODY = "".join([
    _sse(_content("Let me ")),
    _sse(_content("look.")),
    _sse(_tool(0, call_id="call_a", name="read_file", arguments='{"pa')),
    _sse(_tool(0, arguments='th": "src/app.py"}')),
    _sse(_tool(1, call_id="call_b", name="list_dir", arguments="{}")),
    "data: [DONE]\n\n",
])


def _decode(chunks: list[str]) -> StreamDecoder:
    decoder = StreamDecoder()
    for chunk in chunks:
        decoder.feed(chunk)
    decoder.close()
    return decoder


def test_decoder_reassembles_content_and_tool_calls():
    decoder = _decode([BODY])

    assert decoder.done is True
    assert decoder.content == "Let me look."
    calls = decoder.tool_calls()
    assert [(c.id, c.name) for c in calls] == [("call_a", "read_file"), ("call_b", "list_dir")]
    assert calls[0].parse_arguments() == {"path": "src/app.py"}
    assert calls[1].parse_arguments() == {}


def test_decoder_result_does_not_depend_on_chunk_boundaries():
    expected = _decode([BODY])
    for size in (1, 2, 3, 7, 16, 61):
        chunks = [BODY[i:i + size] for i in range(0, len(BODY), size)]
        decoder = _decode(chunks)
        assert decoder.content == expected.content
        assert [(c.id, c.name, c.arguments_json) for c in decoder.tool_calls()] == [
            (c.id, c.name, c.arguments_json) for c in expected.tool_calls()
        ]


def test_feed_returns_events_as_lines_complete():
    decoder = StreamDecoder()
    first = 'data: {"choices": [{"delta": {"content": "Hel'
    assert decoder.feed(first) == []

    events = decoder.feed('lo"}}]}\n')
    assert events == [ContentDelta(text="Hello")]

    events = decoder.feed(_sse(_tool(0, call_id="c1", name="list_dir")))
    assert events == [ToolCallDelta(index=0, id="c1", name="list_dir", arguments="")]


def test_malformed_lines_are_dropped_without_ending_the_stream():
    body = (
        "data: {not json\n\n"
        ": keep-alive comment\n"
        "event: message\n"
        + _sse(_content("still here"))
        + "data: [DONE]\n"
    )
    decoder = _decode([body])
    assert decoder.content == "still here"
    assert decoder.error is None


def test_data_without_space_and_crlf_line_endings():
    body = 'data:{"choices":[{"delta":{"content":"a"}}]}\r\n\r\ndata: {"choices":[{"delta":{"content":"b"}}]}\r\n'
    decoder = _decode([body])
    assert decoder.content == "ab"


def test_everything_after_done_is_ignored():
    decoder = StreamDecoder()
    decoder.feed("data: [DONE]\n" + _sse(_content("late")))
    assert decoder.done is True
    assert decoder.feed(_sse(_content("later"))) == []
    assert decoder.content == ""


def test_trailing_line_without_newline_is_flushed_on_close():
    decoder = StreamDecoder()
    decoder.feed('data: {"choices": [{"delta": {"content": "tail"}}]}')
    assert decoder.content == ""
    events = decoder.close()
    assert events == [ContentDelta(text="tail")]
    assert decoder.content == "tail"


def test_nameless_calls_are_dropped_and_missing_ids_generated():
    body = _sse(_tool(0, arguments='{"x": 1}')) + _sse(_tool(1, name="list_dir"))
    decoder = _decode([body])

    calls = decoder.tool_calls()
    assert len(calls) == 1
    assert calls[0].name == "list_dir"
    assert calls[0].id.startswith("call_")


def test_invalid_arguments_fail_only_at_parse_time():
    decoder = _decode([_sse(_tool(0, call_id="c1", name="read_file", arguments='{"path": '))])
    call = decoder.tool_calls()[0]
    with pytest.raises(ValueError):
        call.parse_arguments()


def test_object_arguments_are_serialized():
    payload = {"choices": [{"delta": {"tool_calls": [
        {"index": 0, "id": "c1", "function": {"name": "read_file", "arguments": {"path": "a.txt"}}},
    ]}}]}
    decoder = _decode([_sse(payload)])
    assert decoder.tool_calls()[0].parse_arguments() == {"path": "a.txt"}


def test_provider_error_and_usage_are_captured():
    decoder = StreamDecoder()
    decoder.feed(_sse({"choices": [], "usage": {"prompt_tokens": 5, "completion_tokens": 2}}))
    assert decoder.usage == {"prompt_tokens": 5, "completion_tokens": 2}

    events = decoder.feed(_sse({"error": {"message": "Rate limited", "code": 429}}))
    assert events == [StreamError(message="Rate limited", code=429)]
    assert decoder.error is not None


def test_repeated_ids_in_one_batch_are_replaced():
    body = (
        _sse(_tool(0, call_id="call_0", name="list_dir", arguments="{}"))
        + _sse(_tool(1, call_id="call_0", name="read_file", arguments='{"path": "a.py"}'))
    )
    decoder = _decode([body])

    calls = decoder.tool_calls()
    assert calls[0].id == "call_0"
    assert calls[1].id.startswith("call_")
    assert calls[1].id != "call_0"
    assert decoder.tool_calls()[1].id == calls[1].id
