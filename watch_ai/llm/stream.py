"""Incremental decoder for chat-completions server-sent-event streams."""

import json
import uuid
from dataclasses import dataclass, field
from typing import Any

from watch_ai.llm import ToolCallRequest
from watch_ai.logging import get_logger

log = get_logger(__name__)

DONE_SENTINEL = "[DONE]"


@dataclass
class ContentDelta:
    """A piece of assistant text."""

    text: str


@dataclass
class ToolCallDelta:
    """A fragment of a tool call, keyed by its batch index."""

    index: int
    id: str = ""
    name: str = ""
    arguments: str = ""


@dataclass
class StreamError:
    """A provider error object received mid-stream."""

    message: str
    code: Any = None


StreamEvent = ContentDelta | ToolCallDelta | StreamError


@dataclass
class _ToolCallBuffer:
    index: int
    id: str = ""
    name: str = ""
    arguments: list[str] = field(default_factory=list)


class StreamDecoder:
    """Reassemble SSE lines from arbitrary chunks and aggregate tool-call fragments.

    Feed raw text chunks with ``feed``; each call returns the events completed by
    that chunk. Call ``close`` once the body ends to flush a trailing line.
    The accumulated assistant text and tool calls are available afterwards.
    """

    def __init__(self) -> None:
        self._buffer = ""
        self._done = False
        self._content: list[str] = []
        self._calls: dict[int, _ToolCallBuffer] = {}
        self.usage: dict[str, Any] | None = None
        self.error: StreamError | None = None

    @property
    def done(self) -> bool:
        """Whether the ``[DONE]`` sentinel was seen."""
        return self._done

    @property
    def content(self) -> str:
        return "".join(self._content)

    def feed(self, chunk: str) -> list[StreamEvent]:
        """Consume one chunk of body text."""
        if self._done or not chunk:
            return []
        self._buffer += chunk
        lines = self._buffer.split("\n")
        self._buffer = lines.pop()
        events: list[StreamEvent] = []
        for line in lines:
            events.extend(self._process_line(line))
            if self._done:
                self._buffer = ""
                break
        return events

    def close(self) -> list[StreamEvent]:
        """Flush the carry-over buffer at end of stream."""
        if self._done:
            return []
        remainder, self._buffer = self._buffer, ""
        if not remainder:
            return []
        return self._process_line(remainder)

    def _process_line(self, raw_line: str) -> list[StreamEvent]:
        line = raw_line.rstrip("\r").strip()
        if not line or not line.startswith("data:"):
            # blank separators, ":" comments, event:/id: fields
            return []
        payload = line[len("data:"):].strip()
        if not payload:
            return []
        if payload == DONE_SENTINEL:
            self._done = True
            return []
        try:
            event = json.loads(payload)
        except json.JSONDecodeError:
            log.debug("Dropping malformed stream line", line=payload[:200])
            return []
        if not isinstance(event, dict):
            return []
        return self._process_event(event)

    def _process_event(self, event: dict[str, Any]) -> list[StreamEvent]:
        events: list[StreamEvent] = []

        error = event.get("error")
        if error:
            if isinstance(error, dict):
                message = str(error.get("message") or error)
                code = error.get("code")
            else:
                message, code = str(error), None
            self.error = StreamError(message=message, code=code)
            return [self.error]

        usage = event.get("usage")
        if isinstance(usage, dict):
            self.usage = usage

        choices = event.get("choices") or []
        if not isinstance(choices, list):
            return events
        for choice in choices:
            if not isinstance(choice, dict):
                continue
            delta = choice.get("delta") or {}
            if not isinstance(delta, dict):
                continue

            text = delta.get("content")
            if isinstance(text, str) and text:
                self._content.append(text)
                events.append(ContentDelta(text=text))

            for fragment in delta.get("tool_calls") or []:
                parsed = self._absorb_tool_fragment(fragment)
                if parsed is not None:
                    events.append(parsed)
        return events

    def _absorb_tool_fragment(self, fragment: Any) -> ToolCallDelta | None:
        if not isinstance(fragment, dict):
            return None
        try:
            index = int(fragment.get("index", 0) or 0)
        except (TypeError, ValueError):
            return None
        function = fragment.get("function") or {}
        if not isinstance(function, dict):
            function = {}

        call_id = str(fragment.get("id") or "")
        name = str(function.get("name") or "")
        arguments = function.get("arguments") or ""
        if not isinstance(arguments, str):
            # some providers send an already-decoded object
            arguments = json.dumps(arguments)

        buffer = self._calls.setdefault(index, _ToolCallBuffer(index=index))
        if call_id:
            buffer.id = call_id
        if name:
            buffer.name += name
        if arguments:
            buffer.arguments.append(arguments)
        return ToolCallDelta(index=index, id=call_id, name=name, arguments=arguments)

    def tool_calls(self) -> list[ToolCallRequest]:
        """Completed tool calls ordered by index.

        Calls without a name are dropped. Calls that never received an id, or
        repeat an id already used in this batch, get a generated ``call_<hex>`` id.
        """
        calls: list[ToolCallRequest] = []
        seen_ids: set[str] = set()
        for index in sorted(self._calls):
            buffer = self._calls[index]
            if not buffer.name:
                log.debug("Dropping nameless tool call fragment", index=index)
                continue
            if buffer.id in seen_ids:
                log.debug("Replacing repeated tool call id", index=index, call_id=buffer.id)
                buffer.id = ""
            if not buffer.id:
                buffer.id = f"call_{uuid.uuid4().hex[:24]}"
            seen_ids.add(buffer.id)
            calls.append(
                ToolCallRequest(
                    id=buffer.id,
                    name=buffer.name,
                    arguments_json="".join(buffer.arguments),
                )
            )
        return calls
