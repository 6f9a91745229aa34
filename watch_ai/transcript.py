"""Ordered message history for one conversation."""

from typing import Any, Iterable

from watch_ai.exceptions import TranscriptError
from watch_ai.llm import Message


class Transcript:
    """Append-only conversation history.

    Every tool message must answer a tool call of the most recent assistant
    message, and each call is answered at most once.
    """

    def __init__(self, messages: Iterable[Message] | None = None):
        self._messages: list[Message] = []
        for message in messages or []:
            self.append(message)

    def __len__(self) -> int:
        return len(self._messages)

    def __iter__(self):
        return iter(self._messages)

    def __getitem__(self, index):
        return self._messages[index]

    @property
    def messages(self) -> list[Message]:
        return list(self._messages)

    def _last_assistant_index(self) -> int:
        for idx in range(len(self._messages) - 1, -1, -1):
            if self._messages[idx].role == "assistant":
                return idx
        return -1

    def pending_tool_call_ids(self) -> list[str]:
        """Ids of tool calls in the latest assistant message still lacking a result."""
        idx = self._last_assistant_index()
        if idx < 0:
            return []
        answered = {
            m.tool_call_id
            for m in self._messages[idx + 1:]
            if m.role == "tool"
        }
        return [tc.id for tc in self._messages[idx].tool_calls if tc.id not in answered]

    def append(self, message: Message) -> None:
        """Append a message, enforcing tool-result ordering.

        Raises:
            TranscriptError: if a tool message does not answer an open call, or a
                non-tool message would leave earlier calls unanswered
        """
        if message.role == "tool":
            if message.tool_call_id not in self.pending_tool_call_ids():
                raise TranscriptError(
                    f"Tool message {message.tool_call_id!r} does not answer an open tool call"
                )
        elif self.pending_tool_call_ids():
            raise TranscriptError(
                f"Cannot append {message.role} message with unanswered tool calls"
            )
        self._messages.append(message)

    def extend(self, messages: Iterable[Message]) -> None:
        for message in messages:
            self.append(message)

    def assert_ready_for_request(self) -> None:
        """Raise if a request now would carry unanswered tool calls."""
        pending = self.pending_tool_call_ids()
        if pending:
            raise TranscriptError(f"Unanswered tool calls: {', '.join(pending)}")

    def context_window(self, limit: int, turn_start: int | None = None) -> list[Message]:
        """Messages to send as context.

        Keeps the last ``limit`` messages before ``turn_start`` plus everything
        from ``turn_start`` on. Tool messages left at the head of the window
        without their assistant message are dropped.
        """
        start = len(self._messages) if turn_start is None else max(0, min(turn_start, len(self._messages)))
        earlier = self._messages[:start]
        window = earlier[-limit:] if limit > 0 else []
        while window and window[0].role == "tool":
            window.pop(0)
        return window + self._messages[start:]

    def clear(self) -> None:
        self._messages.clear()

    def to_list(self) -> list[dict[str, Any]]:
        return [m.to_dict() for m in self._messages]

    @classmethod
    def from_list(cls, data: list[dict[str, Any]]) -> "Transcript":
        """Rebuild a transcript from stored dicts.

        Raises:
            TranscriptError: if the stored history breaks ordering rules
        """
        return cls(Message.from_dict(item) for item in data or [])
