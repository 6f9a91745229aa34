"""Agent loop controller for Watch AI.

One Agent owns one conversation: its transcript, its per-turn stats and its
pending approvals. Front-ends feed it user actions and receive events through
``event_callback`` as plain dicts with a ``type`` key:

    content            {"delta"}
    tool_call          {"calls": [{"id", "name", "args"}]}
    step               {"tool", "id", "success", "message"}
    approval_required  {"id", "tool_call_id", "command", "cwd"}
    status             {"status", "round"}
    done               {"stats"}
    error              {"error"}
"""

import asyncio
import inspect
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from watch_ai.approval import ApprovalGate, PendingApproval
from watch_ai.config import get_config
from watch_ai.exceptions import (
    GenerationAborted,
    LLMAPIError,
    LLMError,
    SessionError,
    ToolError,
    TranscriptError,
)
from watch_ai.llm import LLMProvider, Message, ToolCallRequest, get_provider
from watch_ai.llm.stream import ContentDelta, StreamDecoder, StreamError
from watch_ai.logging import get_logger, log_context
from watch_ai.prompt import EditorContext, TemplateLoader, build_system_prompt
from watch_ai.session import ConversationStore, new_conversation_id
from watch_ai.stats import SessionStats
from watch_ai.tools import ToolRegistry, ToolResult, build_default_registry
from watch_ai.tools.editor import LanguageServices
from watch_ai.transcript import Transcript

log = get_logger(__name__)

EventCallback = Callable[[dict[str, Any]], Awaitable[None] | None]

RETRY_NOTE = (
    "Every tool call in your last step failed. Read the error messages, fix the "
    "arguments (use exact paths and exact text from read_file) and try again, or "
    "explain to the user what is blocking you."
)
APPROVAL_NOTE = "Command executed. Result: {result}"


@dataclass
class _PlannedCall:
    call: ToolCallRequest
    args: dict[str, Any] | None
    parse_error: str = ""


class Agent:
    """Tool-calling agent bound to one conversation."""

    def __init__(
        self,
        provider: LLMProvider | None = None,
        tools: ToolRegistry | None = None,
        store: ConversationStore | None = None,
        event_callback: EventCallback | None = None,
        conversation_id: str | None = None,
        language_services: LanguageServices | None = None,
        templates: TemplateLoader | None = None,
    ):
        """Initialize the agent.

        Args:
            provider: Optional LLM provider override (defaults to the global one)
            tools: Optional tool registry (defaults to every enabled tool)
            store: Optional conversation store; persistence is skipped without one
            event_callback: Receives UI events, sync or async
            conversation_id: Id of the conversation this agent writes
            language_services: Host editor services for diagnostics/outline
            templates: Optional prompt template loader
        """
        cfg = get_config()
        self.provider = provider
        self.workspace = cfg.resolved_workspace_path()
        self.tools = tools or build_default_registry(self.workspace, language_services)
        self.store = store
        self.event_callback = event_callback
        self.conversation_id = conversation_id or new_conversation_id()
        self.templates = templates or TemplateLoader()

        self.transcript = Transcript()
        self.stats = SessionStats()
        self.approvals = ApprovalGate()
        self.last_usage: dict[str, int] = self._empty_usage()
        self.total_usage: dict[str, int] = self._empty_usage()

        self._lock = asyncio.Lock()
        self._abort_event = asyncio.Event()
        self._turn_start = 0
        self._editor_context: EditorContext | None = None

    @staticmethod
    def _empty_usage() -> dict[str, int]:
        return {
            "prompt_tokens": 0,
            "completion_tokens": 0,
            "total_tokens": 0,
        }

    @staticmethod
    def _accumulate_usage(target: dict[str, int], usage: dict[str, Any] | None) -> None:
        """Add usage values into target totals."""
        if not usage:
            return
        prompt = int(usage.get("prompt_tokens", 0) or 0)
        completion = int(usage.get("completion_tokens", 0) or 0)
        total = int(usage.get("total_tokens", prompt + completion) or 0)
        target["prompt_tokens"] += prompt
        target["completion_tokens"] += completion
        target["total_tokens"] += total

    @property
    def autopilot(self) -> bool:
        return bool(get_config().approval.autopilot)

    @property
    def is_busy(self) -> bool:
        return self._lock.locked()

    def _get_provider(self) -> LLMProvider:
        if self.provider is None:
            self.provider = get_provider()
        return self.provider

    async def _emit(self, event: dict[str, Any]) -> None:
        """Forward an event to the front-end. Nothing is emitted after a stop."""
        if self._abort_event.is_set() or self.event_callback is None:
            return
        try:
            result = self.event_callback(event)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            log.warning("Event callback failed", event_type=event.get("type"), error=str(e))

    def _begin_turn(self) -> None:
        self._abort_event = asyncio.Event()
        self.stats.reset()
        self.last_usage = self._empty_usage()
        self._turn_start = len(self.transcript)

    # ----------------------------------------------------------- public API

    async def send_message(self, text: str, editor_context: EditorContext | None = None) -> None:
        """Run one user turn to completion, approval pause, stop or error."""
        async with self._lock:
            self._cancel_pending_approvals("superseded by a new message")
            self._begin_turn()
            self._editor_context = editor_context
            self.transcript.append(Message(role="user", content=text))
            log.info("User turn started", conversation_id=self.conversation_id, chars=len(text))
            await self._run_turn()
            await self._persist()

    async def decide(self, approval_id: str, approved: bool) -> None:
        """Apply a human decision to a pending command.

        Approving runs the command once and starts a new turn with its result.
        Rejecting records the rejection and ends without a model call.

        Raises:
            ApprovalNotFoundError: unknown or already decided id
        """
        async with self._lock:
            approval = self.approvals.resolve(approval_id, approved)
            self._begin_turn()

            if not approved:
                result = ToolResult.failure("Command rejected by the user", "rejected", command=approval.command)
                self.transcript.append(self._tool_message(approval.tool_call_id, approval.tool_name, result))
                self.stats.record_status(approval.tool_name, "rejected", result.error or "")
                await self._emit_step(approval.tool_name, approval.tool_call_id, result)
                await self._emit({"type": "done", "stats": self.stats.to_dict()})
                await self._persist()
                return

            result = await self._run_approved_command(approval)
            self.transcript.append(self._tool_message(approval.tool_call_id, approval.tool_name, result))
            self.stats.record(approval.tool_name, "command", result)
            await self._emit_step(approval.tool_name, approval.tool_call_id, result)

            self._turn_start = len(self.transcript)
            output = getattr(result, "output", "") or ""
            summary = output if result.success else f"{result.error}\n{output}".strip()
            self.transcript.append(Message(role="user", content=APPROVAL_NOTE.format(result=summary)))
            await self._run_turn()
            await self._persist()

    async def stop(self) -> None:
        """Abort the in-flight turn and drop pending approvals."""
        log.info("Stop requested", conversation_id=self.conversation_id)
        self._abort_event.set()
        self._cancel_pending_approvals("generation stopped")

    async def new_chat(self) -> str:
        """Start an empty conversation. Returns the new conversation id."""
        await self.stop()
        async with self._lock:
            await self._persist()
            self.transcript = Transcript()
            self.stats.reset()
            self.conversation_id = new_conversation_id()
            self._turn_start = 0
        return self.conversation_id

    async def load_chat(self, conversation_id: str) -> list[dict[str, Any]]:
        """Switch to a stored conversation and return its messages.

        Raises:
            SessionNotFoundError: unknown id
            SessionError: no store configured
        """
        if self.store is None:
            raise SessionError("No conversation store configured")
        await self.stop()
        async with self._lock:
            await self._persist()
            conversation = await self.store.load(conversation_id)
            self.transcript = Transcript.from_list(conversation.messages)
            self._close_orphaned_calls("conversation reloaded")
            self.conversation_id = conversation.id
            self.stats.reset()
            self._turn_start = len(self.transcript)
        return self.transcript.to_list()

    async def delete_chat(self, conversation_id: str) -> bool:
        if self.store is None:
            return False
        deleted = await self.store.delete(conversation_id)
        if conversation_id == self.conversation_id:
            await self.stop()
            async with self._lock:
                self.transcript = Transcript()
                self.conversation_id = new_conversation_id()
        return deleted

    async def list_chats(self, limit: int | None = None) -> list[dict[str, Any]]:
        if self.store is None:
            return []
        conversations = await self.store.list(limit or get_config().session.history_limit)
        return [c.to_dict(include_messages=False) for c in conversations]

    @staticmethod
    def set_autopilot(enabled: bool, persist: bool = True) -> bool:
        """Toggle running commands without approval, saving the setting."""
        cfg = get_config()
        cfg.approval.autopilot = bool(enabled)
        if persist:
            path = cfg.save()
            log.info("Autopilot updated", enabled=bool(enabled), config=str(path))
        return cfg.approval.autopilot

    async def shutdown(self) -> None:
        await self.stop()
        async with self._lock:
            await self._persist()

    # ----------------------------------------------------------- loop

    async def _run_turn(self) -> None:
        cfg = get_config().agent
        with log_context(conversation_id=self.conversation_id):
            error_retries = 0
            for round_no in range(1, cfg.max_rounds + 1):
                with log_context(round=round_no):
                    try:
                        outcome = await self._run_round(round_no)
                    except GenerationAborted:
                        log.info("Generation stopped")
                        return
                    except (LLMError, TranscriptError) as e:
                        log.warning("Round failed", error=str(e))
                        await self._emit({"type": "error", "error": str(e)})
                        return

                    if outcome in ("final", "approval"):
                        break
                    if outcome == "all_failed":
                        if error_retries >= cfg.max_error_retries:
                            log.info("Retry budget spent, ending turn")
                            break
                        error_retries += 1
                        self.transcript.append(Message(role="system", content=RETRY_NOTE))
            else:
                log.warning("Round cap reached", max_rounds=cfg.max_rounds)

            self._accumulate_usage(self.total_usage, self.last_usage)
            await self._emit({"type": "done", "stats": self.stats.to_dict()})

    def _build_request(self) -> list[Message]:
        cfg = get_config()
        system = build_system_prompt(self.workspace, self._editor_context, loader=self.templates)
        window = self.transcript.context_window(cfg.agent.context_messages, self._turn_start)
        return [Message(role="system", content=system), *window]

    async def _run_round(self, round_no: int) -> str:
        """One request/response cycle.

        Returns "final", "approval", "all_failed" or "continue".
        """
        self.transcript.assert_ready_for_request()
        messages = self._build_request()
        log.info("Round started", messages=len(messages))
        await self._emit({"type": "status", "status": "thinking", "round": round_no})

        decoder = StreamDecoder()
        await self._stream_response(messages, decoder)
        if decoder.error is not None:
            raise LLMAPIError(f"Provider error: {decoder.error.message}")
        self._accumulate_usage(self.last_usage, decoder.usage)

        content = decoder.content
        calls = decoder.tool_calls()
        if self._abort_event.is_set():
            raise GenerationAborted()

        if not calls:
            if content:
                self.transcript.append(Message(role="assistant", content=content))
            return "final"

        planned = [self._plan_call(call) for call in calls]
        batch, gate = self._cut_batch(planned)
        recorded = batch + ([gate] if gate else [])

        await self._emit({
            "type": "tool_call",
            "calls": [
                {"id": p.call.id, "name": p.call.name, "args": p.args or {}}
                for p in recorded
            ],
        })
        await self._emit({"type": "status", "status": "running_tools", "round": round_no})

        results = list(await asyncio.gather(*(self._execute_planned(p) for p in batch)))
        if self._abort_event.is_set():
            log.info("Discarding tool results after stop", count=len(results))
            raise GenerationAborted()

        approval: PendingApproval | None = None
        if gate is not None:
            gate_result, approval = self._open_approval(gate)
            if gate_result is not None:
                batch = batch + [gate]
                results.append(gate_result)

        assistant = Message(role="assistant", content=content, tool_calls=[p.call for p in recorded])
        self.transcript.append(assistant)
        for item, result in zip(batch, results):
            self.transcript.append(self._tool_message(item.call.id, item.call.name, result))
            self.stats.record(item.call.name, self._tool_kind(item.call.name), result)
            await self._emit_step(item.call.name, item.call.id, result)

        if approval is not None:
            self.stats.record_status(gate.call.name, "pending_approval", approval.command)
            await self._emit({"type": "approval_required", **approval.to_dict()})
            return "approval"

        if results and all(not r.success for r in results):
            return "all_failed"
        return "continue"

    async def _stream_response(self, messages: list[Message], decoder: StreamDecoder) -> None:
        """Read the model stream, forwarding content as it arrives.

        Raises:
            GenerationAborted: stop requested while reading
            LLMError: endpoint failure
        """
        stream = self._get_provider().stream_chat(messages, self.tools.get_definitions())
        iterator = stream.__aiter__()
        abort_task = asyncio.create_task(self._abort_event.wait())
        try:
            while not decoder.done:
                next_task = asyncio.ensure_future(iterator.__anext__())
                done, _ = await asyncio.wait(
                    {next_task, abort_task},
                    return_when=asyncio.FIRST_COMPLETED,
                )
                if next_task not in done:
                    next_task.cancel()
                    try:
                        await next_task
                    except (asyncio.CancelledError, StopAsyncIteration):
                        pass
                    raise GenerationAborted()
                try:
                    chunk = next_task.result()
                except StopAsyncIteration:
                    break
                if await self._dispatch_stream_events(decoder.feed(chunk)):
                    return
            await self._dispatch_stream_events(decoder.close())
        finally:
            abort_task.cancel()
            try:
                await abort_task
            except asyncio.CancelledError:
                pass
            aclose = getattr(iterator, "aclose", None)
            if aclose is not None:
                try:
                    await aclose()
                except RuntimeError as e:
                    log.debug("Stream close skipped", error=str(e))

    async def _dispatch_stream_events(self, events: list[Any]) -> bool:
        """Emit content deltas. Returns True when a provider error ends the stream."""
        for event in events:
            if isinstance(event, ContentDelta):
                await self._emit({"type": "content", "delta": event.text})
            elif isinstance(event, StreamError):
                return True
        return False

    # ----------------------------------------------------------- tools

    def _plan_call(self, call: ToolCallRequest) -> _PlannedCall:
        try:
            return _PlannedCall(call=call, args=call.parse_arguments())
        except ValueError as e:
            return _PlannedCall(call=call, args=None, parse_error=str(e))

    def _cut_batch(self, planned: list[_PlannedCall]) -> tuple[list[_PlannedCall], _PlannedCall | None]:
        """Split calls at the first one that needs approval; later calls are skipped."""
        if self.autopilot:
            return planned, None
        for index, item in enumerate(planned):
            if self.tools.requires_approval(item.call.name):
                for skipped in planned[index + 1:]:
                    log.info(
                        "Skipping tool call after approval boundary",
                        tool=skipped.call.name,
                        call_id=skipped.call.id,
                    )
                return planned[:index], item
        return planned, None

    def _tool_kind(self, name: str) -> str:
        if self.tools.has_tool(name):
            return self.tools.get(name).kind
        return "query"

    async def _execute_planned(self, item: _PlannedCall) -> ToolResult:
        if item.args is None:
            return ToolResult.failure(
                f"Invalid JSON arguments for {item.call.name}: {item.parse_error}",
                "parse_error",
            )
        try:
            return await self.tools.execute(
                item.call.name,
                item.args,
                approved=self.autopilot,
            )
        except ToolError as e:
            log.info("Tool call failed", tool=item.call.name, call_id=item.call.id, error=str(e))
            return ToolResult.from_error(e)

    def _open_approval(self, item: _PlannedCall) -> tuple[ToolResult | None, PendingApproval | None]:
        """Register an approval for a gated call, or return why it cannot run."""
        if item.args is None:
            return ToolResult.failure(
                f"Invalid JSON arguments for {item.call.name}: {item.parse_error}",
                "parse_error",
            ), None
        try:
            tool = self.tools.get(item.call.name)
            tool.validate_arguments(item.args)
            self.tools.check_blocked(item.call.name, item.args)
            cwd = self.tools.resolve_path(item.args.get("cwd"))
        except ToolError as e:
            return ToolResult.from_error(e), None

        approval = self.approvals.request(
            command=str(item.args["command"]),
            cwd=str(cwd),
            tool_call_id=item.call.id,
        )
        approval.tool_name = item.call.name
        return None, approval

    async def _run_approved_command(self, approval: PendingApproval) -> ToolResult:
        try:
            return await self.tools.execute(
                approval.tool_name,
                {"command": approval.command, "cwd": approval.cwd},
                approved=True,
            )
        except ToolError as e:
            return ToolResult.from_error(e)

    def _cancel_pending_approvals(self, reason: str) -> None:
        """Record a cancelled result for every open approval."""
        for approval in self.approvals.cancel_all(reason):
            result = ToolResult.failure(f"Command not run: {reason}", "cancelled", command=approval.command)
            self.transcript.append(self._tool_message(approval.tool_call_id, approval.tool_name, result))
            self.stats.record_status(approval.tool_name, "cancelled", reason)

    def _close_orphaned_calls(self, reason: str) -> None:
        """Answer tool calls left open in a stored transcript (approvals that never resolved)."""
        pending = self.transcript.pending_tool_call_ids()
        if not pending:
            return
        last = next(m for m in reversed(self.transcript.messages) if m.role == "assistant")
        names = {tc.id: tc.name for tc in last.tool_calls}
        for call_id in pending:
            result = ToolResult.failure(f"Command not run: {reason}", "cancelled")
            self.transcript.append(self._tool_message(call_id, names.get(call_id, ""), result))

    @staticmethod
    def _tool_message(tool_call_id: str, name: str, result: ToolResult) -> Message:
        return Message(role="tool", content=result.to_content(), tool_call_id=tool_call_id, name=name)

    async def _emit_step(self, name: str, call_id: str, result: ToolResult) -> None:
        await self._emit({
            "type": "step",
            "tool": name,
            "id": call_id,
            "success": result.success,
            "message": result.message if result.success else (result.error or ""),
        })

    async def _persist(self) -> None:
        """Save the transcript; failures are logged, never raised."""
        if self.store is None or not len(self.transcript):
            return
        try:
            await self.store.save(self.conversation_id, self.transcript.to_list())
        except Exception as e:
            log.warning("Saving conversation failed", conversation_id=self.conversation_id, error=str(e))
