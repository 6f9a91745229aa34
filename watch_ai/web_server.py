"""Web server for Watch AI: chat WebSocket, SSE agent API and pty terminal."""

import asyncio
import json
import shutil
import signal
import sys
from pathlib import Path
from typing import Any, Awaitable, Callable

from aiohttp import web

from watch_ai.agent import Agent
from watch_ai.config import Config, get_config, set_config
from watch_ai.exceptions import (
    ApprovalNotFoundError,
    PathOutsideWorkspaceError,
    SessionNotFoundError,
    WatchAIError,
)
from watch_ai.llm import LLMProvider
from watch_ai.logging import configure_logging, get_logger
from watch_ai.prompt import EditorContext
from watch_ai.session import ConversationStore
from watch_ai.terminal import PtySession
from watch_ai.tools.editor import LanguageServices
from watch_ai.tools.registry import display_path, resolve_in_workspace
from watch_ai.tools.search import list_entries

log = get_logger(__name__)

SSE_HEADERS = {
    "Content-Type": "text/event-stream; charset=utf-8",
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


class WebServer:
    """Hosts one Agent per WebSocket connection and one per HTTP conversation."""

    def __init__(
        self,
        config: Config,
        provider: LLMProvider | None = None,
        store: ConversationStore | None = None,
        language_services: LanguageServices | None = None,
    ):
        self.config = config
        self.provider = provider
        self.store = store or ConversationStore()
        self.language_services = language_services
        self.clients: set[web.WebSocketResponse] = set()
        self._http_agents: dict[str, Agent] = {}
        self._http_lock = asyncio.Lock()
        self._http_streaming: set[str] = set()
        self._terminals: set[PtySession] = set()

    def _new_agent(self, conversation_id: str | None = None) -> Agent:
        return Agent(
            provider=self.provider,
            store=self.store,
            conversation_id=conversation_id,
            language_services=self.language_services,
        )

    async def _send(self, ws: web.WebSocketResponse, msg: dict[str, Any]) -> None:
        """Send a message to a single WebSocket client."""
        if not ws.closed:
            await ws.send_str(json.dumps(msg, default=str))

    @staticmethod
    async def _read_json(request: web.Request) -> dict[str, Any]:
        try:
            data = await request.json()
        except json.JSONDecodeError:
            raise web.HTTPBadRequest(
                text=json.dumps({"error": "Invalid JSON"}),
                content_type="application/json",
            )
        if not isinstance(data, dict):
            raise web.HTTPBadRequest(
                text=json.dumps({"error": "Expected a JSON object"}),
                content_type="application/json",
            )
        return data

    # ── WebSocket chat ───────────────────────────────────────────────

    async def ws_handler(self, request: web.Request) -> web.WebSocketResponse:
        ws = web.WebSocketResponse(max_msg_size=4 * 1024 * 1024)
        await ws.prepare(request)
        self.clients.add(ws)

        agent = self._new_agent()
        agent.event_callback = lambda event: self._send(ws, event)
        tasks: set[asyncio.Task[None]] = set()

        await self._send(ws, {
            "type": "welcome",
            "conversation_id": agent.conversation_id,
            "autopilot": agent.autopilot,
            "tools": agent.tools.list_tools(),
        })

        try:
            async for raw_msg in ws:
                if raw_msg.type == web.WSMsgType.TEXT:
                    try:
                        data = json.loads(raw_msg.data)
                    except json.JSONDecodeError:
                        await self._send(ws, {"type": "error", "error": "Invalid JSON"})
                        continue
                    if not isinstance(data, dict):
                        await self._send(ws, {"type": "error", "error": "Expected a JSON object"})
                        continue
                    await self._handle_ws_message(ws, agent, data, tasks)
                elif raw_msg.type == web.WSMsgType.ERROR:
                    log.error("WebSocket error", error=str(ws.exception()))
        finally:
            self.clients.discard(ws)
            await agent.shutdown()
            for task in list(tasks):
                task.cancel()
            if tasks:
                await asyncio.gather(*tasks, return_exceptions=True)

        return ws

    def _spawn(
        self,
        ws: web.WebSocketResponse,
        tasks: set[asyncio.Task[None]],
        coro: Awaitable[Any],
    ) -> None:
        """Run a long agent operation in the background so stop messages still arrive."""
        task = asyncio.create_task(self._guarded(ws, coro))
        tasks.add(task)
        task.add_done_callback(tasks.discard)

    async def _guarded(self, ws: web.WebSocketResponse, coro: Awaitable[Any]) -> None:
        try:
            await coro
        except WatchAIError as e:
            await self._send(ws, {"type": "error", "error": str(e)})
        except Exception as e:
            log.exception("Agent operation failed", error=str(e))
            await self._send(ws, {"type": "error", "error": f"Internal error: {e}"})

    async def _handle_ws_message(
        self,
        ws: web.WebSocketResponse,
        agent: Agent,
        data: dict[str, Any],
        tasks: set[asyncio.Task[None]],
    ) -> None:
        """Dispatch incoming WebSocket messages."""
        msg_type = data.get("type", "")

        if msg_type == "sendMessage":
            text = str(data.get("text") or data.get("content") or "").strip()
            if not text:
                return
            context = EditorContext.from_dict(data.get("context"))
            self._spawn(ws, tasks, agent.send_message(text, context))

        elif msg_type == "stopGeneration":
            await agent.stop()

        elif msg_type == "approvalDecision":
            approval_id = str(data.get("id", ""))
            self._spawn(ws, tasks, agent.decide(approval_id, bool(data.get("approved"))))

        elif msg_type == "newChat":
            conversation_id = await agent.new_chat()
            await self._send(ws, {"type": "chat_cleared", "conversation_id": conversation_id})

        elif msg_type == "loadChat":
            try:
                messages = await agent.load_chat(str(data.get("id", "")))
            except WatchAIError as e:
                await self._send(ws, {"type": "error", "error": str(e)})
                return
            await self._send(ws, {
                "type": "chat_loaded",
                "conversation_id": agent.conversation_id,
                "messages": messages,
            })

        elif msg_type == "deleteChat":
            await agent.delete_chat(str(data.get("id", "")))
            await self._send(ws, {"type": "history", "chats": await agent.list_chats()})

        elif msg_type == "listChats":
            await self._send(ws, {"type": "history", "chats": await agent.list_chats()})

        elif msg_type == "setAutopilot":
            enabled = Agent.set_autopilot(bool(data.get("enabled")))
            await self._send(ws, {"type": "autopilot", "enabled": enabled})

        else:
            await self._send(ws, {"type": "error", "error": f"Unknown message type: {msg_type}"})

    # ── HTTP agent API (SSE) ─────────────────────────────────────────

    async def _http_agent(self, conversation_id: str | None) -> Agent:
        """Agent for an HTTP conversation, restoring stored history on first use."""
        async with self._http_lock:
            if conversation_id and conversation_id in self._http_agents:
                return self._http_agents[conversation_id]
            agent = self._new_agent()
            if conversation_id:
                try:
                    await agent.load_chat(conversation_id)
                except SessionNotFoundError:
                    agent.conversation_id = conversation_id
            self._http_agents[agent.conversation_id] = agent
            return agent

    async def _stream_agent(
        self,
        request: web.Request,
        agent: Agent,
        operation: Callable[[], Awaitable[Any]],
    ) -> web.StreamResponse:
        """Run one agent operation and stream its events.

        A conversation streams to one response at a time; overlapping requests get 409.
        """
        conversation_id = agent.conversation_id
        if conversation_id in self._http_streaming or agent.is_busy:
            return web.json_response({"error": "Conversation is busy"}, status=409)
        self._http_streaming.add(conversation_id)
        try:
            return await self._write_agent_stream(request, agent, operation)
        finally:
            self._http_streaming.discard(conversation_id)

    async def _write_agent_stream(
        self,
        request: web.Request,
        agent: Agent,
        operation: Callable[[], Awaitable[Any]],
    ) -> web.StreamResponse:
        resp = web.StreamResponse(
            status=200,
            reason="OK",
            headers={**SSE_HEADERS, "X-Conversation-Id": agent.conversation_id},
        )
        await resp.prepare(request)

        async def _sse(event: dict[str, Any]) -> None:
            await resp.write(f"data: {json.dumps(event, default=str)}\n\n".encode("utf-8"))

        agent.event_callback = _sse
        await _sse({"type": "conversation", "id": agent.conversation_id})
        try:
            await operation()
        except WatchAIError as e:
            await _sse({"type": "error", "error": str(e)})
        finally:
            agent.event_callback = None
        await resp.write(b"data: [DONE]\n\n")
        await resp.write_eof()
        return resp

    async def agent_chat(self, request: web.Request) -> web.StreamResponse:
        """``POST /api/agent/chat`` streams one turn as server-sent events."""
        data = await self._read_json(request)
        message = str(data.get("message", "")).strip()
        if not message:
            return web.json_response({"error": "message is required"}, status=400)
        agent = await self._http_agent(data.get("conversation_id"))
        context = EditorContext.from_dict(data.get("context"))
        return await self._stream_agent(request, agent, lambda: agent.send_message(message, context))

    async def agent_approve(self, request: web.Request) -> web.StreamResponse:
        """``POST /api/agent/approve`` applies a decision and streams the resumed turn."""
        data = await self._read_json(request)
        conversation_id = str(data.get("conversation_id", ""))
        approval_id = str(data.get("id", ""))
        agent = self._http_agents.get(conversation_id)
        if agent is None:
            return web.json_response({"error": "Unknown conversation"}, status=404)
        try:
            agent.approvals.get(approval_id)
        except ApprovalNotFoundError as e:
            return web.json_response({"error": str(e)}, status=404)
        return await self._stream_agent(
            request,
            agent,
            lambda: agent.decide(approval_id, bool(data.get("approved"))),
        )

    async def agent_stop(self, request: web.Request) -> web.Response:
        data = await self._read_json(request)
        agent = self._http_agents.get(str(data.get("conversation_id", "")))
        if agent is None:
            return web.json_response({"error": "Unknown conversation"}, status=404)
        await agent.stop()
        return web.json_response({"ok": True})

    async def list_chats(self, request: web.Request) -> web.Response:
        conversations = await self.store.list(self.config.session.history_limit)
        return web.json_response([c.to_dict(include_messages=False) for c in conversations])

    async def get_chat(self, request: web.Request) -> web.Response:
        try:
            conversation = await self.store.load(request.match_info["id"])
        except SessionNotFoundError as e:
            return web.json_response({"error": str(e)}, status=404)
        return web.json_response(conversation.to_dict())

    async def delete_chat(self, request: web.Request) -> web.Response:
        conversation_id = request.match_info["id"]
        agent = self._http_agents.pop(conversation_id, None)
        if agent is not None:
            await agent.stop()
        deleted = await self.store.delete(conversation_id)
        if not deleted:
            return web.json_response({"error": f"Conversation not found: {conversation_id}"}, status=404)
        return web.json_response({"deleted": True})

    async def get_autopilot(self, request: web.Request) -> web.Response:
        return web.json_response({"enabled": bool(get_config().approval.autopilot)})

    async def set_autopilot(self, request: web.Request) -> web.Response:
        data = await self._read_json(request)
        if not isinstance(data.get("enabled"), bool):
            return web.json_response({"error": "enabled must be a boolean"}, status=400)
        enabled = Agent.set_autopilot(data["enabled"])
        return web.json_response({"enabled": enabled})

    # ── Terminal ─────────────────────────────────────────────────────

    async def terminal_handler(self, request: web.Request) -> web.WebSocketResponse:
        """Bridge a WebSocket to a pty shell in the workspace root."""
        ws = web.WebSocketResponse()
        await ws.prepare(request)

        session = PtySession(
            self.config.resolved_workspace_path(),
            shell=self.config.web.shell or None,
        )
        try:
            session.start()
        except OSError as e:
            log.warning("Terminal failed to start", error=str(e))
            await self._send(ws, {"type": "error", "error": f"Terminal failed to start: {e}"})
            await ws.close()
            return ws
        self._terminals.add(session)

        async def pump_output() -> None:
            while True:
                text = await session.read_batch()
                if text is None:
                    break
                if text and not ws.closed:
                    await ws.send_str(text)
            if not ws.closed:
                await ws.close()

        pump = asyncio.create_task(pump_output())
        try:
            async for raw_msg in ws:
                if raw_msg.type == web.WSMsgType.TEXT:
                    if self._handle_terminal_control(session, raw_msg.data):
                        continue
                    try:
                        session.write(raw_msg.data)
                    except OSError:
                        break
                elif raw_msg.type == web.WSMsgType.BINARY:
                    try:
                        session.write(raw_msg.data.decode("utf-8", errors="replace"))
                    except OSError:
                        break
        finally:
            pump.cancel()
            await asyncio.gather(pump, return_exceptions=True)
            await session.close()
            self._terminals.discard(session)
        return ws

    @staticmethod
    def _handle_terminal_control(session: PtySession, text: str) -> bool:
        """Apply ``{"type": "resize", "rows", "cols"}``; False for plain input."""
        if not text.startswith("{"):
            return False
        try:
            data = json.loads(text)
        except json.JSONDecodeError:
            return False
        if not isinstance(data, dict) or data.get("type") != "resize":
            return False
        try:
            session.resize(int(data.get("rows", 0)), int(data.get("cols", 0)))
        except (TypeError, ValueError):
            pass
        return True

    # ── Workspace files (editor backend) ─────────────────────────────

    def _workspace_target(self, data: dict[str, Any]) -> Path:
        """Resolve the ``path`` field of a file request inside the workspace."""
        raw = data.get("path")
        if not isinstance(raw, str) or not raw.strip():
            raise web.HTTPBadRequest(
                text=json.dumps({"error": "Invalid path"}),
                content_type="application/json",
            )
        try:
            return resolve_in_workspace(self.config.resolved_workspace_path(), raw)
        except PathOutsideWorkspaceError as e:
            raise web.HTTPBadRequest(
                text=json.dumps({"error": str(e)}),
                content_type="application/json",
            )

    async def file_tree(self, request: web.Request) -> web.Response:
        """``GET /api/files`` returns the workspace tree, ignored folders left out."""
        root = self.config.resolved_workspace_path()
        tools_cfg = self.config.tools
        loop = asyncio.get_running_loop()
        try:
            children = await loop.run_in_executor(
                None,
                lambda: list_entries(
                    root,
                    root,
                    set(tools_cfg.ignore_names),
                    recursive=True,
                    max_depth=tools_cfg.list_max_depth,
                ),
            )
        except OSError as e:
            return web.json_response({"error": str(e)}, status=500)
        return web.json_response({"name": root.name, "path": ".", "type": "dir", "children": children})

    async def read_file(self, request: web.Request) -> web.Response:
        path = self._workspace_target(await self._read_json(request))
        if not path.is_file():
            return web.json_response({"error": "File not found"}, status=404)
        try:
            content = path.read_text(encoding="utf-8", errors="replace")
        except OSError as e:
            return web.json_response({"error": str(e)}, status=500)
        return web.json_response({"path": display_path(self.config.resolved_workspace_path(), path), "content": content})

    async def save_file(self, request: web.Request) -> web.Response:
        data = await self._read_json(request)
        path = self._workspace_target(data)
        content = data.get("content", "")
        if not isinstance(content, str):
            return web.json_response({"error": "content must be a string"}, status=400)
        if path.is_dir():
            return web.json_response({"error": "Path is a directory"}, status=400)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(content, encoding="utf-8")
        except OSError as e:
            return web.json_response({"error": str(e)}, status=500)
        log.info("File saved from editor", path=str(path), chars=len(content))
        return web.json_response({"success": True})

    async def create_file(self, request: web.Request) -> web.Response:
        """``POST /api/file/create`` makes an empty file or a folder; existing ones are kept."""
        data = await self._read_json(request)
        path = self._workspace_target(data)
        kind = data.get("type", "file")
        if kind not in ("file", "folder"):
            return web.json_response({"error": "type must be 'file' or 'folder'"}, status=400)
        try:
            if kind == "folder":
                path.mkdir(parents=True, exist_ok=True)
            else:
                path.parent.mkdir(parents=True, exist_ok=True)
                if not path.exists():
                    path.write_text("", encoding="utf-8")
        except OSError as e:
            return web.json_response({"error": str(e)}, status=500)
        return web.json_response({"success": True})

    async def delete_file(self, request: web.Request) -> web.Response:
        path = self._workspace_target(await self._read_json(request))
        if path == self.config.resolved_workspace_path():
            return web.json_response({"error": "Refusing to delete the workspace root"}, status=400)
        if not path.exists():
            return web.json_response({"error": "File not found"}, status=404)
        try:
            if path.is_dir():
                shutil.rmtree(path)
            else:
                path.unlink()
        except OSError as e:
            return web.json_response({"error": str(e)}, status=500)
        log.info("File deleted from editor", path=str(path))
        return web.json_response({"success": True})

    # ── App ──────────────────────────────────────────────────────────

    def create_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get("/ws", self.ws_handler)
        app.router.add_post("/api/agent/chat", self.agent_chat)
        app.router.add_post("/api/agent/approve", self.agent_approve)
        app.router.add_post("/api/agent/stop", self.agent_stop)
        app.router.add_get("/api/chats", self.list_chats)
        app.router.add_get("/api/chats/{id}", self.get_chat)
        app.router.add_delete("/api/chats/{id}", self.delete_chat)
        app.router.add_get("/api/settings/autopilot", self.get_autopilot)
        app.router.add_post("/api/settings/autopilot", self.set_autopilot)
        app.router.add_get("/api/files", self.file_tree)
        app.router.add_post("/api/file", self.read_file)
        app.router.add_post("/api/save", self.save_file)
        app.router.add_post("/api/file/create", self.create_file)
        app.router.add_delete("/api/file", self.delete_file)
        if self.config.web.terminal_enabled:
            app.router.add_get("/ws/terminal", self.terminal_handler)
        app.on_shutdown.append(self._on_shutdown)
        return app

    async def _on_shutdown(self, app: web.Application) -> None:
        for agent in list(self._http_agents.values()):
            await agent.shutdown()
        self._http_agents.clear()
        for ws in list(self.clients):
            await ws.close()
        self.clients.clear()
        for session in list(self._terminals):
            await session.close()
        self._terminals.clear()

    async def close(self) -> None:
        await self.store.close()
        if self.provider is not None:
            await self.provider.close()


async def _run_server(config: Config) -> None:
    """Start the web server."""
    server = WebServer(config)
    loop = asyncio.get_running_loop()

    # Stop event: set by signal handler to trigger graceful shutdown.
    stop_event = asyncio.Event()

    def _signal_handler() -> None:
        if not stop_event.is_set():
            stop_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _signal_handler)
        except (NotImplementedError, OSError):
            # Windows doesn't support add_signal_handler for SIGTERM.
            pass

    app = server.create_app()
    runner = web.AppRunner(app)
    await runner.setup()

    host = config.web.host
    port = config.web.port
    site = web.TCPSite(runner, host, port)
    await site.start()

    print(f"\n  Watch AI server running at http://{host}:{port}")
    print(f"  Workspace: {config.resolved_workspace_path()}")
    print(f"  Autopilot: {'on' if config.approval.autopilot else 'off'}")
    print("  Press Ctrl+C to stop.\n")
    log.info("Server started", host=host, port=port)

    await stop_event.wait()

    print("\nShutting down...")
    await runner.cleanup()
    await server.close()


def run_web_server(config: Config) -> None:
    """Entry point for running the web server."""
    try:
        asyncio.run(_run_server(config))
    except KeyboardInterrupt:
        pass  # Signal handler handles graceful shutdown.


def main() -> None:
    """Standalone entry point for the web server."""
    cfg = Config.load()
    set_config(cfg)
    configure_logging()

    Path(cfg.session.path).expanduser().parent.mkdir(parents=True, exist_ok=True)

    try:
        run_web_server(cfg)
    except Exception as e:
        print(f"Fatal error: {e}")
        sys.exit(1)
