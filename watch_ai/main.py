"""Main entry point for Watch AI."""

import asyncio
import signal
import sys
from collections.abc import Awaitable
from pathlib import Path

import typer

from watch_ai.agent import Agent
from watch_ai.cli import TerminalUI, get_ui
from watch_ai.config import Config, set_config
from watch_ai.exceptions import WatchAIError
from watch_ai.logging import configure_logging, log, set_log_sink
from watch_ai.session import ConversationStore

app = typer.Typer(help="Watch AI - coding agent for your workspace", no_args_is_help=True)


def _load_config(config: str = "", verbose: bool = False, quiet: bool = False) -> Config:
    """Load configuration, install it globally and configure logging."""
    if config:
        try:
            cfg = Config.from_yaml(Path(config))
        except (OSError, ValueError) as e:
            log.error("Failed to load config", path=config, error=str(e))
            cfg = Config.load()
    else:
        cfg = Config.load()

    if verbose:
        cfg.logging.level = "DEBUG"
    set_config(cfg)
    configure_logging("WARNING" if quiet and not verbose else None)

    Path(cfg.session.path).expanduser().parent.mkdir(parents=True, exist_ok=True)
    return cfg


async def _run_cancellable(agent: Agent, work: Awaitable[None]) -> bool:
    """Run one agent operation; Ctrl+C stops generation instead of exiting.

    Returns True when the user stopped it.
    """
    loop = asyncio.get_running_loop()
    stopped = False

    def _on_interrupt() -> None:
        nonlocal stopped
        if not stopped:
            stopped = True
            loop.create_task(agent.stop())

    try:
        loop.add_signal_handler(signal.SIGINT, _on_interrupt)
        installed = True
    except (NotImplementedError, RuntimeError, ValueError):
        installed = False

    try:
        await work
    finally:
        if installed:
            loop.remove_signal_handler(signal.SIGINT)
    return stopped


async def _resolve_approvals(ui: TerminalUI, agent: Agent) -> None:
    """Ask about every pending command until the turn no longer waits on one."""
    while agent.approvals.has_pending():
        approval = agent.approvals.pending()[0]
        approved = ui.confirm_command(approval)
        if await _run_cancellable(agent, agent.decide(approval.id, approved)):
            ui.print_warning("Generation stopped")
            return


async def run_interactive(ui: TerminalUI, cfg: Config) -> None:
    """REPL over one Agent."""
    store = ConversationStore()
    agent = Agent(store=store, event_callback=ui.handle_event)
    ui.print_welcome(cfg.resolved_workspace_path(), agent.autopilot)

    try:
        while True:
            try:
                user_input = ui.prompt("you> ")
            except (KeyboardInterrupt, EOFError):
                break

            command = ui.handle_special_command(user_input)
            if command is not None:
                action, arg = command
                if action == "exit":
                    break
                try:
                    if action == "help":
                        ui.print_help()
                    elif action == "new":
                        await agent.new_chat()
                        ui.print_success("Started a new conversation")
                    elif action == "history":
                        ui.print_history(await agent.list_chats())
                    elif action == "load":
                        messages = await agent.load_chat(arg)
                        ui.print_success(f"Loaded {arg} ({len(messages)} messages)")
                    elif action == "delete":
                        if await agent.delete_chat(arg):
                            ui.print_success(f"Deleted {arg}")
                        else:
                            ui.print_error(f"Conversation not found: {arg}")
                    elif action == "autopilot":
                        enabled = Agent.set_autopilot(arg == "on")
                        ui.print_success(f"Autopilot {'on' if enabled else 'off'}")
                except WatchAIError as e:
                    ui.print_error(str(e))
                continue

            if not user_input.strip():
                continue

            try:
                if await _run_cancellable(agent, agent.send_message(user_input)):
                    ui.print_warning("Generation stopped")
                    continue
                await _resolve_approvals(ui, agent)
            except KeyboardInterrupt:
                log.info("Interrupted by user")
                break
            except WatchAIError as e:
                ui.print_error(str(e))
                log.error("Error in interactive loop", error=str(e))
    finally:
        ui.save_history()
        await agent.shutdown()
        await store.close()
        if agent.provider is not None:
            await agent.provider.close()


@app.command()
def serve(
    config: str = typer.Option("", "-c", "--config", help="Path to config file"),
    host: str = typer.Option("", "--host", help="Override bind host"),
    port: int = typer.Option(0, "--port", help="Override port"),
    verbose: bool = typer.Option(False, "-v", "--verbose", help="Debug logging"),
) -> None:
    """Run the web server (chat WebSocket, agent API and terminal)."""
    from watch_ai.web_server import run_web_server

    cfg = _load_config(config, verbose)
    if host:
        cfg.web.host = host
    if port:
        cfg.web.port = port
    try:
        run_web_server(cfg)
    except OSError as e:
        print(f"Fatal error: {e}")
        sys.exit(1)


@app.command()
def chat(
    config: str = typer.Option("", "-c", "--config", help="Path to config file"),
    model: str = typer.Option("", "-m", "--model", help="Override model"),
    workspace: str = typer.Option("", "-w", "--workspace", help="Override workspace path"),
    verbose: bool = typer.Option(False, "-v", "--verbose", help="Debug logging"),
) -> None:
    """Interactive chat in the terminal."""
    ui = get_ui()
    set_log_sink(ui.print_log_line)
    cfg = _load_config(config, verbose, quiet=True)
    if model:
        cfg.model.model = model
    if workspace:
        cfg.workspace.path = workspace

    try:
        asyncio.run(run_interactive(ui, cfg))
    except KeyboardInterrupt:
        log.info("Shutting down...")


@app.command()
def autopilot(
    state: str = typer.Argument(..., help="on or off"),
    config: str = typer.Option("", "-c", "--config", help="Path to config file"),
) -> None:
    """Turn command auto-approval on or off (saved to the config file)."""
    value = state.strip().lower()
    if value not in ("on", "off"):
        raise typer.BadParameter("expected 'on' or 'off'", param_hint="STATE")
    _load_config(config, quiet=True)
    enabled = Agent.set_autopilot(value == "on")
    print(f"Autopilot {'on' if enabled else 'off'}")


@app.command()
def version() -> None:
    """Show version information."""
    from watch_ai import __version__
    print(f"Watch AI v{__version__}")


def main() -> None:
    app()


if __name__ == "__main__":
    main()
