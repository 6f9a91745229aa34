"""run_command tool: execute a shell command after human approval."""

import asyncio
import os
from typing import Any

from watch_ai.config import get_config
from watch_ai.logging import get_logger
from watch_ai.tools.registry import (
    Tool,
    ToolResult,
    display_path,
    resolve_in_workspace,
    workspace_root_from,
)

log = get_logger(__name__)


class RunCommandTool(Tool):
    """Execute shell commands in the workspace."""

    name = "run_command"
    description = (
        "Run a shell command in the workspace (tests, builds, git, package managers). "
        "The user must approve every command before it runs. Output is stdout and "
        "stderr combined."
    )
    kind = "command"
    requires_approval = True
    parameters = {
        "type": "object",
        "properties": {
            "command": {
                "type": "string",
                "description": "The shell command to execute",
            },
            "cwd": {
                "type": "string",
                "description": "Working directory, relative to the workspace root",
            },
        },
        "required": ["command"],
    }

    def __init__(self):
        self.config = get_config()
        self.command_timeout = max(1, int(self.config.tools.command.timeout or 60))
        # registry deadline sits above the process timeout so the kill path reports first
        self.timeout_seconds = float(self.command_timeout + 5)

    async def execute(self, command: str, cwd: str | None = None, **kwargs: Any) -> ToolResult:
        """Execute a shell command.

        Args:
            command: Shell command to execute
            cwd: Optional working directory inside the workspace

        Returns:
            ToolResult with ``output`` and ``exit_code``
        """
        root = workspace_root_from(kwargs)
        workdir = resolve_in_workspace(root, cwd)
        if not workdir.is_dir():
            return ToolResult.failure(f"Working directory not found: {cwd}", "not_found")

        abort_event = kwargs.get("_abort_event")
        if isinstance(abort_event, asyncio.Event) and abort_event.is_set():
            return ToolResult.failure("Command aborted", "cancelled")

        timeout = self.command_timeout
        env = os.environ.copy()
        env["PATH"] = os.environ.get("PATH", "/usr/local/bin:/usr/bin:/bin")

        try:
            log.info("Executing shell command", command=command, cwd=str(workdir), timeout=timeout)

            process = await asyncio.create_subprocess_shell(
                command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                cwd=str(workdir),
                env=env,
            )

            communicate_task = asyncio.create_task(process.communicate())
            abort_wait_task: asyncio.Task[bool] | None = None
            if isinstance(abort_event, asyncio.Event):
                abort_wait_task = asyncio.create_task(abort_event.wait())
            try:
                wait_tasks: set[asyncio.Task[Any]] = {communicate_task}
                if abort_wait_task is not None:
                    wait_tasks.add(abort_wait_task)
                done, _ = await asyncio.wait(
                    wait_tasks,
                    timeout=timeout,
                    return_when=asyncio.FIRST_COMPLETED,
                )

                if communicate_task in done:
                    stdout, _ = await communicate_task
                else:
                    process.kill()
                    await process.wait()
                    communicate_task.cancel()
                    try:
                        await communicate_task
                    except asyncio.CancelledError:
                        pass
                    if abort_wait_task is not None and abort_wait_task in done:
                        return ToolResult.failure("Command aborted", "cancelled", command=command)
                    return ToolResult.failure(
                        f"Command timed out after {timeout}s",
                        "timeout",
                        command=command,
                    )
            except asyncio.CancelledError:
                process.kill()
                await process.wait()
                communicate_task.cancel()
                raise
            finally:
                if abort_wait_task is not None and not abort_wait_task.done():
                    abort_wait_task.cancel()
                    try:
                        await abort_wait_task
                    except asyncio.CancelledError:
                        pass

            output = (stdout or b"").decode("utf-8", errors="replace").strip()

            max_length = self.config.tools.command.max_output_chars
            if len(output) > max_length:
                output = output[:max_length] + f"\n... [truncated, {len(output)} total chars]"

            exit_code = process.returncode
            if exit_code != 0:
                return ToolResult.failure(
                    f"Command exited with code {exit_code}",
                    "execution_error",
                    command=command,
                    cwd=display_path(root, workdir),
                    exit_code=exit_code,
                    output=output,
                )
            return ToolResult(
                success=True,
                message=f"Command finished (exit code {exit_code})",
                command=command,
                cwd=display_path(root, workdir),
                exit_code=exit_code,
                output=output,
            )

        except OSError as e:
            log.warning("Shell command failed to start", command=command, error=str(e))
            return ToolResult.failure(str(e), "execution_error", command=command)
