"""Pty-backed interactive shell for the web terminal."""

import asyncio
import codecs
import os
import signal
import struct
import sys
import termios
import threading
from pathlib import Path

from watch_ai.logging import get_logger

log = get_logger(__name__)

READ_CHUNK = 4096
MAX_BATCH_BYTES = 8192
FLUSH_INTERVAL = 0.008
READER_JOIN_TIMEOUT = 2.0


def default_shell() -> str:
    shell = os.environ.get("SHELL", "/bin/bash")
    if not os.path.exists(shell):
        shell = "/bin/sh"
    return shell


class PtySession:
    """One shell process attached to a pseudo-terminal.

    Output is read on a thread and handed to the event loop through a queue;
    ``None`` in the queue marks the end of the process output.
    """

    def __init__(self, cwd: Path | str, shell: str | None = None):
        self.cwd = str(Path(cwd).expanduser().resolve())
        self.shell = shell or default_shell()
        self.pid: int | None = None
        self.master_fd: int | None = None
        self.queue: asyncio.Queue[bytes | None] = asyncio.Queue()
        self._reader: threading.Thread | None = None
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")

    @property
    def alive(self) -> bool:
        return self.pid is not None and self.master_fd is not None

    def start(self) -> None:
        """Fork the shell.

        Raises:
            OSError: pty allocation or fork failed
        """
        if sys.platform == "win32":
            raise OSError("Pseudo-terminals are not available on this platform")
        import pty

        loop = asyncio.get_running_loop()
        pid, master_fd = pty.fork()
        if pid == 0:
            try:
                os.chdir(self.cwd)
                os.environ["TERM"] = os.environ.get("TERM", "xterm-256color")
                os.execlp(self.shell, os.path.basename(self.shell), "-l")
            finally:
                os._exit(1)

        self.pid = pid
        self.master_fd = master_fd
        self._reader = threading.Thread(
            target=self._read_loop,
            args=(master_fd, loop),
            daemon=True,
        )
        self._reader.start()
        log.info("Terminal started", pid=pid, shell=self.shell, cwd=self.cwd)

    def _read_loop(self, master_fd: int, loop: asyncio.AbstractEventLoop) -> None:
        while True:
            try:
                data = os.read(master_fd, READ_CHUNK)
            except OSError:
                break
            if not data:
                break
            loop.call_soon_threadsafe(self.queue.put_nowait, data)
        try:
            loop.call_soon_threadsafe(self.queue.put_nowait, None)
        except RuntimeError:
            # loop already closed
            pass

    def write(self, text: str) -> None:
        if self.master_fd is None:
            return
        os.write(self.master_fd, text.encode("utf-8"))

    def resize(self, rows: int, cols: int) -> None:
        if self.master_fd is None or rows <= 0 or cols <= 0:
            return
        try:
            if hasattr(termios, "tcsetwinsize"):
                termios.tcsetwinsize(self.master_fd, (rows, cols))
            else:
                import fcntl
                fcntl.ioctl(self.master_fd, termios.TIOCSWINSZ, struct.pack("HHHH", rows, cols, 0, 0))
        except OSError as e:
            log.debug("Terminal resize failed", rows=rows, cols=cols, error=str(e))

    async def read_batch(self) -> str | None:
        """Next block of output, batched over a short window. None once the shell exits."""
        data = await self.queue.get()
        if data is None:
            return None
        chunks = [data]
        size = len(data)
        deadline = asyncio.get_running_loop().time() + FLUSH_INTERVAL
        while size < MAX_BATCH_BYTES:
            remaining = deadline - asyncio.get_running_loop().time()
            if remaining <= 0:
                break
            try:
                more = await asyncio.wait_for(self.queue.get(), timeout=remaining)
            except asyncio.TimeoutError:
                break
            if more is None:
                self.queue.put_nowait(None)
                break
            chunks.append(more)
            size += len(more)
        return self._decoder.decode(b"".join(chunks))

    @staticmethod
    def _reap(pid: int) -> None:
        try:
            os.waitpid(pid, 0)
        except ChildProcessError:
            pass

    async def close(self) -> None:
        """Kill the shell, release the pty and wait for the reader thread.

        Reaping and joining run in the default executor so the event loop keeps going.
        """
        if self.master_fd is not None:
            try:
                os.close(self.master_fd)
            except OSError as e:
                log.debug("Closing pty failed", error=str(e))
            self.master_fd = None

        pid, self.pid = self.pid, None
        reader, self._reader = self._reader, None
        loop = asyncio.get_running_loop()
        if pid is not None:
            try:
                os.kill(pid, signal.SIGKILL)
            except ProcessLookupError:
                pass
            await loop.run_in_executor(None, self._reap, pid)
            log.info("Terminal closed", pid=pid)
        if reader is not None:
            await loop.run_in_executor(None, reader.join, READER_JOIN_TIMEOUT)
