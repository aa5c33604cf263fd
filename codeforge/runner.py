"""Run the learner's file in a reusable shell, fire-and-forget."""

import asyncio
import logging
import os
import signal
from dataclasses import dataclass
from typing import TYPE_CHECKING

from .config import TERMINAL_SHELL
from .languages import build_command, get_language_config, unsupported_message

if TYPE_CHECKING:
    from .document import Editor

logger = logging.getLogger(__name__)

_CLOSE_WAIT_TIMEOUT = 2  # seconds


@dataclass
class RunResult:
    success: bool
    output: str = ""
    error: str | None = None


class Terminal:
    """A long-lived interactive shell that command lines are written to.

    Output goes straight to the server's own stdout/stderr, like a terminal
    panel the learner watches. We never wait for a command to finish.
    """

    def __init__(self, shell: str = TERMINAL_SHELL):
        self._shell = shell
        self._proc: asyncio.subprocess.Process | None = None

    @property
    def alive(self) -> bool:
        return self._proc is not None and self._proc.returncode is None

    async def _ensure_started(self) -> asyncio.subprocess.Process:
        if not self.alive:
            self._proc = await asyncio.create_subprocess_exec(
                self._shell,
                stdin=asyncio.subprocess.PIPE,
                start_new_session=True,
            )
            logger.info("Started run terminal (pid %s)", self._proc.pid)
        return self._proc

    async def send_text(self, line: str) -> None:
        proc = await self._ensure_started()
        proc.stdin.write((line + "\n").encode())
        await proc.stdin.drain()

    async def close(self) -> None:
        if not self.alive:
            self._proc = None
            return
        proc = self._proc
        self._proc = None
        try:
            proc.stdin.close()
            await asyncio.wait_for(proc.wait(), timeout=_CLOSE_WAIT_TIMEOUT)
        except asyncio.TimeoutError:
            # Shell is still busy with the learner's program
            try:
                os.killpg(os.getpgid(proc.pid), signal.SIGKILL)
            except (OSError, ProcessLookupError):
                pass
        except (OSError, ProcessLookupError):
            pass


class CodeRunner:
    def __init__(self, terminal: Terminal | None = None):
        self.terminal = terminal or Terminal()

    async def run_active_file(self, editor: "Editor | None") -> RunResult:
        if editor is None:
            return RunResult(success=False, error="No active file.")

        document = editor.document
        if not document.path:
            return RunResult(success=False, error="Save the file before running it.")

        # Silent save so the file on disk matches the buffer
        await document.save()

        config = get_language_config(document.language_id, document.path)
        if config is None:
            return RunResult(success=False, error=unsupported_message(document.language_id))

        command = build_command(config)
        try:
            await self.terminal.send_text(command)
        except (OSError, RuntimeError) as e:
            logger.exception("Failed to launch %s", command)
            return RunResult(success=False, error=str(e) or "Execution failed.")

        logger.info("Sent to terminal: %s", command)
        return RunResult(success=True, output="Running in terminal...")

    async def close(self) -> None:
        await self.terminal.close()
