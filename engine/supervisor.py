"""Supervision of external tool subprocesses (yt-dlp, ffmpeg).

A ``ProcessHandle`` streams the combined stdout/stderr of a running tool line
by line, can be asked to terminate, and resolves to a ``ToolResult`` whose
outcome classifies the exit. Every handle is registered under a key in a
``ProcessRegistry`` so a caller that did not spawn the process (pause, stop,
skip) can find and terminate it.
"""

from __future__ import annotations

import asyncio
import codecs
import logging
import os
import re
from collections import deque
from dataclasses import dataclass
from typing import AsyncIterator, Callable, Sequence

from engine.errors import CancelledError, ConfigurationError, ExternalToolFailure, InvalidStateError

logger = logging.getLogger(__name__)

OUTCOME_SUCCESS = "success"
OUTCOME_CANCELLED = "cancelled"
OUTCOME_FAILED = "failed"

# SIGTERM as a shell exit status (15, 128+15) and as asyncio reports it (-15).
TERMINATED_EXIT_CODES = frozenset({15, 143, -15})

KILL_GRACE_SECONDS = 5.0
_MAX_OUTPUT_LINES = 2000
_MAX_PENDING_LINES = 1000
_LINE_SPLIT_RE = re.compile(r"\r\n|\r|\n")


@dataclass(frozen=True)
class ToolResult:
    exit_code: int | None
    output: str
    outcome: str
    timed_out: bool = False

    @property
    def succeeded(self) -> bool:
        return self.outcome == OUTCOME_SUCCESS

    def tail(self, lines: int = 5) -> str:
        return "\n".join(self.output.strip().splitlines()[-lines:])

    def raise_for_outcome(self, tool: str) -> None:
        if self.outcome == OUTCOME_SUCCESS:
            return
        if self.outcome == OUTCOME_CANCELLED:
            raise CancelledError(f"{tool} was terminated")
        if self.timed_out:
            message = f"{tool} stalled with no output and was killed"
        else:
            message = f"{tool} exited with code {self.exit_code}"
        tail = self.tail()
        if tail:
            message = f"{message}: {tail}"
        raise ExternalToolFailure(message, exit_code=self.exit_code, output=self.output)


def classify_exit(exit_code, *, kill_requested=False, expected_output=None, timed_out=False) -> str:
    """Map a tool exit to ``success``, ``cancelled`` or ``failed``."""
    if exit_code == 0:
        return OUTCOME_SUCCESS
    if not timed_out and (kill_requested or exit_code in TERMINATED_EXIT_CODES):
        return OUTCOME_CANCELLED
    # Tools that skip existing output may exit nonzero after a previous run finished it.
    if not timed_out and expected_output and os.path.exists(expected_output):
        return OUTCOME_SUCCESS
    return OUTCOME_FAILED


async def _iter_stream_lines(stream, idle_timeout=None) -> AsyncIterator[str]:
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    buffer = ""
    while True:
        if idle_timeout:
            chunk = await asyncio.wait_for(stream.read(4096), timeout=idle_timeout)
        else:
            chunk = await stream.read(4096)
        if not chunk:
            break
        buffer += decoder.decode(chunk)
        parts = _LINE_SPLIT_RE.split(buffer)
        buffer = parts.pop()
        for part in parts:
            if part.strip():
                yield part
    buffer += decoder.decode(b"", final=True)
    if buffer.strip():
        yield buffer


class ProcessHandle:
    def __init__(
        self,
        key: str,
        argv: Sequence[str],
        process: asyncio.subprocess.Process,
        *,
        expected_output: str | None = None,
        idle_timeout: float | None = None,
        on_exit: Callable[["ProcessHandle"], None] | None = None,
    ) -> None:
        self.key = key
        self.argv = list(argv)
        self._process = process
        self._expected_output = expected_output
        self._idle_timeout = idle_timeout
        self._on_exit = on_exit
        self._output: deque[str] = deque(maxlen=_MAX_OUTPUT_LINES)
        self._pending: asyncio.Queue[str | None] = asyncio.Queue(maxsize=_MAX_PENDING_LINES)
        self._kill_requested = False
        self._timed_out = False
        self._escalation: asyncio.Task | None = None
        self._done: asyncio.Future[ToolResult] = asyncio.get_running_loop().create_future()
        self._pump_task = asyncio.create_task(self._pump(), name=f"tool-output-{key}")

    @property
    def pid(self) -> int | None:
        return self._process.pid

    @property
    def kill_requested(self) -> bool:
        return self._kill_requested

    @property
    def done(self) -> bool:
        return self._done.done()

    def kill(self) -> None:
        """Request termination. Completion is observed through ``wait()``."""
        if self._done.done():
            return
        self._kill_requested = True
        self._terminate()

    async def lines(self) -> AsyncIterator[str]:
        while True:
            line = await self._pending.get()
            if line is None:
                return
            yield line

    async def wait(self) -> ToolResult:
        return await asyncio.shield(self._done)

    def _terminate(self) -> None:
        if self._process.returncode is not None:
            return
        try:
            self._process.terminate()
        except ProcessLookupError:
            return
        if self._escalation is None:
            self._escalation = asyncio.create_task(self._escalate())

    async def _escalate(self) -> None:
        await asyncio.sleep(KILL_GRACE_SECONDS)
        if self._process.returncode is None:
            logger.warning("Tool did not exit after SIGTERM, killing key=%s pid=%s", self.key, self.pid)
            try:
                self._process.kill()
            except ProcessLookupError:
                pass

    def _push_line(self, line: str) -> None:
        self._output.append(line)
        if self._pending.full():
            # Nobody is draining the stream; keep the most recent lines.
            self._pending.get_nowait()
        self._pending.put_nowait(line)

    async def _pump(self) -> None:
        try:
            stream = self._process.stdout
            if stream is not None:
                try:
                    async for line in _iter_stream_lines(stream, self._idle_timeout):
                        self._push_line(line)
                except asyncio.TimeoutError:
                    self._timed_out = True
                    logger.warning(
                        "Tool produced no output for %.0fs, terminating key=%s pid=%s",
                        self._idle_timeout or 0,
                        self.key,
                        self.pid,
                    )
                    self._terminate()
            exit_code = await self._process.wait()
        except Exception as exc:
            logger.exception("Tool supervision failed key=%s", self.key)
            self._output.append(f"supervisor error: {exc}")
            exit_code = self._process.returncode
        finally:
            if self._escalation is not None:
                self._escalation.cancel()
            if self._pending.full():
                self._pending.get_nowait()
            self._pending.put_nowait(None)

        outcome = classify_exit(
            exit_code,
            kill_requested=self._kill_requested,
            expected_output=self._expected_output,
            timed_out=self._timed_out,
        )
        result = ToolResult(
            exit_code=exit_code,
            output="\n".join(self._output),
            outcome=outcome,
            timed_out=self._timed_out,
        )
        if self._on_exit is not None:
            self._on_exit(self)
        self._done.set_result(result)


class ProcessRegistry:
    """Keyed table of live tool processes, one slot per key.

    A kill requested for a key whose process has not been registered yet is
    remembered and delivered as soon as the handle registers.
    """

    def __init__(self) -> None:
        self._handles: dict[str, ProcessHandle] = {}
        self._pending_kills: set[str] = set()

    def register(self, key: str, handle: ProcessHandle) -> None:
        current = self._handles.get(key)
        if current is not None and not current.done:
            raise InvalidStateError(f"a process is already running for {key}")
        self._handles[key] = handle
        if key in self._pending_kills:
            self._pending_kills.discard(key)
            logger.info("Delivering deferred kill key=%s pid=%s", key, handle.pid)
            handle.kill()

    def unregister(self, key: str, handle: ProcessHandle) -> None:
        if self._handles.get(key) is handle:
            del self._handles[key]

    def get(self, key: str) -> ProcessHandle | None:
        return self._handles.get(key)

    def kill(self, key: str, *, expected: bool = False) -> ProcessHandle | None:
        """Terminate the process registered under ``key``.

        With ``expected=True`` and nothing registered yet, the kill is held
        until the handle for ``key`` registers.
        """
        handle = self._handles.get(key)
        if handle is not None:
            handle.kill()
            return handle
        if expected:
            self._pending_kills.add(key)
        return None

    def discard_pending_kill(self, key: str) -> None:
        self._pending_kills.discard(key)

    def active_keys(self) -> list[str]:
        return [key for key, handle in self._handles.items() if not handle.done]


class Supervisor:
    def __init__(self, registry: ProcessRegistry | None = None) -> None:
        self.registry = registry or ProcessRegistry()

    async def start(
        self,
        key: str,
        argv: Sequence[str],
        *,
        cwd: str | None = None,
        expected_output: str | None = None,
        idle_timeout: float | None = None,
    ) -> ProcessHandle:
        if not argv:
            raise ConfigurationError("empty tool command")
        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                cwd=cwd,
            )
        except FileNotFoundError as exc:
            raise ConfigurationError(f"{argv[0]} is not installed or not available in PATH") from exc
        except PermissionError as exc:
            raise ConfigurationError(f"{argv[0]} is not executable") from exc
        logger.info("Started tool key=%s pid=%s cmd=%s", key, process.pid, argv[0])
        handle = ProcessHandle(
            key,
            argv,
            process,
            expected_output=expected_output,
            idle_timeout=idle_timeout,
            on_exit=lambda h: self.registry.unregister(key, h),
        )
        self.registry.register(key, handle)
        return handle

    async def run(
        self,
        key: str,
        argv: Sequence[str],
        *,
        on_line: Callable[[str], None] | None = None,
        cwd: str | None = None,
        expected_output: str | None = None,
        idle_timeout: float | None = None,
    ) -> ToolResult:
        """Start a tool, feed every output line to ``on_line`` and wait for it."""
        handle = await self.start(
            key,
            argv,
            cwd=cwd,
            expected_output=expected_output,
            idle_timeout=idle_timeout,
        )
        async for line in handle.lines():
            if on_line is not None:
                try:
                    on_line(line)
                except Exception:
                    logger.exception("Tool output handler failed key=%s", key)
        return await handle.wait()
