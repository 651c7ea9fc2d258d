"""
Async external process execution.

Runs a binary with a per-call timeout, captures its output and optionally
feeds each output line through a progress parser. Every command runs in its
own session so a timeout or kill can SIGKILL the whole process tree,
including grandchildren that inherited the output pipes.
"""
import asyncio
import inspect
import os
import re
import signal
import time
from typing import Dict, List, Optional, Sequence

import psutil
import structlog
from pydantic import BaseModel

from worker.utils.errors import ProcessExecutionError, ProcessTimeoutError
from worker.utils.progress import GenericProgressParser, ProgressCallback

logger = structlog.get_logger()

LINE_SPLIT = re.compile(r'[\r\n]+')

# Grace period for output readers after the process has been reaped
READER_DRAIN_TIMEOUT = 2.0

# Upper bound on reaping a process tree after SIGKILL
KILL_WAIT_TIMEOUT = 5.0


class ProcessResult(BaseModel):
    exit_code: int
    stdout: Optional[str] = None
    stderr: Optional[str] = None
    duration_ms: float
    timed_out: bool = False


class _OutputCollector:
    """Accumulates one output stream and emits complete lines."""

    def __init__(self, parser=None, on_progress: Optional[ProgressCallback] = None, capture: bool = True):
        self.parser = parser
        self.on_progress = on_progress
        self.capture = capture
        self.chunks: List[str] = []
        self._pending = ""

    async def feed(self, text: str) -> None:
        if self.capture:
            self.chunks.append(text)
        if not self.on_progress:
            return

        self._pending += text
        parts = LINE_SPLIT.split(self._pending)
        # Last element is an incomplete line (or empty after a separator)
        self._pending = parts.pop()
        for line in parts:
            await self._emit(line)

    async def flush(self) -> None:
        if self.on_progress and self._pending:
            line, self._pending = self._pending, ""
            await self._emit(line)

    async def _emit(self, line: str) -> None:
        progress = self.parser.parse(line) if self.parser else None
        if progress is None:
            return
        try:
            result = self.on_progress(progress)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.warning("Progress callback failed", error=str(e))

    @property
    def text(self) -> str:
        return "".join(self.chunks)


class ProcessRunner:
    """Executes external commands and tracks running processes by label."""

    def __init__(self):
        self._processes: Dict[str, asyncio.subprocess.Process] = {}

    async def execute(
        self,
        command: str,
        args: Sequence[str] = (),
        *,
        cwd: Optional[str] = None,
        env: Optional[Dict[str, str]] = None,
        timeout_ms: Optional[int] = None,
        capture_stdout: bool = True,
        capture_stderr: bool = True,
        label: Optional[str] = None,
    ) -> ProcessResult:
        """Run a command to completion and return its captured output."""
        return await self._run(
            command, args, cwd=cwd, env=env, timeout_ms=timeout_ms,
            capture_stdout=capture_stdout, capture_stderr=capture_stderr,
            label=label,
        )

    async def execute_with_streaming(
        self,
        command: str,
        args: Sequence[str] = (),
        *,
        on_progress: Optional[ProgressCallback] = None,
        progress_parser=None,
        cwd: Optional[str] = None,
        env: Optional[Dict[str, str]] = None,
        timeout_ms: Optional[int] = None,
        capture_stdout: bool = True,
        capture_stderr: bool = True,
        label: Optional[str] = None,
    ) -> ProcessResult:
        """Run a command, invoking ``on_progress`` for every parseable output line."""
        return await self._run(
            command, args, cwd=cwd, env=env, timeout_ms=timeout_ms,
            capture_stdout=capture_stdout, capture_stderr=capture_stderr,
            label=label, on_progress=on_progress,
            progress_parser=progress_parser or GenericProgressParser(),
        )

    async def _run(
        self,
        command: str,
        args: Sequence[str],
        *,
        cwd: Optional[str],
        env: Optional[Dict[str, str]],
        timeout_ms: Optional[int],
        capture_stdout: bool,
        capture_stderr: bool,
        label: Optional[str],
        on_progress: Optional[ProgressCallback] = None,
        progress_parser=None,
    ) -> ProcessResult:
        argv = [command, *[str(a) for a in args]]
        command_line = " ".join(argv)
        streaming = on_progress is not None
        start = time.perf_counter()

        process_env = None
        if env:
            process_env = {**os.environ, **env}

        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                stdout=asyncio.subprocess.PIPE if (capture_stdout or streaming) else asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE if (capture_stderr or streaming) else asyncio.subprocess.DEVNULL,
                stdin=asyncio.subprocess.DEVNULL,
                cwd=cwd,
                env=process_env,
                start_new_session=True,
            )
        except (FileNotFoundError, PermissionError, NotADirectoryError) as e:
            logger.error("Failed to spawn process", command=command_line, error=str(e))
            raise ProcessExecutionError(-1, str(e), command_line) from e

        if label:
            self._processes[label] = process

        logger.debug("Process started", command=command_line, pid=process.pid, label=label)

        stdout_collector = _OutputCollector(progress_parser, on_progress, capture_stdout)
        stderr_collector = _OutputCollector(progress_parser, on_progress, capture_stderr)
        readers = []
        if process.stdout:
            readers.append(asyncio.create_task(self._read_stream(process.stdout, stdout_collector)))
        if process.stderr:
            readers.append(asyncio.create_task(self._read_stream(process.stderr, stderr_collector)))

        timeout = timeout_ms / 1000 if timeout_ms else None
        timed_out = False
        try:
            try:
                await asyncio.wait_for(process.wait(), timeout=timeout)
            except asyncio.TimeoutError:
                timed_out = True
                self._kill_tree(process)
                await self._reap(process)
            await self._drain_readers(readers)
        except asyncio.CancelledError:
            self._kill_tree(process)
            await self._reap(process)
            for task in readers:
                task.cancel()
            raise
        finally:
            if label and self._processes.get(label) is process:
                del self._processes[label]

        duration_ms = (time.perf_counter() - start) * 1000

        if timed_out:
            logger.error("Process timed out", command=command_line, timeout_ms=timeout_ms, pid=process.pid)
            raise ProcessTimeoutError(command_line, timeout_ms, pid=process.pid)

        stdout = stdout_collector.text if capture_stdout else None
        stderr = stderr_collector.text if capture_stderr else None

        if process.returncode != 0:
            logger.error(
                "Process failed",
                command=command_line,
                exit_code=process.returncode,
                duration_ms=round(duration_ms, 1),
            )
            raise ProcessExecutionError(process.returncode, stderr_collector.text, command_line)

        logger.debug("Process completed", command=command_line, duration_ms=round(duration_ms, 1))
        return ProcessResult(
            exit_code=process.returncode,
            stdout=stdout,
            stderr=stderr,
            duration_ms=duration_ms,
            timed_out=False,
        )

    @staticmethod
    async def _read_stream(stream: asyncio.StreamReader, collector: _OutputCollector) -> None:
        while True:
            chunk = await stream.read(4096)
            if not chunk:
                break
            await collector.feed(chunk.decode('utf-8', errors='ignore'))
        await collector.flush()

    @staticmethod
    async def _drain_readers(readers: List[asyncio.Task]) -> None:
        if not readers:
            return
        # Grandchildren can hold the pipes open after the main process exits
        done, pending = await asyncio.wait(readers, timeout=READER_DRAIN_TIMEOUT)
        for task in pending:
            task.cancel()
        for task in done:
            if task.exception():
                logger.warning("Output reader failed", error=str(task.exception()))

    @staticmethod
    def _kill_tree(process: asyncio.subprocess.Process) -> None:
        """SIGKILL the process, its session group and any descendant that left it."""
        victims = []
        if process.returncode is None:
            try:
                victims = psutil.Process(process.pid).children(recursive=True)
            except psutil.Error:
                victims = []

        # The group outlives its leader, so this also reaches orphaned grandchildren
        try:
            os.killpg(process.pid, signal.SIGKILL)
        except (ProcessLookupError, PermissionError):
            pass

        for child in victims:
            try:
                child.kill()
            except psutil.Error:
                continue

    @staticmethod
    async def _reap(process: asyncio.subprocess.Process) -> None:
        try:
            await asyncio.wait_for(process.wait(), timeout=KILL_WAIT_TIMEOUT)
        except asyncio.TimeoutError:
            logger.warning("Process not reaped after kill", pid=process.pid)

    def kill_by_label(self, label: str) -> bool:
        """SIGKILL a tracked process and its descendants. Returns False when no such label is running."""
        process = self._processes.get(label)
        if process is None:
            return False
        logger.warning("Killing process", label=label, pid=process.pid)
        self._kill_tree(process)
        return True

    def get_running_processes(self) -> List[str]:
        return list(self._processes.keys())

    async def is_command_available(self, command: str) -> bool:
        """Check whether a command resolves on PATH."""
        try:
            await self.execute("which", [command], timeout_ms=5000)
            return True
        except (ProcessExecutionError, ProcessTimeoutError):
            return False
