"""Lifecycle supervision of one external process.

A ProcessSupervisor owns at most one live child per role (media server,
stream). It spawns the child, reads both output pipes line by line,
hands every line to a caller-supplied classifier, and settles the start
future exactly once:

    readiness line ......... start resolves, state -> running
    exit before readiness .. start fails with ProcessExited
    readiness window over .. STRICT: ReadinessTimeout
                             FALLBACK: start resolves, warning logged

Readiness, exit and timeout race for the same future. Each path checks
``future.done()`` before settling, so whichever fires first wins and the
others become no-ops. The timeout is a scheduled callback; it never
kills the child.

Pipes are drained before the exit status is read, so a readiness line
printed just before the child exits is classified before the exit is
handled.

Logging Strategy:
    DEBUG - Child output lines classified IGNORE
    INFO  - Spawn, readiness, stop signals, clean exits
    WARN  - Fallback readiness, unexpected exits
    ERROR - Child output lines classified ERROR, reader failures
"""
from __future__ import annotations

import asyncio
import logging
import os
import re
import signal
import subprocess
from datetime import datetime, timezone
from pathlib import Path
from typing import AsyncIterator, Awaitable, Callable, Final, Optional, Sequence

from .. import metrics
from ..errors import ProcessExited, ReadinessTimeout, SpawnError, SupervisorStateError
from ..models.process import (
    LineClassifier,
    LineVerdict,
    ProcessHandle,
    ProcessState,
    ReadinessPolicy,
)

logger = logging.getLogger(__name__)

# ============================================================================
# Constants
# ============================================================================

READ_CHUNK_SIZE: Final[int] = 4096
"""Bytes per pipe read."""

LINE_BREAK: Final[re.Pattern[bytes]] = re.compile(rb"\r\n|\r|\n")
"""ffmpeg rewrites its progress line with bare carriage returns."""

Spawner = Callable[..., Awaitable[asyncio.subprocess.Process]]
"""asyncio.create_subprocess_exec or a test double with the same signature."""

# ============================================================================
# Output Reading
# ============================================================================

async def iter_lines(reader: asyncio.StreamReader) -> AsyncIterator[str]:
    """Yield non-empty decoded lines from a pipe until EOF."""
    pending = b""
    while True:
        chunk = await reader.read(READ_CHUNK_SIZE)
        if not chunk:
            break
        pending += chunk
        parts = LINE_BREAK.split(pending)
        pending = parts.pop()
        for part in parts:
            text = part.decode("utf-8", errors="replace").strip()
            if text:
                yield text

    tail = pending.decode("utf-8", errors="replace").strip()
    if tail:
        yield tail


def _signal_name(signum: int) -> str:
    try:
        return signal.Signals(signum).name
    except ValueError:
        return f"SIG{signum}"


# ============================================================================
# Process Supervisor
# ============================================================================

class ProcessSupervisor:
    """Start, observe and stop one external process for a named role.

    Attributes:
        role: Label used in logs and metrics ("server", "stream")
        handle: Lifecycle record of the current (or last) child
    """

    def __init__(self, role: str, spawn: Optional[Spawner] = None) -> None:
        self.role = role
        self.handle = ProcessHandle(role=role)
        self._spawn: Spawner = spawn or asyncio.create_subprocess_exec
        self._process: Optional[asyncio.subprocess.Process] = None
        self._watcher: Optional[asyncio.Task] = None
        metrics.set_process_state(role, self.handle.state)

    @property
    def state(self) -> ProcessState:
        return self.handle.state

    # ========================================================================
    # Start
    # ========================================================================

    async def start(
        self,
        executable: str | Path,
        args: Sequence[str],
        working_dir: Optional[str | Path],
        classifier: LineClassifier,
        readiness_timeout: float,
        policy: ReadinessPolicy = ReadinessPolicy.STRICT
    ) -> ProcessHandle:
        """Spawn the child and wait until it is ready.

        Args:
            executable: Program to run
            args: Arguments (no shell involved)
            working_dir: Child working directory, None for inherited
            classifier: classifier(line, stream_name, state) -> LineVerdict
            readiness_timeout: Seconds to wait for a READY line
            policy: STRICT fails on timeout, FALLBACK assumes ready

        Returns:
            The handle, in state running

        Raises:
            SupervisorStateError: A child of this role is still live
            SpawnError: The executable could not be launched
            ProcessExited: The child exited before readiness
            ReadinessTimeout: STRICT policy and no READY line in time
        """
        if self._process is not None or self.handle.state is ProcessState.STARTING:
            raise SupervisorStateError(
                f"{self.role} process already live (state={self.handle.state.value})",
                {"role": self.role, "pid": self.handle.pid}
            )

        loop = asyncio.get_running_loop()
        handle = ProcessHandle(
            role=self.role,
            state=ProcessState.STARTING,
            started_at=datetime.now(timezone.utc)
        )
        self.handle = handle
        metrics.set_process_state(self.role, handle.state)

        cmd = [str(executable), *args]
        logger.info(f"[{self.role}] Starting: {' '.join(cmd)}")

        try:
            process = await self._spawn(
                *cmd,
                cwd=str(working_dir) if working_dir is not None else None,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE
            )
        except OSError as e:
            handle.state = ProcessState.EXITED
            metrics.set_process_state(self.role, handle.state)
            metrics.process_starts_total.labels(role=self.role, outcome="spawn_error").inc()
            logger.error(f"[{self.role}] Failed to launch {executable}: {e}")
            raise SpawnError(
                f"Failed to launch {self.role} process: {e}",
                {"role": self.role, "executable": str(executable)}
            ) from e

        self._process = process
        handle.pid = process.pid
        logger.debug(f"[{self.role}] Spawned PID={process.pid}")

        ready: asyncio.Future[ProcessHandle] = loop.create_future()
        readers = [
            asyncio.create_task(self._read_output(process.stdout, "stdout", handle, ready, classifier)),
            asyncio.create_task(self._read_output(process.stderr, "stderr", handle, ready, classifier)),
        ]
        self._watcher = asyncio.create_task(self._watch(process, handle, ready, readers))

        timer = loop.call_later(
            readiness_timeout,
            self._on_readiness_timeout,
            handle,
            ready,
            policy,
            readiness_timeout
        )
        try:
            return await ready
        finally:
            timer.cancel()

    # ========================================================================
    # Stop / Wait
    # ========================================================================

    def stop(self, sig: signal.Signals = signal.SIGTERM) -> bool:
        """Send a termination signal without waiting for the exit.

        Clears the live process reference; the exit itself is recorded on
        the handle by the watcher. Calling stop again, or on a supervisor
        that never started, does nothing.

        Returns:
            True if a signal was sent
        """
        process = self._process
        if process is None or self.handle.state not in (ProcessState.STARTING, ProcessState.RUNNING):
            logger.debug(f"[{self.role}] stop() ignored (state={self.handle.state.value})")
            return False

        self._process = None
        self.handle.state = ProcessState.STOPPING
        metrics.set_process_state(self.role, self.handle.state)

        try:
            if os.name == "nt":
                # Windows only delivers SIGTERM-equivalent TerminateProcess
                process.terminate()
            else:
                process.send_signal(sig)
            logger.info(f"[{self.role}] Sent {sig.name} to PID={process.pid}")
        except ProcessLookupError:
            logger.debug(f"[{self.role}] PID={process.pid} already gone")

        return True

    async def wait(self) -> ProcessHandle:
        """Wait until the current child's exit has been recorded."""
        if self._watcher is not None:
            await asyncio.shield(self._watcher)
        return self.handle

    # ========================================================================
    # Event Handlers
    # ========================================================================

    async def _read_output(
        self,
        reader: Optional[asyncio.StreamReader],
        stream_name: str,
        handle: ProcessHandle,
        ready: asyncio.Future,
        classifier: LineClassifier
    ) -> None:
        if reader is None:
            logger.warning(f"[{self.role}] {stream_name} unavailable")
            return

        try:
            async for line in iter_lines(reader):
                verdict = classifier(line, stream_name, handle.state)

                if verdict is LineVerdict.READY:
                    logger.debug(f"[{self.role}] {line}")
                    self._on_ready(handle, ready, line)
                elif verdict is LineVerdict.ERROR:
                    logger.error(f"[{self.role}] {line}")
                    metrics.process_output_errors_total.labels(role=self.role).inc()
                else:
                    logger.debug(f"[{self.role}] {line}")

        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"[{self.role}] {stream_name} reader failed: {e}", exc_info=True)

    async def _watch(
        self,
        process: asyncio.subprocess.Process,
        handle: ProcessHandle,
        ready: asyncio.Future,
        readers: list[asyncio.Task]
    ) -> None:
        await asyncio.gather(*readers)
        returncode = await process.wait()
        self._on_exit(process, handle, ready, returncode)

    def _on_ready(self, handle: ProcessHandle, ready: asyncio.Future, line: str) -> None:
        if handle.readiness_marker_seen:
            return
        handle.readiness_marker_seen = True

        if ready.done() or handle.state is not ProcessState.STARTING:
            logger.debug(f"[{self.role}] Readiness marker after start settled: {line}")
            return

        handle.state = ProcessState.RUNNING
        if handle is self.handle:
            metrics.set_process_state(self.role, handle.state)
        metrics.process_starts_total.labels(role=self.role, outcome="ready").inc()
        logger.info(f"[{self.role}] Ready (PID={handle.pid})")
        ready.set_result(handle)

    def _on_readiness_timeout(
        self,
        handle: ProcessHandle,
        ready: asyncio.Future,
        policy: ReadinessPolicy,
        timeout: float
    ) -> None:
        # A child stopped during startup settles the future from _on_exit
        if ready.done() or handle.state is not ProcessState.STARTING:
            return

        if policy is ReadinessPolicy.FALLBACK:
            handle.state = ProcessState.RUNNING
            if handle is self.handle:
                metrics.set_process_state(self.role, handle.state)
            metrics.process_starts_total.labels(role=self.role, outcome="fallback").inc()
            logger.warning(
                f"[{self.role}] No readiness marker within {timeout}s, assuming ready"
            )
            ready.set_result(handle)
            return

        metrics.process_starts_total.labels(role=self.role, outcome="timeout").inc()
        logger.error(f"[{self.role}] Not ready within {timeout}s")
        ready.set_exception(ReadinessTimeout(
            f"{self.role} did not become ready within {timeout}s",
            {"role": self.role, "timeout": timeout, "pid": handle.pid}
        ))

    def _on_exit(
        self,
        process: asyncio.subprocess.Process,
        handle: ProcessHandle,
        ready: asyncio.Future,
        returncode: int
    ) -> None:
        previous = handle.state

        if returncode is not None and returncode < 0:
            handle.exit_signal = _signal_name(-returncode)
        else:
            handle.exit_code = returncode
        handle.state = ProcessState.EXITED

        if self._process is process:
            self._process = None
        if handle is self.handle:
            metrics.set_process_state(self.role, handle.state)
        metrics.process_exits_total.labels(role=self.role).inc()

        outcome = f"signal {handle.exit_signal}" if handle.exit_signal else f"exit code {handle.exit_code}"
        if previous is ProcessState.STOPPING:
            logger.info(f"[{self.role}] Stopped ({outcome})")
        elif previous is ProcessState.RUNNING:
            logger.warning(f"[{self.role}] Exited unexpectedly ({outcome})")
        else:
            logger.error(f"[{self.role}] Exited before ready ({outcome})")

        if not ready.done():
            metrics.process_starts_total.labels(role=self.role, outcome="exited").inc()
            ready.set_exception(ProcessExited(
                f"{self.role} exited before ready ({outcome})",
                {"role": self.role, "exit_code": handle.exit_code, "exit_signal": handle.exit_signal}
            ))
