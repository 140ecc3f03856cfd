"""Shared fixtures: a scriptable fake child process and spawner.

FakeProcess mimics the parts of asyncio.subprocess.Process the code
uses. Output is fed into real asyncio.StreamReader pipes, so line
splitting and EOF handling run exactly as they do against ffmpeg.
Create FakeProcess instances inside async tests (they need a loop).
"""
from __future__ import annotations

import asyncio
import signal
from pathlib import Path
from typing import Callable, Optional

import pytest

FIXTURES_DIR = Path(__file__).parent / "fixtures"


class FakeProcess:
    """Deterministic stand-in for an asyncio subprocess."""

    def __init__(
        self,
        pid: int = 4242,
        exit_on_signal: bool = True,
        signal_log: Optional[list] = None
    ) -> None:
        self.pid = pid
        self.stdout = asyncio.StreamReader()
        self.stderr = asyncio.StreamReader()
        self.returncode: Optional[int] = None
        self.signals: list[signal.Signals] = []
        self.exit_on_signal = exit_on_signal
        self._signal_log = signal_log
        self._exited = asyncio.Event()

    def emit(self, text: str, stream: str = "stderr") -> None:
        reader = self.stdout if stream == "stdout" else self.stderr
        reader.feed_data(text.encode("utf-8"))

    def exit(self, code: int = 0) -> None:
        if self.returncode is not None:
            return
        self.stdout.feed_eof()
        self.stderr.feed_eof()
        self.returncode = code
        self._exited.set()

    async def wait(self) -> int:
        await self._exited.wait()
        return self.returncode

    async def communicate(self, input: Optional[bytes] = None) -> tuple[bytes, bytes]:
        stdout = await self.stdout.read()
        stderr = await self.stderr.read()
        await self.wait()
        return stdout, stderr

    def send_signal(self, sig: signal.Signals) -> None:
        self.signals.append(sig)
        if self._signal_log is not None:
            self._signal_log.append((self.pid, sig))
        if self.exit_on_signal:
            self.exit(-int(sig))

    def terminate(self) -> None:
        self.send_signal(signal.SIGTERM)

    def kill(self) -> None:
        self.send_signal(signal.SIGKILL)
        self.exit(-int(signal.SIGKILL))


class FakeSpawner:
    """Replacement for asyncio.create_subprocess_exec.

    Hands out queued FakeProcess objects (or raises queued exceptions)
    and records every call.
    """

    def __init__(self, *outcomes) -> None:
        self.outcomes = list(outcomes)
        self.calls: list[tuple[list[str], dict]] = []

    async def __call__(self, *cmd: str, **kwargs) -> FakeProcess:
        self.calls.append((list(cmd), kwargs))
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Poll until predicate() is true."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


@pytest.fixture
def listing_text() -> str:
    return (FIXTURES_DIR / "dshow_listing.txt").read_text(encoding="utf-8")


@pytest.fixture
def empty_listing_text() -> str:
    return (FIXTURES_DIR / "dshow_listing_empty.txt").read_text(encoding="utf-8")
