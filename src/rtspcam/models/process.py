"""Supervised process models.

- ProcessState: lifecycle of one child process
- ProcessHandle: live record owned by exactly one ProcessSupervisor
- ReadinessPolicy: what happens when no readiness marker shows up in time
- LineVerdict: classifier result for a single output line

State machine:
    not_started -> starting -> running   (readiness line or fallback)
                            -> exited    (terminated before readiness)
    running -> stopping -> exited
"""
from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Callable, Optional

from pydantic import BaseModel, Field


class ProcessState(str, Enum):
    NOT_STARTED = "not_started"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    EXITED = "exited"


LIVE_STATES = frozenset({ProcessState.STARTING, ProcessState.RUNNING, ProcessState.STOPPING})


class ReadinessPolicy(str, Enum):
    """Outcome of a start whose readiness window elapsed without a marker."""

    STRICT = "strict"  # fail with ReadinessTimeout
    FALLBACK = "fallback"  # assume ready, log the ambiguity


class LineVerdict(str, Enum):
    IGNORE = "ignore"
    READY = "ready"
    ERROR = "error"


LineClassifier = Callable[[str, str, ProcessState], LineVerdict]
"""classifier(line, stream_name, state) -> verdict; stream_name is stdout/stderr."""


class ProcessHandle(BaseModel):
    """Lifecycle record of one supervised child process."""

    role: str = Field(description="Supervised role, e.g. server or stream")

    state: ProcessState = Field(default=ProcessState.NOT_STARTED)

    pid: Optional[int] = Field(default=None)

    started_at: Optional[datetime] = Field(default=None)

    readiness_marker_seen: bool = Field(
        default=False,
        description="True once a readiness line was classified READY"
    )

    exit_code: Optional[int] = Field(default=None)

    exit_signal: Optional[str] = Field(
        default=None,
        description="Signal name when the child was terminated by a signal"
    )

    @property
    def is_live(self) -> bool:
        return self.state in LIVE_STATES
