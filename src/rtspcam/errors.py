"""Error taxonomy, exit statuses and error response schema.

Every failure the orchestration core can raise is an ``RtspCamError``
subclass carrying:
- a machine-readable ``ErrorCode``
- the process ``ExitCode`` the CLI terminates with
- an optional ``details`` dict for remediation text and context

Error Categories:
    - Tooling: TOOL_UNAVAILABLE, NO_DEVICES
    - Processes: SPAWN_ERROR, PROCESS_EXITED, READINESS_TIMEOUT, INVALID_STATE
    - Setup: ACQUISITION_FAILURE, CONFIGURATION_ERROR
    - System: INTERNAL_ERROR

No component retries. Each error bubbles to the Orchestrator, which tears
down what it started and lets the CLI exit with the mapped status.

Logging Strategy:
    DEBUG - Error response creation
    ERROR - Unexpected exceptions reaching the status API

Usage:
    >>> raise ToolUnavailable("ffmpeg not found", {"remediation": "..."})
    >>> error = create_error_response(exc)
"""
from __future__ import annotations

import logging
from enum import Enum, IntEnum
from typing import Any, Optional

from fastapi import Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

# ============================================================================
# Codes
# ============================================================================

class ErrorCode(str, Enum):
    """Standardized error codes."""

    TOOL_UNAVAILABLE = "TOOL_UNAVAILABLE"
    NO_DEVICES = "NO_DEVICES"

    SPAWN_ERROR = "SPAWN_ERROR"
    PROCESS_EXITED = "PROCESS_EXITED"
    READINESS_TIMEOUT = "READINESS_TIMEOUT"
    INVALID_STATE = "INVALID_STATE"

    ACQUISITION_FAILURE = "ACQUISITION_FAILURE"
    CONFIGURATION_ERROR = "CONFIGURATION_ERROR"

    INTERNAL_ERROR = "INTERNAL_ERROR"


class ExitCode(IntEnum):
    """Process exit statuses, one per fatal condition."""

    OK = 0
    INTERNAL_ERROR = 1
    TOOL_UNAVAILABLE = 2
    NO_DEVICES = 3
    SPAWN_ERROR = 4
    READINESS_TIMEOUT = 5
    ACQUISITION_FAILURE = 6
    CONFIGURATION_ERROR = 7
    INTERRUPTED = 130


# ============================================================================
# Exceptions
# ============================================================================

class RtspCamError(Exception):
    """Base class for all orchestration failures."""

    code: ErrorCode = ErrorCode.INTERNAL_ERROR
    exit_code: ExitCode = ExitCode.INTERNAL_ERROR

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ToolUnavailable(RtspCamError):
    """The capture-enumeration tool (ffmpeg) cannot be run."""

    code = ErrorCode.TOOL_UNAVAILABLE
    exit_code = ExitCode.TOOL_UNAVAILABLE


class ParseEmpty(RtspCamError):
    """No capture devices were found and the caller treats that as fatal."""

    code = ErrorCode.NO_DEVICES
    exit_code = ExitCode.NO_DEVICES


class SpawnError(RtspCamError):
    """A child process could not be launched."""

    code = ErrorCode.SPAWN_ERROR
    exit_code = ExitCode.SPAWN_ERROR


class ProcessExited(SpawnError):
    """A child process terminated before it reported readiness."""

    code = ErrorCode.PROCESS_EXITED


class ReadinessTimeout(RtspCamError):
    """A strict-policy child did not report readiness in time."""

    code = ErrorCode.READINESS_TIMEOUT
    exit_code = ExitCode.READINESS_TIMEOUT


class SupervisorStateError(RtspCamError):
    """A supervisor was asked to start a second live process for its role."""

    code = ErrorCode.INVALID_STATE


class AcquisitionFailure(RtspCamError):
    """Downloading or extracting the media-server binary failed."""

    code = ErrorCode.ACQUISITION_FAILURE
    exit_code = ExitCode.ACQUISITION_FAILURE


class ConfigurationError(RtspCamError):
    """Settings could not be loaded, validated or written."""

    code = ErrorCode.CONFIGURATION_ERROR
    exit_code = ExitCode.CONFIGURATION_ERROR


# ============================================================================
# Error Response Schema
# ============================================================================

class ErrorResponse(BaseModel):
    """Uniform JSON error body for the status API.

    Example:
        {
            "code": "READINESS_TIMEOUT",
            "message": "stream did not become ready within 10.0s",
            "details": {"role": "stream", "timeout": 10.0}
        }
    """

    code: str = Field(..., description="Error code for programmatic handling")
    message: str = Field(..., description="Human-readable error message")
    details: Optional[dict[str, Any]] = Field(None, description="Additional error details")


def create_error_response(exc: BaseException) -> ErrorResponse:
    """Build an ErrorResponse from any exception.

    Non-RtspCamError exceptions are reported as INTERNAL_ERROR with their
    string form as message.
    """
    if isinstance(exc, RtspCamError):
        code = exc.code.value
        message = exc.message
        details = exc.details or None
    else:
        code = ErrorCode.INTERNAL_ERROR.value
        message = str(exc) or exc.__class__.__name__
        details = None

    logger.debug(f"Creating error response: code={code}, message={message}")
    return ErrorResponse(code=code, message=message, details=details)


def exit_code_for(exc: BaseException) -> ExitCode:
    """Map an exception to the status the process terminates with."""
    if isinstance(exc, RtspCamError):
        return exc.exit_code
    if isinstance(exc, KeyboardInterrupt):
        return ExitCode.INTERRUPTED
    return ExitCode.INTERNAL_ERROR


# ============================================================================
# Exception Handlers
# ============================================================================

async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for the status API."""
    logger.error(
        f"Unhandled exception on {request.method} {request.url.path}: {exc}",
        exc_info=True
    )
    error = create_error_response(exc)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=error.model_dump()
    )
