"""Prometheus metrics for observability.

Provides metrics for:
- Device inventory (runs, devices found)
- Supervised processes (state, start outcomes, exits, error lines)
- Media-server binary acquisition

Exposed by the optional status API at GET /metrics.

Logging Strategy:
    DEBUG - Module initialization
    ERROR - Metric generation failures
"""
from __future__ import annotations

import logging

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    REGISTRY,
    Counter,
    Gauge,
    Info,
    generate_latest,
)

from . import __version__
from .models.process import ProcessState

logger = logging.getLogger(__name__)

# ============================================================================
# Application Info
# ============================================================================

app_info = Info("rtspcam_app", "Application information")
app_info.info({
    "version": __version__,
    "name": "rtspcam",
    "description": "USB camera to RTSP publisher"
})

# ============================================================================
# Device Inventory Metrics
# ============================================================================

devices_discovered = Gauge("devices_discovered", "Capture devices found by the last inventory run")

device_enumerations_total = Counter(
    "device_enumerations_total",
    "Inventory runs",
    ["outcome"]  # found, empty, timeout, tool_unavailable
)

# ============================================================================
# Process Metrics
# ============================================================================

process_state = Gauge(
    "process_state",
    "Supervised process state (1 for the current state)",
    ["role", "state"]
)

process_starts_total = Counter(
    "process_starts_total",
    "Supervised process start attempts",
    ["role", "outcome"]  # ready, fallback, timeout, exited, spawn_error
)

process_exits_total = Counter("process_exits_total", "Supervised process exits", ["role"])

process_output_errors_total = Counter(
    "process_output_errors_total",
    "Child output lines classified as errors",
    ["role"]
)

# ============================================================================
# Acquisition Metrics
# ============================================================================

mediamtx_acquisitions_total = Counter(
    "mediamtx_acquisitions_total",
    "Media-server binary acquisition attempts",
    ["outcome"]  # present, downloaded, failed
)

# ============================================================================
# Metrics Export
# ============================================================================

def get_metrics() -> tuple[bytes, int, dict[str, str]]:
    """Generate Prometheus metrics in text format.

    Returns:
        (body, status_code, headers) for a FastAPI Response
    """
    try:
        metrics = generate_latest(REGISTRY)
        return (metrics, 200, {"Content-Type": CONTENT_TYPE_LATEST})
    except Exception as e:
        logger.error(f"Metrics generation failed: {e}", exc_info=True)
        return (b"# Error\n", 500, {"Content-Type": "text/plain"})


# ============================================================================
# Helper Functions
# ============================================================================

def set_process_state(role: str, state: ProcessState) -> None:
    """One-hot update of the process_state gauge for a role."""
    for candidate in ProcessState:
        process_state.labels(role=role, state=candidate.value).set(
            1 if candidate is state else 0
        )


logger.debug("Prometheus metrics initialized")
